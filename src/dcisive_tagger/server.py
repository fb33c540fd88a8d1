"""Dcisive bulk tagger MCP server implementation using FastMCP."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from fastmcp import FastMCP

from .client import (
    BulkTagOrchestrator,
    CredentialGate,
    DcisiveClientCore,
    JsonFileStore,
    LocalRelayChannel,
    TagRelay,
    job_folder_number,
)
from .client.credentials import ENABLED_KEY, TOKEN_KEY, KeyValueStore
from .client.tag_encoding import JOB_FOLDER_TAG_KEY
from .config import ServerConfig, setup_logging
from .models import DcisiveError, MissingCredentialError

logger = logging.getLogger(__name__)

# Global service instances (built in lifespan / init_services)
_client: DcisiveClientCore | None = None
_relay: TagRelay | None = None
_store: KeyValueStore | None = None
_gate: CredentialGate | None = None
_orchestrator: BulkTagOrchestrator | None = None
_sink: "PageStatusSink | None" = None

# Global WebSocket connection to the in-page agent
_ws_connection = None
_ws_server_task: asyncio.Task | None = None

# In-memory job registry for bulk tag runs
_jobs: dict[str, dict[str, Any]] = {}
_job_counter: int = 0
_job_lock: asyncio.Lock = asyncio.Lock()

MAX_STATUS_MESSAGES = 200


def get_orchestrator() -> BulkTagOrchestrator:
    """Get the global orchestrator instance."""
    if _orchestrator is None:
        raise RuntimeError("Dcisive tagger not initialized. Server not started properly.")
    return _orchestrator


def get_relay() -> TagRelay:
    if _relay is None:
        raise RuntimeError("Dcisive tagger not initialized. Server not started properly.")
    return _relay


async def _send_to_page(payload: dict[str, Any]) -> None:
    """Send one JSON message to the connected page agent, if any."""
    websocket = _ws_connection
    if websocket is None:
        return
    try:
        await websocket.send(json.dumps(payload))
    except Exception as e:  # noqa: BLE001
        logger.warning(f"Could not deliver {payload.get('action')} to page agent: {e}")


class PageStatusSink:
    """Status sink that keeps a rolling log and mirrors it to the page agent."""

    def __init__(self) -> None:
        self.messages: list[dict[str, str]] = []
        self.refresh_count = 0
        self._pending: set[asyncio.Task] = set()

    def push(self, payload: dict[str, Any]) -> None:
        if _ws_connection is None:
            return
        task = asyncio.get_running_loop().create_task(_send_to_page(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def notify(self, message: str, level: str = "info") -> None:
        if level == "error":
            logger.error(message)
        else:
            logger.info(message)
        self.messages.append({"message": message, "level": level})
        del self.messages[:-MAX_STATUS_MESSAGES]
        self.push({"action": "status", "message": message, "level": level})

    async def refresh_gallery(self) -> None:
        self.refresh_count += 1
        logger.info("Requesting gallery refresh")
        await _send_to_page({"action": "refresh_gallery"})


def init_services(
    config: ServerConfig,
    store: KeyValueStore | None = None,
    client: DcisiveClientCore | None = None,
) -> BulkTagOrchestrator:
    """Wire client, relay, credential gate and orchestrator into the globals."""
    global _client, _relay, _store, _gate, _orchestrator, _sink

    _store = store or JsonFileStore(config.store_path)
    seed = config.api_token.get_secret_value() if config.api_token else None
    _gate = CredentialGate.from_store(_store, fallback_token=seed)

    _client = client or DcisiveClientCore(config.get_api_config())
    _relay = TagRelay(_client)
    _sink = PageStatusSink()
    _orchestrator = BulkTagOrchestrator(
        LocalRelayChannel(_relay),
        _gate,
        sink=_sink,
        refresh_delay=config.gallery_refresh_delay,
    )

    sink = _sink
    _gate.subscribe(lambda token: sink.push({"action": "token_updated", "token": token}))
    return _orchestrator


# In-memory job management for bulk tag runs
async def _start_background_job(
    kind: str,
    payload: dict[str, Any],
    coro_factory: Callable[[str], Awaitable[dict]],
) -> dict:
    """Start a background job and return a lightweight handle."""
    global _job_counter

    async with _job_lock:
        _job_counter += 1
        job_id = f"{kind}-{_job_counter}"

    _jobs[job_id] = {
        "job_id": job_id,
        "kind": kind,
        "status": "pending",  # pending | running | completed | failed
        "payload": payload,
        "result": None,
        "error": None,
        "started_at": datetime.now(timezone.utc).isoformat(),
        "finished_at": None,
        "_task": None,  # internal field, not exposed in status
    }

    async def runner() -> None:
        try:
            _jobs[job_id]["status"] = "running"
            result = await coro_factory(job_id)
            _jobs[job_id]["result"] = result
            _jobs[job_id]["status"] = "completed" if result.get("success", True) else "failed"
        except Exception as e:  # noqa: BLE001
            _jobs[job_id]["error"] = f"{type(e).__name__}: {e}"
            _jobs[job_id]["status"] = "failed"
        finally:
            _jobs[job_id]["finished_at"] = datetime.now(timezone.utc).isoformat()

    task = asyncio.create_task(runner())
    _jobs[job_id]["_task"] = task

    return {
        "success": True,
        "job_id": job_id,
        "status": "started",
        "kind": kind,
    }


def job_status(job_id: str | None = None) -> dict:
    """Return status for one job (if job_id given) or all jobs."""
    if job_id is None:
        jobs = [
            {
                "job_id": job.get("job_id"),
                "kind": job.get("kind"),
                "status": job.get("status"),
                "started_at": job.get("started_at"),
                "finished_at": job.get("finished_at"),
            }
            for job in _jobs.values()
        ]
        return {"success": True, "jobs": jobs}

    job = _jobs.get(job_id)
    if not job:
        return {"success": False, "error": f"Unknown job_id: {job_id}"}

    view = {k: v for k, v in job.items() if k not in ("payload", "_task")}
    return {"success": True, **view}


async def start_bulk_tag(key: str, value: str, value_type: str = "string") -> dict:
    """Validate preconditions and launch a bulk tag run as a background job."""
    orchestrator = get_orchestrator()
    gate = orchestrator.credentials

    if not gate.enabled:
        return {"success": False, "error": "Bulk tagging is disabled"}
    if not gate.has_token:
        message = str(MissingCredentialError())
        orchestrator.sink.notify(message, "error")
        return {"success": False, "error": message}
    if len(orchestrator.registry) == 0:
        return {"success": False, "error": "No files selected"}

    async def run(_job_id: str) -> dict:
        result = await orchestrator.apply_tag(key, value, value_type)
        return {"success": result.error_count == 0, **result.to_dict()}

    payload = {"key": key, "value": value, "value_type": value_type}
    return await _start_background_job("bulk-tag", payload, run)


def save_token(token: str) -> dict:
    """Persist a token and push it to every consumer (the popup's Save button)."""
    token = (token or "").strip()
    if not token:
        return {"success": False, "error": "Please paste a token first"}
    if _store is None or _gate is None:
        raise RuntimeError("Dcisive tagger not initialized. Server not started properly.")

    _store.set(TOKEN_KEY, token)
    _gate.on_token_updated(token)
    return {"success": True, "message": "Token saved!"}


def set_enabled(enabled: bool) -> dict:
    if _store is None or _gate is None:
        raise RuntimeError("Dcisive tagger not initialized. Server not started properly.")
    _store.set(ENABLED_KEY, enabled)
    _gate.reload(_store)
    return {"success": True, "enabled": _gate.enabled}


def status_messages(limit: int = 20) -> list[dict]:
    if _sink is None or limit <= 0:
        return []
    return _sink.messages[-limit:]


def selection_view() -> dict:
    registry = get_orchestrator().registry
    return {
        "count": len(registry),
        "label": registry.describe(),
        "files": [
            {
                "filename": item.filename,
                "thumbnail_id": item.thumbnail_id,
                "resolved": item.file_data is not None,
            }
            for item in registry
        ],
    }


def _form_text(value: Any) -> str:
    # Page forms may post JSON scalars; render them as the form would have typed them
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


async def handle_page_message(data: dict[str, Any]) -> dict[str, Any] | None:
    """Dispatch one message from the page agent and build the reply (if any)."""
    if not isinstance(data, dict):
        return {"action": "error", "error": "Page message must be a JSON object"}
    action = data.get("action")
    orchestrator = get_orchestrator()

    if action == "ping":
        return {"action": "pong"}

    if action == "get_token":
        return {"action": "token_updated", "token": orchestrator.credentials.token}

    if action == "api_request":
        request = data.get("request")
        if not isinstance(request, dict):
            request = {}
        reply = await get_relay().handle(request)
        return {"action": "api_response", "id": data.get("id"), "response": reply}

    if action == "toggle_selection":
        filename = str(data.get("filename") or "").strip()
        if not filename:
            return {"action": "error", "error": "toggle_selection requires a filename"}
        selected = orchestrator.select(
            filename,
            handle=data.get("handle"),
            thumbnail_id=str(data.get("thumbnail_id") or ""),
        )
        return {"action": "selection", "filename": filename, "selected": selected, **selection_view()}

    if action == "clear_selection":
        orchestrator.registry.clear()
        return {"action": "selection", **selection_view()}

    if action == "apply_tag":
        handle = await start_bulk_tag(
            _form_text(data.get("key")),
            _form_text(data.get("value")),
            _form_text(data.get("type")) or "string",
        )
        return {"action": "job_started", **handle}

    return {"action": "error", "error": f"Unknown action: {action}"}


async def websocket_handler(websocket):
    """Handle the WebSocket connection from the in-page agent."""
    global _ws_connection

    logger.info(f"WebSocket client connected from {websocket.remote_address}")
    _ws_connection = websocket

    try:
        async for message in websocket:
            try:
                data = json.loads(message)
                action = data.get("action") if isinstance(data, dict) else None
                logger.info(f"WebSocket message received: {action}")
                reply = await handle_page_message(data)
                if reply is not None:
                    await websocket.send(json.dumps(reply))
            except json.JSONDecodeError as e:
                logger.error(f"WebSocket message is not JSON: {e}")
            except DcisiveError as e:
                await websocket.send(json.dumps({"action": "error", "error": str(e)}))
            except Exception as e:  # noqa: BLE001
                logger.error(f"WebSocket message error: {e}")
                await websocket.send(json.dumps({"action": "error", "error": f"{type(e).__name__}: {e}"}))

        logger.info("WebSocket client disconnected (connection closed by client)")

    except Exception as e:  # noqa: BLE001
        logger.info(f"WebSocket connection closed with error: {e}")
    finally:
        if _ws_connection == websocket:
            _ws_connection = None
        logger.info("WebSocket client cleaned up")


async def start_websocket_server(host: str, port: int):
    """Start the WebSocket server the page agent connects to."""
    import websockets

    logger.info(f"Starting WebSocket server on ws://{host}:{port}")

    try:
        async with websockets.serve(websocket_handler, host, port):
            logger.info(f"WebSocket server listening on port {port}")
            await asyncio.Event().wait()
    except OSError as e:
        logger.error(f"WebSocket server failed to start: {e}")


@asynccontextmanager
async def lifespan(_app: FastMCP):  # type: ignore[no-untyped-def]
    """Manage server lifecycle."""
    global _client, _ws_server_task

    logger.info("Starting Dcisive tagger MCP server")

    config = ServerConfig()
    init_services(config)
    logger.info(f"Dcisive client initialized with base URL: {config.api_base_url}")

    _ws_server_task = asyncio.create_task(
        start_websocket_server(config.websocket_host, config.websocket_port)
    )

    yield

    logger.info("Shutting down Dcisive tagger MCP server")

    if _ws_server_task:
        _ws_server_task.cancel()
        try:
            await _ws_server_task
        except asyncio.CancelledError:
            pass
        logger.info("WebSocket server stopped")

    if _client:
        await _client.close()
        _client = None


# Initialize FastMCP server
mcp = FastMCP(
    "Dcisive Bulk Tagger",
    version="0.1.0",
    instructions="Select Dcisive gallery files and apply metadata tags to all of them at once",
    lifespan=lifespan,
)


@mcp.tool(name="dcisive_save_token", description="Save the Dcisive API bearer token")
async def dcisive_save_token(token: str) -> dict:
    return save_token(token)


@mcp.tool(name="dcisive_set_enabled", description="Enable or disable bulk tagging")
async def dcisive_set_enabled(enabled: bool) -> dict:
    return set_enabled(enabled)


@mcp.tool(name="dcisive_search_files", description="Search Dcisive files by name (max 10 results)")
async def dcisive_search_files(filename: str) -> dict:
    """Run a raw relay search. Returns the relay reply unchanged."""
    gate = get_orchestrator().credentials
    return await get_relay().handle(
        {"operation": "searchFiles", "filename": filename, "credential": gate.token}
    )


@mcp.tool(name="dcisive_toggle_selection", description="Select or deselect a gallery file by its display name")
async def dcisive_toggle_selection(filename: str, thumbnail_id: str = "") -> dict:
    selected = get_orchestrator().select(filename, thumbnail_id=thumbnail_id)
    return {"filename": filename, "selected": selected, **selection_view()}


@mcp.tool(name="dcisive_clear_selection", description="Deselect all gallery files")
async def dcisive_clear_selection() -> dict:
    get_orchestrator().registry.clear()
    return selection_view()


@mcp.tool(name="dcisive_list_selection", description="List the currently selected gallery files")
async def dcisive_list_selection() -> dict:
    return selection_view()


@mcp.tool(
    name="dcisive_apply_tag",
    description="Apply one tag to every selected file (runs in the background; poll mcp_job_status)",
)
async def dcisive_apply_tag(key: str, value: str, value_type: str = "string") -> dict:
    """Start a bulk tag run.

    Args:
        key: Tag key, e.g. "JobFolder.Number"
        value: Tag value as typed by the user
        value_type: string | number | boolean | datetime
    """
    return await start_bulk_tag(key, value, value_type)


@mcp.tool(name="dcisive_add_to_job_folder", description="Add every selected file to a Job Folder")
async def dcisive_add_to_job_folder(job_folder_number: str) -> dict:
    number = (job_folder_number or "").strip()
    if not number:
        return {"success": False, "error": "Please enter a Job Folder number"}
    return await start_bulk_tag(JOB_FOLDER_TAG_KEY, number, "string")


@mcp.tool(name="dcisive_job_folder_status", description="Show which Job Folder a gallery file belongs to")
async def dcisive_job_folder_status(filename: str) -> dict:
    resolver = get_orchestrator().resolver
    try:
        record = await resolver.resolve(filename)
    except DcisiveError as e:
        return {"success": False, "filename": filename, "error": str(e)}
    if record is None:
        return {"success": True, "filename": filename, "found": False, "job_folder_number": None}
    return {
        "success": True,
        "filename": filename,
        "found": True,
        "job_folder_number": job_folder_number(record),
    }


@mcp.tool(name="mcp_job_status", description="Get status/result for bulk tag jobs.")
async def mcp_job_status(job_id: str | None = None) -> dict:
    return job_status(job_id)


@mcp.tool(name="dcisive_status_messages", description="Recent progress and summary messages")
async def dcisive_status_messages(limit: int = 20) -> dict:
    return {"messages": status_messages(limit)}


def main() -> None:
    config = ServerConfig()
    setup_logging(config.log_level)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
