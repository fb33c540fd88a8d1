"""Relay between the page agent and the Dcisive API.

The page agent cannot reach the API directly, so every remote call is sent
as a message and answered asynchronously:

    {"operation": "searchFiles", "filename", "credential"}
        -> {"files": [...]} | {"expired": true, "files": []} | {"error": "..."}
    {"operation": "updateFile", "fileId", "fileData", "newTag", "credential"}
        -> {"ok": true} | {"expired": true, "ok": false} | {"ok": false, "status", "error"}

``TagRelay.handle`` is the privileged end; it never raises, every failure
becomes an ``error`` reply. ``RelayChannel`` is the typed agent end.
"""

from typing import Any, Protocol, overload

import httpx
from pydantic import ValidationError

from ..models import (
    MissingCredentialError,
    RelayRequest,
    SearchFilesRequest,
    SearchFilesResponse,
    UpdateFileRequest,
    UpdateFileResponse,
)
from .api_client_core import DcisiveClientCore, _ClientLogger


class TagRelay:
    """Dispatch relay messages to the API client."""

    def __init__(self, client: DcisiveClientCore):
        self.client = client
        self._logger = _ClientLogger("RELAY")

    async def handle(self, message: dict[str, Any]) -> dict[str, Any]:
        operation = message.get("operation")
        if not message.get("credential"):
            return {"error": "No API token provided"}

        try:
            if operation == "searchFiles":
                search = SearchFilesRequest.model_validate(message)
                found = await self.client.search_files(search.filename, search.credential)
                if found.expired:
                    return {"expired": True, "files": []}
                if found.error:
                    return {"error": found.error, "files": []}
                return {
                    "files": [
                        f.model_dump(mode="json", by_alias=True, exclude_none=True) for f in found.files
                    ]
                }

            if operation == "updateFile":
                update = UpdateFileRequest.model_validate(message)
                updated = await self.client.update_file(
                    update.file_id, update.file_data, update.new_tag, update.credential
                )
                if updated.expired:
                    return {"expired": True, "ok": False}
                if not updated.ok:
                    return {"ok": False, "status": updated.status, "error": updated.error or ""}
                return {"ok": True}

        except ValidationError as err:
            return {"error": f"Malformed {operation} request: {err.error_count()} invalid field(s)"}
        except MissingCredentialError as err:
            return {"error": str(err)}
        except httpx.HTTPError as err:
            self._logger.error(f"{operation} transport failure: {type(err).__name__}: {err}")
            return {"error": f"{type(err).__name__}: {err}"}

        return {"error": f"Unknown operation: {operation}"}


class RelayChannel(Protocol):
    """Asynchronous request/response channel from the agent to the relay."""

    @overload
    async def call(self, request: SearchFilesRequest) -> SearchFilesResponse: ...

    @overload
    async def call(self, request: UpdateFileRequest) -> UpdateFileResponse: ...

    async def call(self, request: RelayRequest) -> SearchFilesResponse | UpdateFileResponse: ...


def parse_relay_reply(
    request: RelayRequest, reply: dict[str, Any]
) -> SearchFilesResponse | UpdateFileResponse:
    """Turn a raw relay reply into the response model matching ``request``."""
    if isinstance(request, SearchFilesRequest):
        return SearchFilesResponse.model_validate(reply)
    return UpdateFileResponse.model_validate(reply)


class LocalRelayChannel:
    """In-process channel: hands messages straight to a ``TagRelay``."""

    def __init__(self, relay: TagRelay):
        self.relay = relay

    async def call(self, request: RelayRequest) -> SearchFilesResponse | UpdateFileResponse:
        message = request.model_dump(mode="json", by_alias=True)
        reply = await self.relay.handle(message)
        return parse_relay_reply(request, reply)
