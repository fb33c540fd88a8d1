"""Dcisive API client - request execution, bearer auth, search and update."""

import asyncio
import sys
from datetime import datetime
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from ..models import (
    APIConfiguration,
    FileRecord,
    MissingCredentialError,
    SearchFilesResponse,
    Tag,
    UpdateFileResponse,
)
from .tag_encoding import encode_update_form, merge_tags

# Remote search returns at most this many candidates per query.
SEARCH_LIMIT = 10

HTTP_UNAUTHORIZED = 401
HTTP_TOO_MANY_REQUESTS = 429


def log_event(message: str, component: str = "CLIENT") -> None:
    """Log an event to stderr with timestamp and consistent formatting."""
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    print(f"[{timestamp}] [{component}] {message}", file=sys.stderr, flush=True)


def _log(message: str, component: str = "CLIENT") -> None:
    """Unified log wrapper used throughout the client package.

    Everything goes through ``log_event`` so that the stderr stream keeps a
    single DATETIME+TAG prefix. The MCP stdio transport owns stdout, and the
    stdlib logging configuration of the host is not guaranteed, so plain
    stderr prints are the one channel that always surfaces.
    """
    log_event(message, component)


class _ClientLogger:
    """Lightweight logger that delegates to _log / log_event.

    Methods accept arbitrary *args/**kwargs for compatibility with the
    logging.Logger call style but only the first message argument is used.
    """

    def __init__(self, component: str = "CLIENT") -> None:
        self._component = component

    def _msg(self, msg: object) -> str:
        try:
            return str(msg)
        except Exception:
            return repr(msg)

    def info(self, msg: object, *args: object, **kwargs: object) -> None:  # noqa: D401
        """Info-level log (no explicit level tag; message already descriptive)."""
        _log(self._msg(msg), self._component)

    def warning(self, msg: object, *args: object, **kwargs: object) -> None:
        _log(f"WARNING: {self._msg(msg)}", self._component)

    def error(self, msg: object, *args: object, **kwargs: object) -> None:
        _log(f"ERROR: {self._msg(msg)}", self._component)

    def debug(self, msg: object, *args: object, **kwargs: object) -> None:
        _log(f"DEBUG: {self._msg(msg)}", self._component)


class DcisiveClientCore:
    """Core Dcisive API client used by the relay.

    The only two remote operations are file search and file update. Both go
    through ``execute`` which retries on HTTP 429 with exponential backoff
    and otherwise hands the response back untouched.
    """

    def __init__(
        self,
        config: APIConfiguration,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        """Initialize the Dcisive API client."""
        self.config = config
        self.base_url = config.base_url
        self.max_retries = config.max_retries
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self._client: httpx.AsyncClient | None = None
        self._logger = _ClientLogger("RELAY")

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Accept": "application/json"},
                timeout=httpx.Timeout(self.config.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "DcisiveClientCore":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    def _auth_headers(self, token: str | None) -> dict[str, str]:
        """Build the bearer header, falling back to the configured key.

        Raises:
            MissingCredentialError: no token passed and none configured.
        """
        if not token and self.config.api_key is not None:
            token = self.config.api_key.get_secret_value()
        if not token:
            raise MissingCredentialError("No API token provided")
        return {"Authorization": f"Bearer {token}"}

    async def execute(self, request: httpx.Request) -> httpx.Response:
        """Send ``request``, retrying only while the server answers 429.

        Backoff is ``2 ** attempt`` seconds (1s, 2s, 4s with the default
        ceiling of 3). Once retries are exhausted the last 429 response is
        returned as-is; callers classify status codes themselves.
        """
        attempt = 0
        while True:
            response = await self.client.send(request)

            if response.status_code == HTTP_TOO_MANY_REQUESTS and attempt < self.max_retries:
                delay = float(2 ** attempt)
                attempt += 1
                self._logger.info(
                    f"Rate limited (429) on {request.method} {request.url.path}, "
                    f"retrying in {delay:g}s (attempt {attempt}/{self.max_retries})"
                )
                await response.aclose()
                await self._sleep(delay)
                continue

            return response

    async def search_files(self, filename: str, token: str | None = None) -> SearchFilesResponse:
        """Search the remote index for up to ``SEARCH_LIMIT`` candidates."""
        headers = self._auth_headers(token)
        request = self.client.build_request(
            "GET",
            f"/v1/files/search?query={quote(filename, safe='')}&limit={SEARCH_LIMIT}",
            headers=headers,
        )
        response = await self.execute(request)

        if response.status_code == HTTP_UNAUTHORIZED:
            return SearchFilesResponse(expired=True, files=[])

        if not response.is_success:
            self._logger.warning(f"Search for {filename!r} failed: {response.status_code}")
            return SearchFilesResponse(error=f"Search failed: {response.status_code}", files=[])

        try:
            payload = response.json()
        except ValueError:
            return SearchFilesResponse(error="Invalid response format from API", files=[])

        files: list[FileRecord] = []
        raw_files = payload.get("data") if isinstance(payload, dict) else None
        for raw in raw_files or []:
            try:
                files.append(FileRecord.model_validate(raw))
            except ValidationError as err:
                self._logger.warning(f"Skipping malformed search result for {filename!r}: {err}")
        return SearchFilesResponse(files=files)

    async def update_file(
        self,
        file_id: str | int,
        file_data: FileRecord,
        new_tag: Tag,
        token: str | None = None,
    ) -> UpdateFileResponse:
        """Merge ``new_tag`` into the record's tags and PUT the multipart form."""
        headers = self._auth_headers(token)
        tags = merge_tags(file_data.tags, new_tag)
        form = encode_update_form(file_data, tags)
        headers["Content-Type"] = form.content_type

        request = self.client.build_request(
            "PUT",
            f"/v1/files/{file_id}",
            headers=headers,
            content=form.body,
        )
        response = await self.execute(request)

        if response.status_code == HTTP_UNAUTHORIZED:
            return UpdateFileResponse(expired=True, ok=False)

        if not response.is_success:
            error_text = response.text
            self._logger.error(f"Update failed for file {file_id}: {response.status_code} {error_text}")
            return UpdateFileResponse(ok=False, status=response.status_code, error=error_text)

        return UpdateFileResponse(ok=True)
