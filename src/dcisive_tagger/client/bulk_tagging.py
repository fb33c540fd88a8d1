"""Bulk tag orchestration over the current selection.

One run walks the selection strictly sequentially:

    IDLE -> VALIDATING_CREDENTIAL -> ABORTED
                                  -> PROCESSING -> (RESOLVING -> UPDATING)* -> COMPLETE -> IDLE

Item i+1 is not started before item i's update call has returned. That is
the only throttle in front of the API besides the executor's 429 backoff, so
do not parallelise this loop.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from ..models import (
    BatchResult,
    CredentialExpiredError,
    DcisiveError,
    FileRecord,
    ItemStatus,
    MissingCredentialError,
    NetworkError,
    OperationOutcome,
    Tag,
    UpdateFailedError,
    UpdateFileRequest,
    UpdateFileResponse,
)
from .api_client_core import _ClientLogger
from .credentials import CredentialGate
from .relay import RelayChannel
from .resolver import FileResolver
from .selection import SelectionRegistry
from .tag_encoding import build_tag

DEFAULT_REFRESH_DELAY = 1.5


class OrchestratorState(str, Enum):
    IDLE = "idle"
    VALIDATING_CREDENTIAL = "validating_credential"
    ABORTED = "aborted"
    PROCESSING = "processing"
    RESOLVING = "resolving"
    UPDATING = "updating"
    COMPLETE = "complete"


class StatusSink(Protocol):
    """Where user-visible progress goes (toasts in the page agent)."""

    def notify(self, message: str, level: str = "info") -> None: ...

    async def refresh_gallery(self) -> None: ...


class LoggingStatusSink:
    """Status sink that only writes to the client log."""

    def __init__(self) -> None:
        self._logger = _ClientLogger("STATUS")

    def notify(self, message: str, level: str = "info") -> None:
        if level == "error":
            self._logger.error(message)
        else:
            self._logger.info(message)

    async def refresh_gallery(self) -> None:
        self._logger.info("Gallery refresh requested")


class BulkTagOrchestrator:
    """Apply one tag to every selected file and account for each outcome."""

    def __init__(
        self,
        channel: RelayChannel,
        credentials: CredentialGate,
        resolver: FileResolver | None = None,
        registry: SelectionRegistry | None = None,
        sink: StatusSink | None = None,
        refresh_delay: float = DEFAULT_REFRESH_DELAY,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.channel = channel
        self.credentials = credentials
        self.resolver = resolver or FileResolver(channel, credentials)
        self.registry = registry or SelectionRegistry()
        self.sink: StatusSink = sink or LoggingStatusSink()
        self.refresh_delay = refresh_delay
        self._sleep = sleep or asyncio.sleep
        self._logger = _ClientLogger("BULK")

        self.state = OrchestratorState.IDLE
        # States visited by the most recent run, in order.
        self.transitions: list[OrchestratorState] = []
        self._refresh_task: asyncio.Task | None = None

    def _enter(self, state: OrchestratorState) -> None:
        self.state = state
        self.transitions.append(state)

    def select(self, filename: str, handle: Any = None, thumbnail_id: str = "") -> bool:
        """Toggle a card, pre-filling any record the resolver already knows."""
        return self.registry.toggle(
            filename,
            handle=handle,
            thumbnail_id=thumbnail_id,
            file_data=self.resolver.cached(filename),
        )

    async def apply_tag(self, key: str, value: str, value_type: str = "string") -> BatchResult:
        """Tag every selected file with ``key = value``.

        Raises:
            MissingCredentialError: no token configured; nothing was touched.
            RuntimeError: another run is still in progress.
        """
        if self.state is not OrchestratorState.IDLE:
            raise RuntimeError(f"A bulk tag run is already in progress ({self.state.value})")

        self.transitions = []
        self._enter(OrchestratorState.VALIDATING_CREDENTIAL)
        if not self.credentials.has_token:
            self._enter(OrchestratorState.ABORTED)
            err = MissingCredentialError()
            self.sink.notify(str(err), "error")
            self._enter(OrchestratorState.IDLE)
            raise err

        self._enter(OrchestratorState.PROCESSING)
        filenames = self.registry.filenames()
        total = len(filenames)
        result = BatchResult(key=key, value=value)

        try:
            self.sink.notify(f"Tagging {total} files...", "info")
            for index, filename in enumerate(filenames, start=1):
                self.sink.notify(f"Processing {index}/{total}: {filename}", "info")
                outcome = await self._process_item(filename, key, value, value_type)
                result.outcomes.append(outcome)

            if result.error_count == 0:
                self.sink.notify(
                    f"Tagged {result.success_count} files with {key} = {value}. Refreshing...", "success"
                )
            else:
                self.sink.notify(
                    f"Tagged {result.success_count} files, {result.error_count} failed", "error"
                )
        except BaseException:
            self._enter(OrchestratorState.IDLE)
            raise
        finally:
            self.registry.clear()

        if result.success_count > 0:
            self._refresh_task = asyncio.create_task(self._refresh_after_delay())
            result.refresh_scheduled = True

        self._enter(OrchestratorState.COMPLETE)
        self._logger.info(f"Bulk tag {key} = {value}: {result.summary()}")
        self._enter(OrchestratorState.IDLE)
        return result

    async def _process_item(self, filename: str, key: str, value: str, value_type: str) -> OperationOutcome:
        self._enter(OrchestratorState.RESOLVING)
        try:
            record = await self.resolver.resolve(filename)
        except CredentialExpiredError as err:
            self.sink.notify(str(err), "error")
            return OperationOutcome(filename, ItemStatus.RESOLUTION_FAILED, "credential expired")
        except DcisiveError as err:
            self._logger.error(f"Search error for {filename}: {err}")
            return OperationOutcome(filename, ItemStatus.RESOLUTION_FAILED, str(err))

        if record is None:
            return OperationOutcome(filename, ItemStatus.RESOLUTION_FAILED, "not found")

        item = self.registry.get(filename)
        if item is not None:
            item.file_data = record

        self._enter(OrchestratorState.UPDATING)
        try:
            tag = build_tag(key, value, value_type)
            await self._submit_update(record, tag)
        except CredentialExpiredError as err:
            self.sink.notify(str(err), "error")
            return OperationOutcome(filename, ItemStatus.UPDATE_FAILED, "credential expired")
        except UpdateFailedError as err:
            self._logger.error(f"Error tagging {filename}: status={err.status} body={err.body}")
            return OperationOutcome(filename, ItemStatus.UPDATE_FAILED, f"{err} {err.body}".strip())
        except (DcisiveError, ValueError) as err:
            self._logger.error(f"Error tagging {filename}: {err}")
            return OperationOutcome(filename, ItemStatus.UPDATE_FAILED, str(err))

        # Later runs must see the new tag set, so replace the cached record.
        try:
            refreshed = await self.resolver.refresh(filename)
        except DcisiveError as err:
            self._logger.warning(f"Cache refresh failed for {filename}: {err}")
            refreshed = None
        if item is not None and refreshed is not None:
            item.file_data = refreshed

        return OperationOutcome(filename, ItemStatus.SUCCESS)

    async def _submit_update(self, record: FileRecord, tag: Tag) -> None:
        token = self.credentials.require()
        reply: UpdateFileResponse = await self.channel.call(
            UpdateFileRequest(file_id=record.id, file_data=record, new_tag=tag, credential=token)
        )
        if reply.expired:
            raise CredentialExpiredError()
        if reply.ok:
            return
        if reply.status is None:
            raise NetworkError(reply.error or "Update failed")
        raise UpdateFailedError(reply.status, reply.error or "")

    async def _refresh_after_delay(self) -> None:
        # Give the remote index a moment to pick up the new tags.
        await self._sleep(self.refresh_delay)
        await self.sink.refresh_gallery()

    async def wait_for_refresh(self) -> None:
        """Await the pending gallery refresh, if one was scheduled."""
        if self._refresh_task is not None:
            task, self._refresh_task = self._refresh_task, None
            await task
