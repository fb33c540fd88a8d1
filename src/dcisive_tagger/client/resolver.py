"""Resolve gallery display names to remote file records."""

from typing import Iterable

from ..models import (
    CredentialExpiredError,
    FileRecord,
    NetworkError,
    SearchFilesRequest,
    SearchFilesResponse,
)
from .api_client_core import _ClientLogger
from .credentials import CredentialGate
from .relay import RelayChannel

TRUNCATION_MARK = "..."


def strip_truncation(display_name: str) -> str:
    """Drop one trailing ellipsis added by the gallery for long names."""
    if display_name.endswith(TRUNCATION_MARK):
        return display_name[: -len(TRUNCATION_MARK)]
    return display_name


def match_candidate(display_name: str, candidates: Iterable[FileRecord]) -> FileRecord | None:
    """Pick the best search candidate for ``display_name``.

    Priority: exact filename, exact title, filename prefix, title prefix.
    Prefix rules compare against the name with a trailing "..." removed.
    """
    files = list(candidates)
    prefix = strip_truncation(display_name)

    rules = (
        lambda f: f.filename == display_name,
        lambda f: f.title == display_name,
        lambda f: (f.filename or "").startswith(prefix),
        lambda f: (f.title or "").startswith(prefix),
    )
    for rule in rules:
        for record in files:
            if rule(record):
                return record
    return None


class FileResolver:
    """Search-backed resolver with a session-scoped cache.

    The cache maps the display name (as rendered in the gallery) to the last
    known record. It is never expired, only overwritten by ``resolve`` on a
    miss and by ``refresh`` after an update.
    """

    def __init__(
        self,
        channel: RelayChannel,
        credentials: CredentialGate,
        cache: dict[str, FileRecord] | None = None,
    ):
        self.channel = channel
        self.credentials = credentials
        self.cache: dict[str, FileRecord] = cache if cache is not None else {}
        self._logger = _ClientLogger("RESOLVER")

    def cached(self, display_name: str) -> FileRecord | None:
        return self.cache.get(display_name)

    async def _search(self, display_name: str) -> FileRecord | None:
        token = self.credentials.require()
        reply: SearchFilesResponse = await self.channel.call(
            SearchFilesRequest(filename=display_name, credential=token)
        )
        if reply.expired:
            raise CredentialExpiredError()
        if reply.error:
            raise NetworkError(reply.error)
        return match_candidate(display_name, reply.files)

    async def resolve(self, display_name: str) -> FileRecord | None:
        """Return the record for ``display_name`` or None when nothing matches.

        Raises:
            MissingCredentialError: no token configured.
            CredentialExpiredError: the search was rejected with 401.
            NetworkError: the relay reported a failure.
        """
        record = self.cache.get(display_name)
        if record is not None:
            return record

        record = await self._search(display_name)
        if record is None:
            self._logger.warning(f"Could not find file: {display_name}")
            return None

        self.cache[display_name] = record
        return record

    async def refresh(self, display_name: str) -> FileRecord | None:
        """Re-run the search, bypassing the cache, and overwrite the entry on a match."""
        record = await self._search(display_name)
        if record is not None:
            self.cache[display_name] = record
        return record
