"""Credential gate and the persistent key-value store it reads from."""

import json
import os
from contextlib import suppress
from pathlib import Path
from typing import Any, Callable, Protocol

from ..models import MissingCredentialError
from .api_client_core import _ClientLogger

TOKEN_KEY = "dcisive_token"
ENABLED_KEY = "dcisive_enabled"

_logger = _ClientLogger("STORE")


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...


class JsonFileStore:
    """Tiny JSON-file backed store (the extension's local storage equivalent)."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            _logger.error(f"Unreadable store {self.path}, treating as empty: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)

        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        # The file holds a bearer token
        with suppress(OSError):
            os.chmod(tmp, 0o600)
        tmp.replace(self.path)


class CredentialGate:
    """Holds the process-wide bearer token.

    The gate only reads the store; writes happen elsewhere (the config
    surface) and reach the gate through ``on_token_updated``. A 401 from the
    API never clears the token, it is only reported as expired.
    """

    def __init__(self, token: str | None = None, enabled: bool = True):
        self._token = token or None
        self.enabled = enabled
        self._listeners: list[Callable[[str | None], None]] = []
        self._logger = _ClientLogger("CREDENTIALS")

    @classmethod
    def from_store(cls, store: KeyValueStore, fallback_token: str | None = None) -> "CredentialGate":
        token = store.get(TOKEN_KEY) or fallback_token
        enabled = store.get(ENABLED_KEY, True)
        return cls(token=token, enabled=bool(enabled))

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def has_token(self) -> bool:
        return bool(self._token)

    def require(self) -> str:
        """Return the token or fail fast.

        Raises:
            MissingCredentialError: no token has been configured.
        """
        if not self._token:
            raise MissingCredentialError()
        return self._token

    def subscribe(self, listener: Callable[[str | None], None]) -> None:
        self._listeners.append(listener)

    def on_token_updated(self, token: str | None) -> None:
        """Apply a TOKEN_UPDATED notification."""
        self._token = token or None
        self._logger.info("Token updated")
        for listener in list(self._listeners):
            listener(self._token)

    def reload(self, store: KeyValueStore) -> None:
        self.enabled = bool(store.get(ENABLED_KEY, True))
        token = store.get(TOKEN_KEY)
        if token != self._token:
            self.on_token_updated(token)
