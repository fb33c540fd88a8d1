"""Server configuration and logging setup."""

import logging
import sys
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import APIConfiguration

DEFAULT_STORE_PATH = Path.home() / ".dcisive_tagger" / "storage.json"


class ServerConfig(BaseSettings):
    """Settings read from the environment (DCISIVE_*) or a local .env file."""

    model_config = SettingsConfigDict(
        env_prefix="DCISIVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_base_url: str = "https://api.au.dcisive.io"
    # Seed token; the persisted store wins once a token has been saved there.
    api_token: SecretStr | None = None
    request_timeout: float = 30.0
    max_retries: int = Field(default=3, ge=0)

    store_path: Path = DEFAULT_STORE_PATH

    websocket_host: str = "localhost"
    websocket_port: int = 8765

    gallery_refresh_delay: float = 1.5
    log_level: str = "INFO"

    def get_api_config(self) -> APIConfiguration:
        return APIConfiguration(
            api_key=self.api_token,
            base_url=self.api_base_url,
            timeout=self.request_timeout,
            max_retries=self.max_retries,
        )


def setup_logging(level: str = "INFO") -> None:
    """Route the stdlib logging module to stderr with a single handler."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    has_console = any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
        for h in root.handlers
    )
    if not has_console:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
