"""Dcisive data models, relay messages and error types."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class APIConfiguration(BaseModel):
    """Connection settings for the Dcisive REST API."""

    api_key: SecretStr | None = None
    base_url: str = "https://api.au.dcisive.io"
    timeout: float = 30.0
    max_retries: int = 3


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class DcisiveError(Exception):
    """Base class for all tagging errors."""


class MissingCredentialError(DcisiveError):
    """No API token has been configured."""

    def __init__(self, message: str = "No API token. Save one with dcisive_save_token.") -> None:
        super().__init__(message)


class CredentialExpiredError(DcisiveError):
    """The remote API rejected the token (HTTP 401)."""

    def __init__(self, message: str = "Token expired. Please update it.") -> None:
        super().__init__(message)


class NetworkError(DcisiveError):
    """A request produced no usable response (transport error or relay error reply)."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class UpdateFailedError(NetworkError):
    """The update endpoint answered with a non-2xx, non-401 status."""

    def __init__(self, status: int | None, body: str = "") -> None:
        super().__init__(f"Update failed: {status}", status=status)
        self.body = body


# ---------------------------------------------------------------------------
# Remote records
# ---------------------------------------------------------------------------


class Tag(BaseModel):
    """A typed key/value metadata entry. Exactly one value field is set."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    key: str
    source: str = "user"
    date_time_value: str | None = Field(default=None, alias="dateTimeValue")
    double_value: float | None = Field(default=None, alias="doubleValue")
    bool_value: bool | None = Field(default=None, alias="boolValue")
    string_value: str | None = Field(default=None, alias="stringValue")


class FileRecord(BaseModel):
    """A file as returned by /v1/files/search."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | int
    filename: str | None = None
    title: str | None = None
    storage_id: int | str | None = Field(default=None, alias="storageId")
    storage_location: str | None = Field(default=None, alias="storageLocation")
    tags: list[Tag] = Field(default_factory=list)

    def find_tag(self, key: str) -> Tag | None:
        for tag in self.tags:
            if tag.key == key:
                return tag
        return None


# ---------------------------------------------------------------------------
# Relay channel messages
# ---------------------------------------------------------------------------


class SearchFilesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    operation: Literal["searchFiles"] = "searchFiles"
    filename: str
    credential: str | None = None


class UpdateFileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    operation: Literal["updateFile"] = "updateFile"
    file_id: str | int = Field(alias="fileId")
    file_data: FileRecord = Field(alias="fileData")
    new_tag: Tag = Field(alias="newTag")
    credential: str | None = None


class SearchFilesResponse(BaseModel):
    files: list[FileRecord] = Field(default_factory=list)
    expired: bool = False
    error: str | None = None


class UpdateFileResponse(BaseModel):
    ok: bool = False
    expired: bool = False
    status: int | None = None
    error: str | None = None


RelayRequest = SearchFilesRequest | UpdateFileRequest


# ---------------------------------------------------------------------------
# Agent-side state
# ---------------------------------------------------------------------------


@dataclass
class SelectionItem:
    """One user-picked gallery card.

    ``ui_handle`` is whatever the page agent uses to find the card again; the
    core never inspects it.
    """

    filename: str
    ui_handle: Any = None
    thumbnail_id: str = ""
    file_data: FileRecord | None = None


class ItemStatus(str, Enum):
    SUCCESS = "success"
    RESOLUTION_FAILED = "resolution_failed"
    UPDATE_FAILED = "update_failed"


@dataclass
class OperationOutcome:
    filename: str
    status: ItemStatus
    detail: str | None = None


@dataclass
class BatchResult:
    """Aggregated outcome of one bulk tag run."""

    key: str
    value: str
    outcomes: list[OperationOutcome] = field(default_factory=list)
    refresh_scheduled: bool = False

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status is ItemStatus.SUCCESS)

    @property
    def error_count(self) -> int:
        return len(self.outcomes) - self.success_count

    def summary(self) -> str:
        return f"{self.success_count} succeeded, {self.error_count} failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "refresh_scheduled": self.refresh_scheduled,
            "outcomes": [
                {"filename": o.filename, "status": o.status.value, "detail": o.detail}
                for o in self.outcomes
            ],
        }
