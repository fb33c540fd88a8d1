"""Tag merge, tag construction and multipart encoding for file updates.

Everything here is pure apart from reading the clock (update timestamp and
boundary). The relay calls ``merge_tags`` + ``encode_update_form`` for every
``updateFile`` message; the orchestrator calls ``build_tag`` to turn the
user's ``(key, value, type)`` triple into a ``Tag``.

Wire format of the update form (one ``form-data`` part per field)::

    Title, Filename, StorageId, StorageLocation,
    FileUpdatedDate, FileUpdatedBy,
    Tags[i][key], Tags[i][source], Tags[i][<oneValueField>]
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from ..models import FileRecord, Tag

UPDATED_BY = "Dcisive Prototyping"
UNTITLED = "Untitled"
DEFAULT_STORAGE_ID = 1
DEFAULT_TAG_SOURCE = "user"
JOB_FOLDER_TAG_KEY = "JobFolder.Number"

_BOUNDARY_PREFIX = "----DcisiveExt"
_boundary_lock = threading.Lock()
_last_boundary_ns = 0


@dataclass(frozen=True)
class EncodedForm:
    body: bytes
    boundary: str

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"


def merge_tags(existing: Sequence[Tag], new_tag: Tag) -> list[Tag]:
    """Replace-on-key merge: drop tags sharing ``new_tag.key``, append ``new_tag`` last."""
    merged = [tag for tag in existing if tag.key != new_tag.key]
    merged.append(new_tag)
    return merged


def format_timestamp(moment: datetime) -> str:
    """Render ``moment`` as UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _parse_number(value: str) -> float:
    number = float(value.strip())
    if not math.isfinite(number):
        raise ValueError(f"Not a finite number: {value!r}")
    return number


def _parse_datetime(value: str) -> str:
    text = value.strip()
    if text.endswith(("z", "Z")):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError as err:
        raise ValueError(f"Not a valid date/time: {value!r}") from err
    return format_timestamp(moment)


def build_tag(key: str, value: str, value_type: str = "string") -> Tag:
    """Build a user-sourced tag from the submitted form values.

    ``number`` is parsed as float, ``datetime`` normalised to a UTC
    timestamp, ``boolean`` is true only for ``"true"`` / ``"1"``. Any other
    type is stored as a plain string.

    Raises:
        ValueError: the value cannot be parsed as the requested type.
    """
    if not isinstance(value, str):
        raise ValueError(f"Tag value must be text, got {type(value).__name__}")
    if value_type == "number":
        return Tag(key=key, source=DEFAULT_TAG_SOURCE, double_value=_parse_number(value))
    if value_type == "datetime":
        return Tag(key=key, source=DEFAULT_TAG_SOURCE, date_time_value=_parse_datetime(value))
    if value_type == "boolean":
        return Tag(key=key, source=DEFAULT_TAG_SOURCE, bool_value=value in ("true", "1"))
    return Tag(key=key, source=DEFAULT_TAG_SOURCE, string_value=value)


def _format_number(value: float) -> str:
    # Match how the web app prints numbers: 12.0 -> "12"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


def _tag_value_field(tag: Tag) -> tuple[str, str] | None:
    if tag.date_time_value is not None:
        return "dateTimeValue", tag.date_time_value
    if tag.double_value is not None:
        return "doubleValue", _format_number(tag.double_value)
    if tag.bool_value is not None:
        return "boolValue", "true" if tag.bool_value else "false"
    if tag.string_value is not None:
        return "stringValue", tag.string_value
    return None


def new_boundary() -> str:
    """Return a time-derived boundary, strictly increasing within this process."""
    global _last_boundary_ns
    with _boundary_lock:
        stamp = max(time.time_ns(), _last_boundary_ns + 1)
        _last_boundary_ns = stamp
    return f"{_BOUNDARY_PREFIX}{stamp}"


def encode_update_form(
    record: FileRecord,
    tags: Sequence[Tag],
    now: datetime | None = None,
    boundary: str | None = None,
) -> EncodedForm:
    """Serialise a file update as the multipart body PUT /v1/files/{id} expects."""
    boundary = boundary or new_boundary()
    now = now or datetime.now(timezone.utc)
    parts: list[str] = []

    def add_field(name: str, value: str) -> None:
        parts.append(
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
            f"{value}\r\n"
        )

    storage_id = record.storage_id if record.storage_id not in (None, "", 0) else DEFAULT_STORAGE_ID

    add_field("Title", record.title or record.filename or UNTITLED)
    add_field("Filename", record.filename or "")
    add_field("StorageId", str(storage_id))
    add_field("StorageLocation", record.storage_location or "")
    add_field("FileUpdatedDate", format_timestamp(now))
    add_field("FileUpdatedBy", UPDATED_BY)

    for index, tag in enumerate(tags):
        add_field(f"Tags[{index}][key]", tag.key)
        add_field(f"Tags[{index}][source]", tag.source or DEFAULT_TAG_SOURCE)
        value_field = _tag_value_field(tag)
        if value_field is not None:
            name, value = value_field
            add_field(f"Tags[{index}][{name}]", value)

    parts.append(f"--{boundary}--\r\n")
    return EncodedForm(body="".join(parts).encode("utf-8"), boundary=boundary)


def job_folder_number(record: FileRecord) -> str | None:
    """Return the file's Job Folder number, if it carries a string one."""
    tag = record.find_tag(JOB_FOLDER_TAG_KEY)
    if tag is not None and tag.string_value:
        return tag.string_value
    return None
