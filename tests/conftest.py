from __future__ import annotations

import copy
import re
from typing import Any

import httpx
import pytest

from dcisive_tagger.client import (
    BulkTagOrchestrator,
    CredentialGate,
    DcisiveClientCore,
    FileResolver,
    LocalRelayChannel,
    SelectionRegistry,
    TagRelay,
)
from dcisive_tagger.models import APIConfiguration

BASE_URL = "https://api.dcisive.test"


def parse_form(request: httpx.Request) -> dict[str, str]:
    """Decode the hand-built multipart body back into ``{field: value}``."""
    boundary = request.headers["Content-Type"].split("boundary=", 1)[1]
    body = request.content.decode("utf-8")
    fields: dict[str, str] = {}
    for part in body.split(f"--{boundary}"):
        if not part.strip() or part.strip() == "--":
            continue
        header, _, value = part.partition("\r\n\r\n")
        name = re.search(r'name="([^"]+)"', header).group(1)
        fields[name] = value[: -len("\r\n")] if value.endswith("\r\n") else value
    return fields


def tags_from_form(fields: dict[str, str]) -> list[dict[str, Any]]:
    tags: dict[int, dict[str, Any]] = {}
    for name, value in fields.items():
        match = re.fullmatch(r"Tags\[(\d+)\]\[(\w+)\]", name)
        if not match:
            continue
        index, attr = int(match.group(1)), match.group(2)
        tag = tags.setdefault(index, {})
        if attr == "doubleValue":
            tag[attr] = float(value)
        elif attr == "boolValue":
            tag[attr] = value == "true"
        else:
            tag[attr] = value
    return [tags[i] for i in sorted(tags)]


class FakeDcisiveApi:
    """In-memory stand-in for the Dcisive REST API behind httpx.MockTransport."""

    def __init__(self, files: list[dict[str, Any]] | None = None, token: str = "good-token"):
        self.files: dict[str, dict[str, Any]] = {str(f["id"]): copy.deepcopy(f) for f in files or []}
        self.token = token
        self.requests: list[httpx.Request] = []
        # Per-file-id status override for PUT (e.g. {"3": 500})
        self.update_status: dict[str, int] = {}
        # Statuses to return before the normal answer, consumed in order
        self.queued_statuses: list[int] = []

    @property
    def search_calls(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "GET"]

    @property
    def update_calls(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "PUT"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if self.queued_statuses:
            return httpx.Response(self.queued_statuses.pop(0), text="queued")

        if request.headers.get("Authorization") != f"Bearer {self.token}":
            return httpx.Response(401, json={"error": "unauthorized"})

        if request.method == "GET" and request.url.path == "/v1/files/search":
            query = request.url.params["query"]
            needle = query[:-3] if query.endswith("...") else query
            limit = int(request.url.params["limit"])
            hits = [
                f
                for f in self.files.values()
                if needle.lower() in (f.get("filename") or "").lower()
                or needle.lower() in (f.get("title") or "").lower()
            ]
            return httpx.Response(200, json={"data": copy.deepcopy(hits[:limit])})

        if request.method == "PUT" and request.url.path.startswith("/v1/files/"):
            file_id = request.url.path.rsplit("/", 1)[1]
            status = self.update_status.get(file_id)
            if status is not None:
                return httpx.Response(status, text=f"boom {file_id}")
            if file_id not in self.files:
                return httpx.Response(404, text="no such file")
            fields = parse_form(request)
            self.files[file_id]["tags"] = tags_from_form(fields)
            return httpx.Response(204)

        return httpx.Response(404, text="unknown route")


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class RecordingSink:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []
        self.refreshes = 0

    def notify(self, message: str, level: str = "info") -> None:
        self.messages.append((message, level))

    async def refresh_gallery(self) -> None:
        self.refreshes += 1

    def texts(self, level: str | None = None) -> list[str]:
        return [m for m, lvl in self.messages if level is None or lvl == level]


def make_client(api: FakeDcisiveApi, sleep: SleepRecorder | None = None, **config: Any) -> DcisiveClientCore:
    return DcisiveClientCore(
        APIConfiguration(base_url=BASE_URL, **config),
        transport=httpx.MockTransport(api),
        sleep=sleep or SleepRecorder(),
    )


@pytest.fixture
def sample_files() -> list[dict[str, Any]]:
    return [
        {
            "id": 1,
            "filename": "Site Plan.pdf",
            "title": "Site Plan",
            "storageId": 4,
            "storageLocation": "bucket/a",
            "tags": [{"key": "Owner", "source": "user", "stringValue": "Ana"}],
        },
        {
            "id": 2,
            "filename": "Roof Inspection Report 2024 Final Version.pdf",
            "title": None,
            "storageId": 4,
            "storageLocation": "bucket/b",
            "tags": [],
        },
        {
            "id": 3,
            "filename": "Invoice 117.pdf",
            "title": "Invoice 117",
            "storageId": None,
            "storageLocation": "bucket/c",
            "tags": [{"key": "JobFolder.Number", "source": "user", "stringValue": "JF00001"}],
        },
    ]


@pytest.fixture
def api(sample_files) -> FakeDcisiveApi:
    return FakeDcisiveApi(sample_files)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def orchestrator(api, sleeps, sink) -> BulkTagOrchestrator:
    channel = LocalRelayChannel(TagRelay(make_client(api, sleeps)))
    gate = CredentialGate(token="good-token")
    return BulkTagOrchestrator(
        channel,
        gate,
        resolver=FileResolver(channel, gate),
        registry=SelectionRegistry(),
        sink=sink,
        sleep=sleeps,
    )
