from __future__ import annotations

import httpx
import pytest

from dcisive_tagger.client import LocalRelayChannel, TagRelay
from dcisive_tagger.models import (
    APIConfiguration,
    FileRecord,
    SearchFilesRequest,
    SearchFilesResponse,
    Tag,
    UpdateFileRequest,
    UpdateFileResponse,
)
from dcisive_tagger.client.api_client_core import DcisiveClientCore

from .conftest import BASE_URL, make_client


@pytest.mark.asyncio
async def test_search_reply_shape(api):
    relay = TagRelay(make_client(api))

    reply = await relay.handle({"operation": "searchFiles", "filename": "Invoice 117.pdf", "credential": "good-token"})

    assert list(reply) == ["files"]
    assert reply["files"][0]["id"] == 3
    assert reply["files"][0]["storageLocation"] == "bucket/c"
    assert reply["files"][0]["tags"][0]["stringValue"] == "JF00001"


@pytest.mark.asyncio
async def test_search_expired_reply(api):
    relay = TagRelay(make_client(api))

    reply = await relay.handle({"operation": "searchFiles", "filename": "x", "credential": "old"})

    assert reply == {"expired": True, "files": []}


@pytest.mark.asyncio
async def test_update_reply_shapes(api, sample_files):
    relay = TagRelay(make_client(api))
    message = {
        "operation": "updateFile",
        "fileId": 3,
        "fileData": sample_files[2],
        "newTag": {"key": "K", "source": "user", "stringValue": "v"},
        "credential": "good-token",
    }

    assert await relay.handle(message) == {"ok": True}

    api.update_status["3"] = 422
    assert await relay.handle(message) == {"ok": False, "status": 422, "error": "boom 3"}

    assert await relay.handle({**message, "credential": "old"}) == {"expired": True, "ok": False}


@pytest.mark.asyncio
async def test_missing_credential_and_unknown_operation(api):
    relay = TagRelay(make_client(api))

    assert await relay.handle({"operation": "searchFiles", "filename": "x"}) == {"error": "No API token provided"}
    assert await relay.handle({"operation": "deleteFile", "credential": "t"}) == {"error": "Unknown operation: deleteFile"}
    assert api.requests == []


@pytest.mark.asyncio
async def test_malformed_update_is_an_error_reply(api):
    relay = TagRelay(make_client(api))

    reply = await relay.handle({"operation": "updateFile", "fileId": 1, "credential": "good-token"})

    assert reply["error"].startswith("Malformed updateFile request")
    assert api.requests == []


@pytest.mark.asyncio
async def test_transport_failure_becomes_error_reply():
    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = DcisiveClientCore(APIConfiguration(base_url=BASE_URL), transport=httpx.MockTransport(broken))
    relay = TagRelay(client)

    reply = await relay.handle({"operation": "searchFiles", "filename": "x", "credential": "t"})

    assert reply == {"error": "ConnectError: connection refused"}


@pytest.mark.asyncio
async def test_local_channel_returns_typed_responses(api, sample_files):
    channel = LocalRelayChannel(TagRelay(make_client(api)))

    found = await channel.call(SearchFilesRequest(filename="Site Plan", credential="good-token"))
    assert isinstance(found, SearchFilesResponse)
    assert found.files[0] == FileRecord.model_validate(sample_files[0])

    updated = await channel.call(
        UpdateFileRequest(
            file_id=1,
            file_data=found.files[0],
            new_tag=Tag(key="K", double_value=2),
            credential="good-token",
        )
    )
    assert isinstance(updated, UpdateFileResponse)
    assert updated.ok is True
    assert api.files["1"]["tags"][-1] == {"key": "K", "source": "user", "doubleValue": 2.0}
