from __future__ import annotations

import json

import pytest

from dcisive_tagger.client import CredentialGate, JsonFileStore
from dcisive_tagger.client.credentials import ENABLED_KEY, TOKEN_KEY
from dcisive_tagger.models import MissingCredentialError


def test_require_without_token_raises():
    gate = CredentialGate()

    assert gate.has_token is False
    with pytest.raises(MissingCredentialError):
        gate.require()


def test_blank_token_counts_as_missing():
    assert CredentialGate(token="").has_token is False


def test_token_update_notifies_listeners():
    gate = CredentialGate(token="old")
    seen = []
    gate.subscribe(seen.append)

    gate.on_token_updated("new")

    assert gate.require() == "new"
    assert seen == ["new"]


def test_store_round_trip_and_gate_loading(tmp_path):
    path = tmp_path / "nested" / "storage.json"
    store = JsonFileStore(path)
    assert store.get(TOKEN_KEY) is None

    store.set(TOKEN_KEY, "abc")
    store.set(ENABLED_KEY, False)

    assert json.loads(path.read_text(encoding="utf-8")) == {TOKEN_KEY: "abc", ENABLED_KEY: False}
    gate = CredentialGate.from_store(store)
    assert gate.token == "abc"
    assert gate.enabled is False


def test_store_token_wins_over_fallback(tmp_path):
    store = JsonFileStore(tmp_path / "s.json")
    assert CredentialGate.from_store(store, fallback_token="env").token == "env"

    store.set(TOKEN_KEY, "saved")
    assert CredentialGate.from_store(store, fallback_token="env").token == "saved"


def test_reload_picks_up_external_writes(tmp_path):
    store = JsonFileStore(tmp_path / "s.json")
    gate = CredentialGate.from_store(store)
    seen = []
    gate.subscribe(seen.append)

    store.set(TOKEN_KEY, "fresh")
    gate.reload(store)
    gate.reload(store)

    assert gate.token == "fresh"
    assert seen == ["fresh"]


def test_corrupt_store_reads_as_empty(tmp_path):
    path = tmp_path / "storage.json"
    path.write_text("{not json", encoding="utf-8")
    store = JsonFileStore(path)

    gate = CredentialGate.from_store(store, fallback_token="env")
    assert gate.token == "env"
    assert gate.enabled is True

    store.set(TOKEN_KEY, "abc")
    assert json.loads(path.read_text(encoding="utf-8")) == {TOKEN_KEY: "abc"}
