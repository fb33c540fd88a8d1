"""Dcisive API client package."""

from .api_client_core import DcisiveClientCore, log_event
from .bulk_tagging import BulkTagOrchestrator, LoggingStatusSink, OrchestratorState, StatusSink
from .credentials import CredentialGate, JsonFileStore, KeyValueStore
from .relay import LocalRelayChannel, RelayChannel, TagRelay
from .resolver import FileResolver, match_candidate
from .selection import SelectionRegistry
from .tag_encoding import build_tag, encode_update_form, job_folder_number, merge_tags

__all__ = [
    "BulkTagOrchestrator",
    "CredentialGate",
    "DcisiveClientCore",
    "FileResolver",
    "JsonFileStore",
    "KeyValueStore",
    "LocalRelayChannel",
    "LoggingStatusSink",
    "OrchestratorState",
    "RelayChannel",
    "SelectionRegistry",
    "StatusSink",
    "TagRelay",
    "build_tag",
    "encode_update_form",
    "job_folder_number",
    "log_event",
    "match_candidate",
    "merge_tags",
]
