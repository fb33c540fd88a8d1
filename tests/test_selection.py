from __future__ import annotations

from dcisive_tagger.client import SelectionRegistry
from dcisive_tagger.models import FileRecord


def test_toggle_inserts_then_removes():
    registry = SelectionRegistry()

    assert registry.toggle("a.pdf", handle=object(), thumbnail_id="abc") is True
    assert "a.pdf" in registry
    assert registry.get("a.pdf").thumbnail_id == "abc"
    assert registry.get("a.pdf").file_data is None

    assert registry.toggle("a.pdf") is False
    assert "a.pdf" not in registry
    assert registry.size() == 0


def test_double_toggle_is_a_no_op():
    registry = SelectionRegistry()
    registry.toggle("keep.pdf")

    registry.toggle("x.pdf")
    registry.toggle("x.pdf")

    assert registry.filenames() == ["keep.pdf"]


def test_iteration_keeps_insertion_order_and_filenames_are_unique():
    registry = SelectionRegistry()
    for name in ("c", "a", "b"):
        registry.toggle(name)
    registry.toggle("a")
    registry.toggle("a")

    assert registry.filenames() == ["c", "b", "a"]
    assert [item.filename for item in registry] == ["c", "b", "a"]
    assert len(registry) == 3


def test_clear_returns_removed_items():
    registry = SelectionRegistry()
    handle = object()
    registry.toggle("a", handle=handle, file_data=FileRecord(id=1, filename="a"))
    registry.toggle("b")

    removed = registry.clear()

    assert [item.filename for item in removed] == ["a", "b"]
    assert removed[0].ui_handle is handle
    assert removed[0].file_data.id == 1
    assert len(registry) == 0


def test_describe_pluralises():
    registry = SelectionRegistry()
    assert registry.describe() == "0 files selected"
    registry.toggle("a")
    assert registry.describe() == "1 file selected"
    registry.toggle("b")
    assert registry.describe() == "2 files selected"
