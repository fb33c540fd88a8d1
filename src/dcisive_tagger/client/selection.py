"""Ordered, filename-keyed set of selected gallery cards."""

from typing import Any, Iterator

from ..models import FileRecord, SelectionItem


class SelectionRegistry:
    def __init__(self) -> None:
        # dicts keep insertion order, which is the iteration order callers see
        self._items: dict[str, SelectionItem] = {}

    def toggle(
        self,
        filename: str,
        handle: Any = None,
        thumbnail_id: str = "",
        file_data: FileRecord | None = None,
    ) -> bool:
        """Select ``filename`` if absent, deselect it if present.

        Returns True when the file is selected after the call.
        """
        if filename in self._items:
            del self._items[filename]
            return False
        self._items[filename] = SelectionItem(
            filename=filename,
            ui_handle=handle,
            thumbnail_id=thumbnail_id,
            file_data=file_data,
        )
        return True

    def clear(self) -> list[SelectionItem]:
        """Remove every entry and return what was removed (for UI cleanup)."""
        removed = list(self._items.values())
        self._items.clear()
        return removed

    def get(self, filename: str) -> SelectionItem | None:
        return self._items.get(filename)

    def filenames(self) -> list[str]:
        return list(self._items)

    def size(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, filename: object) -> bool:
        return filename in self._items

    def __iter__(self) -> Iterator[SelectionItem]:
        return iter(list(self._items.values()))

    def describe(self) -> str:
        count = len(self._items)
        return f"{count} file{'s' if count != 1 else ''} selected"
