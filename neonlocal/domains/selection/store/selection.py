"""Selection store: the user's selection, persisted across restarts."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

from neonlocal.domains.selection.domain.selection import SELECTION_FIELDS, Selection
from neonlocal.shared.core.store import JSONFileStore, get_config_dir


def _validate_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - set(SELECTION_FIELDS)
    if unknown:
        raise KeyError(f"Unknown selection field(s): {', '.join(sorted(unknown))}")


class SelectionStore(JSONFileStore):
    """Store for the current selection.

    The selection is stored as a JSON object in ~/.neonlocal/selection.json.
    Multi-field updates are written in one atomic replace so readers never
    see a half-applied selection.
    """

    def __init__(self, file_path: Path | None = None) -> None:
        super().__init__(file_path or get_config_dir() / "selection.json")

    def load(self) -> Selection:
        """Load the selection, or the defaults if nothing is stored."""
        with self._lock:
            return Selection.from_dict(self._read_json())

    def save(self, selection: Selection) -> None:
        with self._lock:
            self._write_json(selection.to_dict())

    def get(self, field: str) -> Any:
        _validate_fields({field: None})
        return getattr(self.load(), field)

    def set(self, field: str, value: Any) -> Selection:
        return self.update(**{field: value})

    def update(self, **fields: Any) -> Selection:
        """Apply several field changes as one write.

        Returns:
            The selection as stored after the update.
        """
        _validate_fields(fields)
        with self._lock:
            data = self.load().to_dict()
            for key, value in fields.items():
                data[key] = getattr(value, "value", value) if value is not None else ""
            selection = Selection.from_dict(data)
            self.save(selection)
            return selection

    def clear(self) -> Selection:
        with self._lock:
            selection = Selection()
            self.save(selection)
            return selection


class MemorySelectionStore:
    """In-memory selection store for tests and one-shot sessions."""

    def __init__(self, selection: Selection | None = None) -> None:
        self._selection = selection or Selection()
        self._lock = threading.Lock()
        self.writes = 0

    def load(self) -> Selection:
        return self._selection

    def save(self, selection: Selection) -> None:
        with self._lock:
            self._selection = selection
            self.writes += 1

    def get(self, field: str) -> Any:
        _validate_fields({field: None})
        return getattr(self._selection, field)

    def set(self, field: str, value: Any) -> Selection:
        return self.update(**{field: value})

    def update(self, **fields: Any) -> Selection:
        _validate_fields(fields)
        with self._lock:
            data = self._selection.to_dict()
            for key, value in fields.items():
                data[key] = getattr(value, "value", value) if value is not None else ""
            self._selection = Selection.from_dict(data)
            self.writes += 1
            return self._selection

    def clear(self) -> Selection:
        with self._lock:
            self._selection = Selection()
            self.writes += 1
            return self._selection
