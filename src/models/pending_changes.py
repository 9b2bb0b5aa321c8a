from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Row data keys starting with this prefix are bookkeeping, never columns.
INTERNAL_FIELD_PREFIX = "_"
TEMP_ID_KEY = "_temp_id"


@dataclass
class CellChange:
    row_index: int
    column: str
    old_value: Any
    new_value: Any


@dataclass
class NewRow:
    temp_id: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DeletedRow:
    row_index: int
    data: Dict[str, Any] = field(default_factory=dict)


class PendingChanges:
    """In-memory edits for one result set, kept until saved or discarded.

    Cell updates have set semantics per (row, column): a later edit overwrites
    the recorded new value while the old value stays pinned to the value the
    cell had before editing started. An edit that brings a cell back to that
    baseline drops the entry entirely.

    Inserts are identified by a caller supplied temporary id so that deleting
    a row which was never saved simply forgets the insert.
    """

    def __init__(self):
        self.updates: List[CellChange] = []
        self.inserts: List[NewRow] = []
        self.deletes: List[DeletedRow] = []

    def _find_update(self, row_index: int, column: str) -> Optional[int]:
        for i, change in enumerate(self.updates):
            if change.row_index == row_index and change.column == column:
                return i
        return None

    def record_update(self, row_index: int, column: str, old_value: Any, new_value: Any) -> None:
        idx = self._find_update(row_index, column)
        if idx is None:
            if _same_value(old_value, new_value):
                return
            self.updates.append(CellChange(row_index, column, old_value, new_value))
            return

        existing = self.updates[idx]
        existing.new_value = new_value
        if _same_value(existing.old_value, new_value):
            del self.updates[idx]

    def record_insert(self, temp_id: str, data: Dict[str, Any]) -> None:
        self.inserts.append(NewRow(temp_id=temp_id, data=dict(data)))

    def record_delete(self, row_index: int, row_data: Dict[str, Any]) -> None:
        temp_id = (row_data or {}).get(TEMP_ID_KEY)
        if temp_id is not None:
            for i, row in enumerate(self.inserts):
                if row.temp_id == temp_id:
                    # never reached the server, nothing to delete there
                    del self.inserts[i]
                    return
        self.deletes.append(DeletedRow(row_index=row_index, data=dict(row_data or {})))

    def updates_by_row(self) -> Dict[int, List[CellChange]]:
        """Group cell updates by row, preserving first-edit order."""
        grouped: Dict[int, List[CellChange]] = {}
        for change in self.updates:
            grouped.setdefault(change.row_index, []).append(change)
        return grouped

    def has_changes(self) -> bool:
        return bool(self.updates) or bool(self.inserts) or bool(self.deletes)

    def clear(self) -> None:
        self.updates.clear()
        self.inserts.clear()
        self.deletes.clear()

    def __len__(self) -> int:
        return len(self.updates) + len(self.inserts) + len(self.deletes)


def _same_value(a: Any, b: Any) -> bool:
    # bool is an int subclass: True must not collapse into 1
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return bool(a == b)


def data_columns(data: Dict[str, Any]) -> List[str]:
    """Column names of a row buffer, skipping bookkeeping keys."""
    return [k for k in data.keys() if not str(k).startswith(INTERNAL_FIELD_PREFIX)]
