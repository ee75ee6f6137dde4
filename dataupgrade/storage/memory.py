"""In-memory row store.

Dict-backed implementation of the RowStore protocol plus a small read/write
API for application code. Rows are copied on the way in and out so callers
never share state with the store. Thread-safe.
"""

import copy
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from dataupgrade.ledger import is_applied
from dataupgrade.resolver import merge_patch
from dataupgrade.types import ID_FIELD, LEDGER_FIELD, Patch, Row

logger = logging.getLogger(__name__)


class InMemoryRowStore:
    """Rows keyed by id, returned in ascending id order."""

    def __init__(self, rows: Optional[Iterable[Row]] = None):
        self._rows: Dict[Any, Row] = {}
        self._lock = threading.RLock()
        for row in rows or []:
            self.insert_row(row)

    # === Application API ===

    def insert_row(self, row: Row) -> Any:
        """Insert or replace a row. Returns its id."""
        if ID_FIELD not in row:
            raise ValueError("Row must have an id")
        with self._lock:
            self._rows[row[ID_FIELD]] = copy.deepcopy(row)
        return row[ID_FIELD]

    def get_row(self, row_id: Any) -> Optional[Row]:
        with self._lock:
            row = self._rows.get(row_id)
            return copy.deepcopy(row) if row is not None else None

    def get_rows(self, limit: Optional[int] = None) -> List[Row]:
        with self._lock:
            rows = self._sorted()
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(r) for r in rows]

    def count(self) -> int:
        with self._lock:
            return len(self._rows)

    # === RowStore ===

    def get_rows_missing_upgrade(self, upgrade_name: str, limit: int) -> List[Row]:
        with self._lock:
            rows = [r for r in self._sorted() if not is_applied(r, upgrade_name)][:limit]
            return [copy.deepcopy(r) for r in rows]

    def get_rows_with_upgrade(
        self, upgrade_name: str, limit: int, after_id: Any = None
    ) -> List[Row]:
        with self._lock:
            rows = [
                r
                for r in self._sorted()
                if is_applied(r, upgrade_name) and (after_id is None or r[ID_FIELD] > after_id)
            ][:limit]
            return [copy.deepcopy(r) for r in rows]

    def update_row(self, row_id: Any, patch: Patch) -> bool:
        with self._lock:
            row = self._rows.get(row_id)
            if row is None:
                logger.debug(f"update_row: no row with id {row_id!r}")
                return False
            updated = merge_patch(row, copy.deepcopy(patch))
            if LEDGER_FIELD in patch:
                updated[LEDGER_FIELD] = list(patch[LEDGER_FIELD])
            self._rows[row_id] = updated
            return True

    def _sorted(self) -> List[Row]:
        return [self._rows[key] for key in sorted(self._rows)]
