"""SQLite row store.

Each entity type lives in its own table:

    id                PRIMARY KEY
    data              JSON object with every other field
    applied_upgrades  JSON array (the ledger), NULL for fresh rows

Ledger membership is queried with SQLite's JSON1 json_each(), so the
"rows missing upgrade X" fetch runs in the database rather than in Python.
Connections are opened per operation.
"""

import contextlib
import json
import logging
import re
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dataupgrade.resolver import merge_patch
from dataupgrade.types import ID_FIELD, LEDGER_FIELD, Patch, Row

logger = logging.getLogger(__name__)

_TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    id PRIMARY KEY,
    data TEXT NOT NULL DEFAULT '{{}}',
    applied_upgrades TEXT
)
"""

_HAS_UPGRADE = (
    "applied_upgrades IS NOT NULL AND EXISTS "
    "(SELECT 1 FROM json_each({table}.applied_upgrades) WHERE json_each.value = ?)"
)


def validate_table_name(table: str) -> str:
    """Validate a table name before it is interpolated into SQL.

    Raises:
        ValueError: If the name is not a plain identifier.
    """
    if not isinstance(table, str) or not _TABLE_NAME_PATTERN.match(table):
        raise ValueError(f"Invalid table name: {table!r}")
    return table


class SQLiteRowStore:
    """RowStore backed by one SQLite table.

    Args:
        db_path: Database file. Parent directories are created.
        table: Table name, a plain identifier.
    """

    def __init__(self, db_path: Union[str, Path], table: str):
        self.table = validate_table_name(table)
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(_SCHEMA.format(table=self.table))

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def close(self):
        """Connections are per-operation; kept for API symmetry."""
        pass

    # === Serialization ===

    def _to_json(self, data: Any) -> Optional[str]:
        if data is None:
            return None
        return json.dumps(data)

    def _from_json(self, s: Optional[str]) -> Any:
        if not s:
            return None
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            logger.warning(f"Undecodable JSON in {self.table}: {s[:80]!r}")
            return None

    def _row_to_dict(self, row: sqlite3.Row) -> Row:
        data = self._from_json(row["data"]) or {}
        result: Dict[str, Any] = dict(data)
        result[ID_FIELD] = row["id"]
        result[LEDGER_FIELD] = self._from_json(row["applied_upgrades"])
        return result

    def _split(self, row: Row) -> tuple:
        data = {k: v for k, v in row.items() if k not in (ID_FIELD, LEDGER_FIELD)}
        return self._to_json(data), self._to_json(row.get(LEDGER_FIELD))

    # === Application API ===

    def insert_row(self, row: Row) -> Any:
        """Insert or replace a row. Returns its id."""
        if ID_FIELD not in row:
            raise ValueError("Row must have an id")
        data_json, ledger_json = self._split(row)
        with self._connect() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO {self.table} (id, data, applied_upgrades) "
                "VALUES (?, ?, ?)",
                (row[ID_FIELD], data_json, ledger_json),
            )
        return row[ID_FIELD]

    def get_row(self, row_id: Any) -> Optional[Row]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT id, data, applied_upgrades FROM {self.table} WHERE id = ?",
                (row_id,),
            ).fetchone()
        return self._row_to_dict(row) if row else None

    def get_rows(self, limit: Optional[int] = None) -> List[Row]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT id, data, applied_upgrades FROM {self.table} ORDER BY id LIMIT ?",
                (-1 if limit is None else limit,),
            ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0]

    # === RowStore ===

    def get_rows_missing_upgrade(self, upgrade_name: str, limit: int) -> List[Row]:
        has_upgrade = _HAS_UPGRADE.format(table=self.table)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT id, data, applied_upgrades FROM {self.table} "
                f"WHERE NOT ({has_upgrade}) ORDER BY id LIMIT ?",
                (upgrade_name, limit),
            ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def get_rows_with_upgrade(
        self, upgrade_name: str, limit: int, after_id: Any = None
    ) -> List[Row]:
        has_upgrade = _HAS_UPGRADE.format(table=self.table)
        with self._connect() as conn:
            if after_id is None:
                rows = conn.execute(
                    f"SELECT id, data, applied_upgrades FROM {self.table} "
                    f"WHERE {has_upgrade} ORDER BY id LIMIT ?",
                    (upgrade_name, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT id, data, applied_upgrades FROM {self.table} "
                    f"WHERE {has_upgrade} AND id > ? ORDER BY id LIMIT ?",
                    (upgrade_name, after_id, limit),
                ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def update_row(self, row_id: Any, patch: Patch) -> bool:
        """Merge patch into the stored row. Returns False if the row does not exist."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                f"SELECT id, data, applied_upgrades FROM {self.table} WHERE id = ?",
                (row_id,),
            ).fetchone()
            if row is None:
                logger.debug(f"update_row: no row with id {row_id!r} in {self.table}")
                return False
            updated = merge_patch(self._row_to_dict(row), patch)
            if LEDGER_FIELD in patch:
                updated[LEDGER_FIELD] = list(patch[LEDGER_FIELD])
            data_json, ledger_json = self._split(updated)
            conn.execute(
                f"UPDATE {self.table} SET data = ?, applied_upgrades = ? WHERE id = ?",
                (data_json, ledger_json, row_id),
            )
        return True
