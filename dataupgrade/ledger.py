"""Applied-upgrade ledger helpers.

The ledger is the `applied_upgrades` list stored on every row. It behaves
like an ordered set: a name appears at most once and insertion order is
application order. A missing or null ledger means nothing has been applied.
"""

from typing import Iterable, List, Optional

from dataupgrade.types import LEDGER_FIELD, Row


def mark_applied(applied: Optional[List[str]], upgrade_name: str) -> List[str]:
    """Record upgrade_name in a ledger.

    Returns the same list when the name is already present, otherwise a new
    list with the name appended. Never mutates the input.
    """
    if applied is None:
        return [upgrade_name]
    if upgrade_name in applied:
        return applied
    return [*applied, upgrade_name]


def is_applied(row: Row, upgrade_name: str) -> bool:
    """True iff the row's ledger is non-null and contains upgrade_name."""
    applied = row.get(LEDGER_FIELD)
    return bool(applied) and upgrade_name in applied


def applied_upgrades(row: Row) -> List[str]:
    """The row's ledger as a list, empty when absent."""
    return list(row.get(LEDGER_FIELD) or [])


def missing_upgrades(row: Row, plan_names: Iterable[str]) -> List[str]:
    """Names from the plan not yet recorded on the row, in plan order."""
    applied = set(row.get(LEDGER_FIELD) or [])
    return [name for name in plan_names if name not in applied]
