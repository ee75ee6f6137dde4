"""Effective-view resolution.

A stored row may lag behind the upgrade plan. The effective row is what the
stored row will look like once every upgrade has been persisted: each
upgrade not yet recorded in the ledger is folded in, in plan order. The fold
is pure and does no I/O, so it is safe to run on every read.
"""

import copy
from collections.abc import Mapping
from typing import Any, List, Optional, Sequence, Tuple

from dataupgrade.ledger import is_applied, mark_applied
from dataupgrade.protocols import TransformError
from dataupgrade.types import DROP, ID_FIELD, LEDGER_FIELD, Patch, Row, UpgradeDefinition


def merge_patch(row: Row, patch: Patch) -> Row:
    """Return a new row with patch merged over row.

    Patch keys win. A DROP value removes the key. The ledger field is owned
    by the engine and is never taken from a patch.
    """
    merged = dict(row)
    for key, value in patch.items():
        if key == LEDGER_FIELD:
            continue
        if value is DROP:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def _plan_prefix(
    plan: Sequence[UpgradeDefinition], upto: Optional[str]
) -> Sequence[UpgradeDefinition]:
    if upto is None:
        return plan
    for index, upgrade in enumerate(plan):
        if upgrade.name == upto:
            return plan[: index + 1]
    raise ValueError(f"Unknown upgrade in plan: {upto}")


def run_transform(upgrade: Any, row: Row, entity_type: Optional[str] = None) -> Patch:
    """Call an upgrade or cleanup transform, normalising failures to TransformError.

    The transform gets a deep copy, so even an impure transform cannot
    reach the caller's row or its ledger list.
    """
    try:
        patch = upgrade.transform(copy.deepcopy(row))
    except Exception as e:
        raise TransformError(entity_type, upgrade.name, row.get(ID_FIELD), e) from e
    if patch is None:
        return {}
    if not isinstance(patch, Mapping):
        raise TransformError(
            entity_type,
            upgrade.name,
            row.get(ID_FIELD),
            TypeError(f"transform returned {type(patch).__name__}, expected a mapping"),
        )
    return dict(patch)


def fold_plan(
    plan: Sequence[UpgradeDefinition],
    row: Row,
    *,
    upto: Optional[str] = None,
    entity_type: Optional[str] = None,
) -> Tuple[Row, Patch]:
    """Fold every not-yet-applied upgrade of the plan into a copy of row.

    Args:
        plan: Ordered upgrade list for the row's entity type.
        row: Raw stored row. Not modified.
        upto: Stop after this upgrade (inclusive). Defaults to the whole plan.
        entity_type: Used only to label errors.

    Returns:
        (effective, patch): the effective row, with its ledger extended by
        every folded upgrade, and the transforms' own patches merged in fold
        order (ledger excluded). Merging patch over row gives effective.

    Raises:
        TransformError: If a transform raises, returns a non-mapping, or
            tries to DROP a field.
        ValueError: If upto names an upgrade not in the plan.
    """
    effective = dict(row)
    combined: Patch = {}
    for upgrade in _plan_prefix(plan, upto):
        if is_applied(effective, upgrade.name):
            continue
        patch = run_transform(upgrade, effective, entity_type)
        patch.pop(LEDGER_FIELD, None)
        dropped = sorted(key for key, value in patch.items() if value is DROP)
        if dropped:
            # Removing fields is left to cleanup steps
            raise TransformError(
                entity_type,
                upgrade.name,
                row.get(ID_FIELD),
                ValueError(f"upgrades cannot drop fields: {', '.join(dropped)}"),
            )
        effective = merge_patch(effective, patch)
        effective[LEDGER_FIELD] = mark_applied(effective.get(LEDGER_FIELD), upgrade.name)
        combined.update(patch)
    return effective, combined


def resolve_effective_row(
    plan: Sequence[UpgradeDefinition],
    row: Row,
    *,
    upto: Optional[str] = None,
    entity_type: Optional[str] = None,
) -> Row:
    """The effective row: fold_plan() without the patch."""
    effective, _ = fold_plan(plan, row, upto=upto, entity_type=entity_type)
    return effective


def _same_value(a: Any, b: Any) -> bool:
    # 1 == True and 3 == 3.0, but a write that changes the type is still a write
    return type(a) is type(b) and a == b


def effective_patch(raw: Row, effective: Row) -> Patch:
    """The sparse patch that turns raw into effective, ledger excluded."""
    patch: Patch = {}
    for key, value in effective.items():
        if key == LEDGER_FIELD:
            continue
        if key not in raw or not _same_value(raw[key], value):
            patch[key] = value
    for key in raw:
        if key != LEDGER_FIELD and key not in effective:
            patch[key] = DROP
    return patch


class EffectiveViewStore:
    """Read-path wrapper that returns effective rows.

    Wraps any store with get_row/get_rows so application code always sees
    rows with the full plan folded in, whether or not the batch runner has
    reached them yet. Everything else is delegated to the wrapped store.
    """

    def __init__(
        self,
        store: Any,
        plan: Sequence[UpgradeDefinition],
        entity_type: Optional[str] = None,
    ):
        self._store = store
        self._plan = list(plan)
        self.entity_type = entity_type

    @property
    def store(self) -> Any:
        return self._store

    def resolve(self, row: Row) -> Row:
        return resolve_effective_row(self._plan, row, entity_type=self.entity_type)

    def get_row(self, row_id: Any) -> Optional[Row]:
        row = self._store.get_row(row_id)
        if row is None:
            return None
        return self.resolve(row)

    def get_rows(self, limit: Optional[int] = None) -> List[Row]:
        return [self.resolve(row) for row in self._store.get_rows(limit=limit)]

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self._store, name)
