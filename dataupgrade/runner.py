"""Batch runner for one entity type.

BatchRunner drives the fetch-transform-persist loop for a single
(entity_type, upgrade_name) pair until the store reports no rows missing
the upgrade, and runs the entity's cleanup steps once every upgrade has
converged. Receives the entity's EntityUpgradeConfig and the global
UpgradeSettings.

Row failures never abort a batch: a row whose transform raises or whose
persist fails is reported, excluded for the rest of the sweep, and picked
up again on the next pass because its ledger was never advanced.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List, Optional, Set, Tuple

from dataupgrade.config import EntityUpgradeConfig, UpgradeSettings
from dataupgrade.protocols import FetchError, PersistError, RowFailure
from dataupgrade.resolver import (
    effective_patch,
    fold_plan,
    merge_patch,
    run_transform,
)
from dataupgrade.types import (
    ID_FIELD,
    LEDGER_FIELD,
    CleanupResult,
    Patch,
    Row,
    RowError,
    SweepResult,
)

logger = logging.getLogger(__name__)

CLEANUP_STEP = "cleanup"

# (row_id, touched, failure)
RowOutcome = Tuple[Any, bool, Optional[RowFailure]]


class BatchRunner:
    """Sweeps and cleans one entity type.

    Args:
        config: The entity's plan, cleanup steps and store.
        settings: Global batching and retry defaults.
    """

    def __init__(self, config: EntityUpgradeConfig, settings: UpgradeSettings):
        self.config = config
        self.settings = settings
        self.entity_type = config.entity_type
        self.store = config.store
        self.batch_size = config.effective_batch_size(settings)
        self.cleanup_batch_size = config.effective_cleanup_batch_size(settings)

    # === Upgrade Sweep ===

    def sweep(self, upgrade_name: str) -> SweepResult:
        """Sweep one upgrade until no row is missing it, or no progress is possible.

        Rows that fail are excluded for the rest of this sweep; the fetch
        limit is widened by the number of excluded rows so they cannot hide
        healthy rows that sort after them.
        """
        result = SweepResult(entity_type=self.entity_type, upgrade_name=upgrade_name)
        excluded: Set[Any] = set()
        persisted: Set[Any] = set()

        logger.info(f"Sweeping {self.entity_type}:{upgrade_name} (batch size {self.batch_size})")

        while True:
            limit = self.batch_size + len(excluded)
            try:
                rows = list(self.store.get_rows_missing_upgrade(upgrade_name, limit))
            except Exception as e:
                self._record_fetch_failure(result.errors, upgrade_name, e)
                return result

            if not rows:
                result.converged = True
                logger.info(
                    f"Converged {self.entity_type}:{upgrade_name} "
                    f"({result.rows_touched} rows in {result.batches} batches)"
                )
                return result

            batch: List[Row] = []
            for row in rows:
                row_id = row.get(ID_FIELD)
                if row_id in excluded:
                    continue
                if row_id in persisted:
                    # Persisted earlier in this sweep but the store still
                    # reports it missing the upgrade.
                    failure = PersistError(
                        self.entity_type,
                        upgrade_name,
                        row_id,
                        RuntimeError("row still missing upgrade after persist"),
                    )
                    self._log_row_failure(failure)
                    result.errors.append(self._to_row_error(failure))
                    excluded.add(row_id)
                    continue
                batch.append(row)
                if len(batch) >= self.batch_size:
                    break

            if not batch:
                logger.warning(
                    f"{self.entity_type}:{upgrade_name} has {len(rows)} rows left that failed "
                    "this pass; leaving the sweep unconverged"
                )
                return result

            result.batches += 1
            logger.debug(
                f"{self.entity_type}:{upgrade_name} batch {result.batches}: {len(batch)} rows"
            )

            for row_id, touched, failure in self._process_batch(
                batch, lambda row: self._upgrade_row(row, upgrade_name)
            ):
                if failure is not None:
                    excluded.add(row_id)
                    result.errors.append(self._to_row_error(failure))
                elif touched:
                    persisted.add(row_id)
                    result.rows_touched += 1

    def _upgrade_row(self, row: Row, upgrade_name: str) -> bool:
        """Fold the plan up to upgrade_name into the row and persist the transforms' patches.

        Earlier upgrades the row is still missing (it was inserted after they
        converged) are folded in too, so the ledger never records an upgrade
        without its predecessors.
        """
        effective, patch = fold_plan(
            self.config.upgrades, row, upto=upgrade_name, entity_type=self.entity_type
        )
        patch[LEDGER_FIELD] = effective[LEDGER_FIELD]
        self._persist(row.get(ID_FIELD), patch, upgrade_name)
        return True

    # === Cleanup ===

    def cleanup(self) -> CleanupResult:
        """Run the cleanup steps over every row, once all upgrades have converged.

        Convergence is re-checked against the store rather than trusted from
        sweep state. Rows are paged by id using the last upgrade in the plan,
        which every row carries once the plan has converged.
        """
        result = CleanupResult(entity_type=self.entity_type)
        if not self.config.cleanups:
            result.completed = True
            return result

        for name in self.config.upgrade_names:
            try:
                pending = list(self.store.get_rows_missing_upgrade(name, 1))
            except Exception as e:
                self._record_fetch_failure(result.errors, CLEANUP_STEP, e)
                return result
            if pending:
                result.skipped_reason = f"rows still missing upgrade {name!r}"
                logger.info(f"Cleanup for {self.entity_type} deferred: {result.skipped_reason}")
                return result

        gate = self.config.upgrade_names[-1]
        after_id = None
        logger.info(f"Running {len(self.config.cleanups)} cleanup steps for {self.entity_type}")

        while True:
            try:
                page = list(
                    self.store.get_rows_with_upgrade(
                        gate, self.cleanup_batch_size, after_id=after_id
                    )
                )
            except Exception as e:
                self._record_fetch_failure(result.errors, CLEANUP_STEP, e)
                return result

            if not page:
                break

            result.batches += 1
            for _row_id, touched, failure in self._process_batch(page, self._cleanup_row):
                if failure is not None:
                    result.errors.append(self._to_row_error(failure))
                elif touched:
                    result.rows_touched += 1

            after_id = page[-1].get(ID_FIELD)
            if len(page) < self.cleanup_batch_size:
                break

        result.completed = not result.errors
        logger.info(
            f"Cleanup for {self.entity_type} "
            f"{'done' if result.completed else 'incomplete'}: "
            f"{result.rows_touched} rows changed, {len(result.errors)} errors"
        )
        return result

    def _cleanup_row(self, row: Row) -> bool:
        current = dict(row)
        for step in self.config.cleanups:
            current = merge_patch(current, run_transform(step, current, self.entity_type))
        patch = effective_patch(row, current)
        if not patch:
            return False
        self._persist(row.get(ID_FIELD), patch, CLEANUP_STEP)
        return True

    # === Shared Helpers ===

    def _persist(self, row_id: Any, patch: Patch, step: str) -> None:
        """Write a patch, retrying inline before giving up on the row."""
        attempts = 1 + self.settings.persist_retries
        cause: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            try:
                ok = self.store.update_row(row_id, patch)
            except Exception as e:
                cause = e
            else:
                if ok is not False:
                    return
                cause = RuntimeError("update_row returned False")
            if attempt < attempts:
                logger.debug(
                    f"Retrying persist of {self.entity_type}/{row_id} "
                    f"({attempt}/{attempts - 1}): {cause}"
                )
        raise PersistError(self.entity_type, step, row_id, cause)

    def _process_batch(
        self, batch: List[Row], fn: Callable[[Row], bool]
    ) -> List[RowOutcome]:
        workers = min(self.settings.max_workers, len(batch))
        if workers <= 1:
            return [self._run_row(fn, row) for row in batch]
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(lambda row: self._run_row(fn, row), batch))

    def _run_row(self, fn: Callable[[Row], bool], row: Row) -> RowOutcome:
        row_id = row.get(ID_FIELD)
        try:
            return row_id, fn(row), None
        except RowFailure as failure:
            self._log_row_failure(failure)
            return row_id, False, failure

    def _log_row_failure(self, failure: RowFailure) -> None:
        error_type = type(failure.cause).__name__ if failure.cause is not None else "None"
        logger.warning(
            f"{failure.kind} failed for {self.entity_type}/{failure.row_id} "
            f"at {failure.step!r}: {failure.cause}; row skipped this pass",
            extra={
                "entity_type": self.entity_type,
                "upgrade": failure.step,
                "row_id": failure.row_id,
                "error_type": error_type,
            },
        )

    def _record_fetch_failure(self, errors: List[RowError], step: str, cause: Exception) -> None:
        failure = FetchError(self.entity_type, step, cause)
        logger.error(str(failure), exc_info=True)
        errors.append(
            RowError(
                entity_type=self.entity_type,
                step=step,
                row_id=None,
                kind="fetch",
                message=str(failure),
            )
        )

    def _to_row_error(self, failure: RowFailure) -> RowError:
        return RowError(
            entity_type=self.entity_type,
            step=failure.step,
            row_id=failure.row_id,
            kind=failure.kind,
            message=str(failure),
        )
