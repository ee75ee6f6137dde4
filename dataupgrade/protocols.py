"""
dataupgrade Protocol Definitions
================================

The interface contracts between the upgrade engine and the row store it
migrates, plus the error hierarchy.

The engine's only I/O boundary is the RowStore:
- get_rows_missing_upgrade: rows whose ledger lacks an upgrade name
- get_rows_with_upgrade:    rows whose ledger has it (cleanup paging)
- update_row:               partial update by primary key

Error handling philosophy:
- Configuration problems raise ConfigurationError at construction
- Transform and persist failures are isolated to the row that caused them
  and reported in the pass summary, never raised out of run_once()
- A pair that keeps failing to converge is reported as a ConvergenceStall
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from dataupgrade.types import Patch, Row

# =============================================================================
# ERRORS
# =============================================================================


class DataUpgradeError(Exception):
    """Base for all dataupgrade errors."""

    pass


class ConfigurationError(DataUpgradeError):
    """Raised when an upgrade configuration is invalid. Fatal at startup."""

    pass


class RowFailure(DataUpgradeError):
    """A failure tied to one row while running one upgrade or cleanup step."""

    kind = "row"

    def __init__(
        self,
        entity_type: Optional[str],
        step: str,
        row_id: Any,
        cause: Optional[BaseException] = None,
    ):
        self.entity_type = entity_type
        self.step = step
        self.row_id = row_id
        self.cause = cause
        detail = f": {type(cause).__name__}: {cause}" if cause is not None else ""
        super().__init__(f"{self.kind} failed for {entity_type}/{row_id} at {step!r}{detail}")


class TransformError(RowFailure):
    """Raised when an upgrade or cleanup transform raises for a row."""

    kind = "transform"


class PersistError(RowFailure):
    """Raised when the store fails to persist a row's patch."""

    kind = "persist"


class FetchError(DataUpgradeError):
    """Raised when the store fails to return a batch of rows."""

    def __init__(self, entity_type: str, step: str, cause: BaseException):
        self.entity_type = entity_type
        self.step = step
        self.cause = cause
        super().__init__(
            f"fetch failed for {entity_type} at {step!r}: {type(cause).__name__}: {cause}"
        )


class ConvergenceStall(DataUpgradeError):
    """A pair stayed unconverged across too many consecutive passes.

    Reported in the run summary, never raised by the orchestrator. Needs an
    operator to look at the failing rows.
    """

    def __init__(self, entity_type: str, upgrade_name: str, passes: int):
        self.entity_type = entity_type
        self.upgrade_name = upgrade_name
        self.passes = passes
        super().__init__(
            f"{entity_type}:{upgrade_name} has not converged after {passes} consecutive passes"
        )


# =============================================================================
# STORE PROTOCOLS
# =============================================================================


@runtime_checkable
class RowStore(Protocol):
    """What the engine needs from a table's storage.

    Implementations: InMemoryRowStore, SQLiteRowStore, or any adapter over
    an application's own query service.
    """

    def get_rows_missing_upgrade(self, upgrade_name: str, limit: int) -> list[Row]:
        """Rows whose ledger lacks upgrade_name, id ascending, at most limit.

        An empty list means the upgrade has converged for now.
        """
        ...

    def get_rows_with_upgrade(
        self, upgrade_name: str, limit: int, after_id: Any = None
    ) -> list[Row]:
        """Rows whose ledger has upgrade_name, id ascending, at most limit.

        When after_id is given only rows with id > after_id are returned.
        """
        ...

    def update_row(self, row_id: Any, patch: Patch) -> bool:
        """Apply a partial update by primary key. Must be safe to repeat."""
        ...


@runtime_checkable
class ReadableRowStore(Protocol):
    """Application read path wrapped by EffectiveViewStore."""

    def get_row(self, row_id: Any) -> Optional[Row]:
        """Return one stored row, or None."""
        ...

    def get_rows(self, limit: Optional[int] = None) -> list[Row]:
        """Return stored rows, id ascending."""
        ...


REQUIRED_STORE_METHODS = ("get_rows_missing_upgrade", "get_rows_with_upgrade", "update_row")
