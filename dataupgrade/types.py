"""
Shared types for dataupgrade.

Rows, patches, upgrade definitions and the result records produced by a
pass. These are the shared vocabulary between the ledger, the resolver,
the batch runner and the orchestrator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from dataupgrade.protocols import ConvergenceStall

# === Row Vocabulary ===

# A stored row: any mapping of field name to value with at least an `id`
# and (possibly absent) `applied_upgrades` entry.
Row = Dict[str, Any]

# Sparse field update merged over a row. Patch keys win.
Patch = Dict[str, Any]

Transform = Callable[[Row], Patch]

ID_FIELD = "id"
LEDGER_FIELD = "applied_upgrades"


class _Drop:
    """Patch value that removes the field from the row instead of setting it."""

    _instance: Optional["_Drop"] = None

    def __new__(cls) -> "_Drop":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DROP"

    def __reduce__(self):
        return (_Drop, ())


DROP = _Drop()


# === Plan Types ===


@dataclass(frozen=True)
class UpgradeDefinition:
    """A named, pure, idempotent row transform.

    `transform` receives the current effective row (every earlier upgrade in
    the plan already folded in) and returns a sparse patch. It must not set
    `applied_upgrades`; the engine owns that field.
    """

    name: str
    transform: Transform
    description: Optional[str] = None


@dataclass(frozen=True)
class CleanupStep:
    """A post-convergence structural step (typically dropping a field).

    Same shape as an upgrade but never recorded in the ledger; it must be
    safe to run more than once.
    """

    name: str
    transform: Transform
    description: Optional[str] = None


# === State ===


class PairState(str, Enum):
    """Sweep state of one (entity_type, upgrade_name) pair."""

    PENDING = "pending"  # Sweep not started
    RUNNING = "running"  # Sweep started, rows still missing the upgrade
    CONVERGED = "converged"  # Last fetch returned no rows


class CleanupState(str, Enum):
    """State of an entity type's cleanup steps."""

    PENDING = "pending"  # Waiting on upgrade convergence
    RUNNING = "running"  # Started but at least one row failed
    DONE = "done"  # Every row visited without error


# === Results ===


@dataclass
class RowError:
    """A row-level failure reported in a pass summary.

    kind is one of "transform", "persist" or "fetch". row_id is None for
    fetch failures, which are not tied to a single row.
    """

    entity_type: str
    step: str  # Upgrade or cleanup step name
    row_id: Any
    kind: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "step": self.step,
            "row_id": self.row_id,
            "kind": self.kind,
            "message": self.message,
        }


@dataclass
class SweepResult:
    """Outcome of sweeping one pair during one pass."""

    entity_type: str
    upgrade_name: str
    converged: bool = False
    rows_touched: int = 0  # Rows persisted with the upgrade recorded
    batches: int = 0  # Non-empty fetches processed
    errors: List[RowError] = field(default_factory=list)

    @property
    def state(self) -> PairState:
        return PairState.CONVERGED if self.converged else PairState.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "upgrade": self.upgrade_name,
            "state": self.state.value,
            "rows_touched": self.rows_touched,
            "batches": self.batches,
            "errors": len(self.errors),
        }


@dataclass
class CleanupResult:
    """Outcome of an entity type's cleanup pass."""

    entity_type: str
    completed: bool = False
    rows_touched: int = 0
    batches: int = 0
    errors: List[RowError] = field(default_factory=list)
    skipped_reason: Optional[str] = None  # Set when gating refused to run

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "completed": self.completed,
            "rows_touched": self.rows_touched,
            "batches": self.batches,
            "errors": len(self.errors),
            "skipped_reason": self.skipped_reason,
        }


@dataclass
class PairStatus:
    """Cumulative state of one pair across passes, held by the orchestrator."""

    entity_type: str
    upgrade_name: str
    state: PairState = PairState.PENDING
    rows_touched: int = 0
    batches: int = 0
    passes: int = 0
    unconverged_passes: int = 0  # Consecutive passes ending without convergence

    def to_dict(self) -> Dict[str, Any]:
        return {
            "upgrade": self.upgrade_name,
            "state": self.state.value,
            "rows_touched": self.rows_touched,
            "batches": self.batches,
            "passes": self.passes,
            "unconverged_passes": self.unconverged_passes,
        }


@dataclass
class RunSummary:
    """Result of one orchestrator pass."""

    sweeps: List[SweepResult] = field(default_factory=list)
    cleanups: List[CleanupResult] = field(default_factory=list)
    stalls: List["ConvergenceStall"] = field(default_factory=list)
    complete: bool = False  # Every pair converged and every cleanup done

    @property
    def errors(self) -> List[RowError]:
        collected: List[RowError] = []
        for sweep in self.sweeps:
            collected.extend(sweep.errors)
        for cleanup in self.cleanups:
            collected.extend(cleanup.errors)
        return collected

    @property
    def rows_touched(self) -> int:
        return sum(s.rows_touched for s in self.sweeps) + sum(
            c.rows_touched for c in self.cleanups
        )

    @property
    def converged_pairs(self) -> List[str]:
        return [f"{s.entity_type}:{s.upgrade_name}" for s in self.sweeps if s.converged]

    @property
    def success(self) -> bool:
        return not self.errors and not self.stalls

    def to_dict(self) -> Dict[str, Any]:
        return {
            "complete": self.complete,
            "rows_touched": self.rows_touched,
            "sweeps": [s.to_dict() for s in self.sweeps],
            "cleanups": [c.to_dict() for c in self.cleanups],
            "errors": [e.to_dict() for e in self.errors],
            "stalls": [
                {
                    "entity_type": s.entity_type,
                    "upgrade": s.upgrade_name,
                    "passes": s.passes,
                }
                for s in self.stalls
            ],
        }
