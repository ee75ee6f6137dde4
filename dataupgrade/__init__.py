"""
dataupgrade - Zero-downtime row upgrades for live tables.

Named, idempotent upgrades applied lazily on read and swept into storage
in resumable batches.
"""

from .config import EntityUpgradeConfig, UpgradeSettings, get_settings
from .ledger import is_applied, mark_applied
from .orchestrator import DataUpgrader
from .protocols import (
    ConfigurationError,
    ConvergenceStall,
    DataUpgradeError,
    FetchError,
    PersistError,
    RowStore,
    TransformError,
)
from .resolver import EffectiveViewStore, resolve_effective_row
from .types import DROP, CleanupStep, RunSummary, UpgradeDefinition

try:
    from importlib.metadata import version

    __version__ = version("dataupgrade")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "DataUpgrader",
    "EntityUpgradeConfig",
    "UpgradeSettings",
    "get_settings",
    "UpgradeDefinition",
    "CleanupStep",
    "DROP",
    "RunSummary",
    "mark_applied",
    "is_applied",
    "resolve_effective_row",
    "EffectiveViewStore",
    "RowStore",
    "DataUpgradeError",
    "ConfigurationError",
    "TransformError",
    "PersistError",
    "FetchError",
    "ConvergenceStall",
]
