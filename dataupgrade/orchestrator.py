"""Process-wide upgrade orchestrator.

DataUpgrader owns the entity_type -> EntityUpgradeConfig mapping handed to
it at construction and sequences the work:

- entity types in configuration order
- within an entity type, upgrades strictly in plan order; an upgrade's
  sweep only starts once the previous one has converged in the same pass
- cleanup steps once every upgrade of the entity has converged

It is created once at startup and discarded at shutdown. The only state it
keeps is the per-pair progress exposed by status().
"""

import logging
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

from dataupgrade.config import (
    EntityUpgradeConfig,
    UpgradeSettings,
    get_settings,
    validate_configs,
)
from dataupgrade.logging_config import log_cleanup, log_sweep
from dataupgrade.protocols import ConfigurationError, ConvergenceStall
from dataupgrade.resolver import EffectiveViewStore, resolve_effective_row
from dataupgrade.runner import BatchRunner
from dataupgrade.types import (
    CleanupState,
    CleanupStep,
    PairState,
    PairStatus,
    Row,
    RunSummary,
    SweepResult,
)

logger = logging.getLogger(__name__)


class DataUpgrader:
    """Runs upgrade plans for a set of entity types to convergence.

    Args:
        configs: One EntityUpgradeConfig per entity type, in processing order.
        settings: Global defaults. Defaults to get_settings().
        cleanups: Extra cleanup steps keyed by entity type, appended to the
            matching config's own cleanups.

    Raises:
        ConfigurationError: If any plan or store is invalid, an entity type
            is declared twice, or cleanups name an unknown entity type.
    """

    def __init__(
        self,
        configs: Sequence[EntityUpgradeConfig],
        settings: Optional[UpgradeSettings] = None,
        cleanups: Optional[Mapping[str, Sequence[CleanupStep]]] = None,
    ):
        self.settings = settings or get_settings()
        configs = list(configs)
        validate_configs(configs)

        self._configs: Dict[str, EntityUpgradeConfig] = {c.entity_type: c for c in configs}
        if cleanups:
            for entity_type, steps in cleanups.items():
                if entity_type not in self._configs:
                    raise ConfigurationError(
                        f"Cleanup steps reference undeclared entity type: {entity_type}"
                    )
                self._configs[entity_type] = replace(
                    self._configs[entity_type],
                    cleanups=[*self._configs[entity_type].cleanups, *steps],
                )
                self._configs[entity_type].validate()

        self._runners: Dict[str, BatchRunner] = {
            entity_type: BatchRunner(config, self.settings)
            for entity_type, config in self._configs.items()
        }
        self._pairs: Dict[str, List[PairStatus]] = {
            entity_type: [PairStatus(entity_type, name) for name in config.upgrade_names]
            for entity_type, config in self._configs.items()
        }
        self._cleanup_state: Dict[str, CleanupState] = {
            entity_type: CleanupState.PENDING for entity_type in self._configs
        }
        self._passes = 0

        logger.debug(
            f"DataUpgrader configured for {len(self._configs)} entity types: "
            f"{', '.join(self._configs)}"
        )

    @property
    def entity_types(self) -> List[str]:
        return list(self._configs)

    def config_for(self, entity_type: str) -> EntityUpgradeConfig:
        try:
            return self._configs[entity_type]
        except KeyError:
            raise KeyError(f"Unknown entity type: {entity_type}") from None

    # === Passes ===

    def run_once(self) -> RunSummary:
        """Drive one full pass over every entity type.

        Never raises for row-level failures; they are returned in the
        summary alongside per-pair progress and any convergence stalls.
        """
        self._passes += 1
        summary = RunSummary()
        logger.info(f"Starting upgrade pass {self._passes}")

        for entity_type in self._configs:
            if self._sweep_entity(entity_type, summary):
                self._cleanup_entity(entity_type, summary)

        summary.complete = self.is_complete()
        logger.info(
            f"Upgrade pass {self._passes} finished: {summary.rows_touched} rows touched, "
            f"{len(summary.converged_pairs)} pairs converged, {len(summary.errors)} errors, "
            f"{len(summary.stalls)} stalls"
        )
        return summary

    def start(self, max_passes: Optional[int] = None) -> RunSummary:
        """Run passes until everything converges, a stall is reported, or max_passes runs out.

        Returns the summary of the last pass.
        """
        limit = self.settings.max_passes if max_passes is None else max_passes
        summary = RunSummary(complete=self.is_complete())
        for _ in range(limit):
            summary = self.run_once()
            if summary.complete or summary.stalls:
                break
        else:
            logger.warning(f"Upgrades still incomplete after {limit} passes")
        return summary

    def _sweep_entity(self, entity_type: str, summary: RunSummary) -> bool:
        """Sweep the entity's plan in order. Returns True if every pair converged."""
        runner = self._runners[entity_type]
        for status in self._pairs[entity_type]:
            if status.state is PairState.PENDING:
                status.state = PairState.RUNNING
            result = runner.sweep(status.upgrade_name)
            summary.sweeps.append(result)
            self._record_sweep(status, result, summary)
            log_sweep(
                entity_type,
                status.upgrade_name,
                rows=result.rows_touched,
                errors=len(result.errors),
                converged=result.converged,
            )
            if not result.converged:
                # Later upgrades may depend on this one; they wait for the next pass.
                return False
        return True

    def _record_sweep(self, status: PairStatus, result: SweepResult, summary: RunSummary) -> None:
        status.passes += 1
        status.rows_touched += result.rows_touched
        status.batches += result.batches
        if result.converged:
            status.state = PairState.CONVERGED
            status.unconverged_passes = 0
            return

        status.state = PairState.RUNNING
        status.unconverged_passes += 1
        if status.unconverged_passes >= self.settings.stall_threshold:
            stall = ConvergenceStall(
                status.entity_type, status.upgrade_name, status.unconverged_passes
            )
            summary.stalls.append(stall)
            logger.warning(
                f"{stall}; operator intervention required",
                extra={
                    "entity_type": status.entity_type,
                    "upgrade": status.upgrade_name,
                    "passes": status.unconverged_passes,
                },
            )

    def _cleanup_entity(self, entity_type: str, summary: RunSummary) -> None:
        if self._cleanup_state[entity_type] is CleanupState.DONE:
            return
        config = self._configs[entity_type]
        if not config.cleanups:
            self._cleanup_state[entity_type] = CleanupState.DONE
            return

        result = self._runners[entity_type].cleanup()
        summary.cleanups.append(result)
        log_cleanup(
            entity_type,
            rows=result.rows_touched,
            errors=len(result.errors),
            completed=result.completed,
        )
        if result.completed:
            self._cleanup_state[entity_type] = CleanupState.DONE
        elif result.skipped_reason is None:
            self._cleanup_state[entity_type] = CleanupState.RUNNING

    # === Observability ===

    def is_complete(self) -> bool:
        """True when every pair has converged and every cleanup is done."""
        return all(
            status.state is PairState.CONVERGED
            for statuses in self._pairs.values()
            for status in statuses
        ) and all(state is CleanupState.DONE for state in self._cleanup_state.values())

    def status(self) -> Dict[str, Any]:
        """Read-only snapshot of per-pair and per-entity cleanup state."""
        return {
            "passes": self._passes,
            "complete": self.is_complete(),
            "entities": {
                entity_type: {
                    "upgrades": [status.to_dict() for status in self._pairs[entity_type]],
                    "cleanup": self._cleanup_state[entity_type].value,
                }
                for entity_type in self._configs
            },
        }

    def convergence(self) -> Dict[str, Any]:
        """Store-backed convergence report.

        Unlike status(), which only knows what this process has swept, this
        asks each store whether any row is still missing each upgrade, so it
        is meaningful from a fresh process. A fetch that raises is reported
        as state "unknown" with the error text.
        """
        entities: Dict[str, Any] = {}
        for entity_type, config in self._configs.items():
            upgrades = []
            for name in config.upgrade_names:
                entry: Dict[str, Any] = {"upgrade": name}
                try:
                    pending = list(config.store.get_rows_missing_upgrade(name, 1))
                except Exception as e:
                    logger.error(
                        f"Convergence check failed for {entity_type}:{name}: {e}", exc_info=True
                    )
                    entry["state"] = "unknown"
                    entry["error"] = f"{type(e).__name__}: {e}"
                else:
                    state = PairState.RUNNING if pending else PairState.CONVERGED
                    entry["state"] = state.value
                upgrades.append(entry)

            converged = all(u["state"] == PairState.CONVERGED.value for u in upgrades)
            if not config.cleanups:
                cleanup = "none"
            else:
                cleanup = "ready" if converged else "blocked"
            entities[entity_type] = {
                "upgrades": upgrades,
                "converged": converged,
                "cleanup": cleanup,
            }

        return {
            "converged": all(e["converged"] for e in entities.values()),
            "entities": entities,
        }

    # === Read Path ===

    def resolver_for(self, entity_type: str) -> EffectiveViewStore:
        """Wrap the entity's store so reads return effective rows."""
        config = self.config_for(entity_type)
        return EffectiveViewStore(config.store, config.upgrades, entity_type=entity_type)

    def effective_row(self, entity_type: str, row: Row) -> Row:
        """Resolve one raw row against the entity's full plan."""
        config = self.config_for(entity_type)
        return resolve_effective_row(config.upgrades, row, entity_type=entity_type)
