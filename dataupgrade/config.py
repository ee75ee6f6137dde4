"""Configuration for dataupgrade.

Global defaults come from the environment (DATAUPGRADE_* variables or a
.env file). Per-entity plans are explicit EntityUpgradeConfig values handed
to the orchestrator; nothing is registered at import time.
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Optional, Sequence

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from dataupgrade.protocols import REQUIRED_STORE_METHODS, ConfigurationError
from dataupgrade.types import CleanupStep, UpgradeDefinition

DEFAULT_DATA_DIR = Path.home() / ".dataupgrade"

# Entity type names end up in log lines and SQL table names
_ENTITY_TYPE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]{0,63}$")


class UpgradeSettings(BaseSettings):
    """Global defaults loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="DATAUPGRADE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra env vars not in model
    )

    # Batching
    batch_size: int = Field(100, ge=1)
    cleanup_batch_size: int = Field(100, ge=1)
    max_workers: int = Field(1, ge=1)  # Row workers per batch; 1 runs inline

    # Failure handling
    persist_retries: int = Field(2, ge=0)
    stall_threshold: int = Field(3, ge=1)  # Consecutive unconverged passes
    max_passes: int = Field(10, ge=1)  # Default limit for DataUpgrader.start()

    # Logging
    data_dir: Optional[Path] = None
    log_level: str = "INFO"

    def resolved_data_dir(self) -> Path:
        return Path(self.data_dir) if self.data_dir else DEFAULT_DATA_DIR


@lru_cache
def get_settings() -> UpgradeSettings:
    """Get cached settings instance."""
    return UpgradeSettings()


@dataclass
class EntityUpgradeConfig:
    """Everything the engine needs to migrate one entity type."""

    entity_type: str
    store: Any  # RowStore
    upgrades: List[UpgradeDefinition] = field(default_factory=list)
    cleanups: List[CleanupStep] = field(default_factory=list)
    batch_size: Optional[int] = None  # Falls back to UpgradeSettings.batch_size
    cleanup_batch_size: Optional[int] = None

    @property
    def upgrade_names(self) -> List[str]:
        return [u.name for u in self.upgrades]

    def effective_batch_size(self, settings: UpgradeSettings) -> int:
        return self.batch_size or settings.batch_size

    def effective_cleanup_batch_size(self, settings: UpgradeSettings) -> int:
        return self.cleanup_batch_size or settings.cleanup_batch_size

    def validate(self) -> None:
        """Check the plan and store.

        Raises:
            ConfigurationError: On duplicate or empty names, non-callable
                transforms, bad batch sizes, cleanup steps without an upgrade
                plan, or a store missing a required operation.
        """
        if not self.entity_type or not _ENTITY_TYPE_PATTERN.match(self.entity_type):
            raise ConfigurationError(f"Invalid entity type name: {self.entity_type!r}")

        seen = set()
        for upgrade in self.upgrades:
            if not isinstance(upgrade, UpgradeDefinition):
                raise ConfigurationError(
                    f"{self.entity_type}: upgrades must be UpgradeDefinition, "
                    f"got {type(upgrade).__name__}"
                )
            _check_step(self.entity_type, upgrade)
            if upgrade.name in seen:
                raise ConfigurationError(
                    f"{self.entity_type}: duplicate upgrade name {upgrade.name!r}"
                )
            seen.add(upgrade.name)

        cleanup_names = set()
        for step in self.cleanups:
            if not isinstance(step, CleanupStep):
                raise ConfigurationError(
                    f"{self.entity_type}: cleanups must be CleanupStep, got {type(step).__name__}"
                )
            _check_step(self.entity_type, step)
            if step.name in cleanup_names:
                raise ConfigurationError(
                    f"{self.entity_type}: duplicate cleanup name {step.name!r}"
                )
            cleanup_names.add(step.name)

        if self.cleanups and not self.upgrades:
            raise ConfigurationError(
                f"{self.entity_type}: cleanup steps need an upgrade plan to gate on"
            )

        for size_name in ("batch_size", "cleanup_batch_size"):
            size = getattr(self, size_name)
            if size is not None and (not isinstance(size, int) or size < 1):
                raise ConfigurationError(f"{self.entity_type}: {size_name} must be >= 1")

        missing = [m for m in REQUIRED_STORE_METHODS if not callable(getattr(self.store, m, None))]
        if missing:
            raise ConfigurationError(
                f"{self.entity_type}: store is missing required operations: {', '.join(missing)}"
            )


def _check_step(entity_type: str, step: Any) -> None:
    if not isinstance(step.name, str) or not step.name.strip():
        raise ConfigurationError(f"{entity_type}: step names must be non-empty strings")
    if not callable(step.transform):
        raise ConfigurationError(f"{entity_type}: transform for {step.name!r} is not callable")


def validate_configs(configs: Sequence[EntityUpgradeConfig]) -> None:
    """Validate every config and reject duplicate entity types."""
    seen = set()
    for config in configs:
        if not isinstance(config, EntityUpgradeConfig):
            raise ConfigurationError(
                f"Expected EntityUpgradeConfig, got {type(config).__name__}"
            )
        config.validate()
        if config.entity_type in seen:
            raise ConfigurationError(f"Duplicate entity type: {config.entity_type}")
        seen.add(config.entity_type)
