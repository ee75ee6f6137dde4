"""
Pytest fixtures and test configuration for dataupgrade tests.
"""

from typing import Any, Dict, List

import pytest

from dataupgrade.config import EntityUpgradeConfig, UpgradeSettings
from dataupgrade.storage import InMemoryRowStore
from dataupgrade.types import DROP, CleanupStep, UpgradeDefinition


def make_settings(**overrides) -> UpgradeSettings:
    """UpgradeSettings that ignore any local .env file."""
    return UpgradeSettings(_env_file=None, **overrides)


def split_headline(row: Dict[str, Any]) -> Dict[str, Any]:
    return {"title": row.get("headline")}


def add_status_field(row: Dict[str, Any]) -> Dict[str, Any]:
    return {"status": "draft"}


def rename_content(row: Dict[str, Any]) -> Dict[str, Any]:
    # Depends on add_status_field having run first
    if "status" not in row:
        raise KeyError("status")
    return {"body": row.get("content"), "status": row["status"].upper()}


def drop_headline(row: Dict[str, Any]) -> Dict[str, Any]:
    return {"headline": DROP}


SPLIT_HEADLINE = UpgradeDefinition("splitHeadline", split_headline)
ADD_STATUS = UpgradeDefinition("addStatusField", add_status_field)
RENAME_CONTENT = UpgradeDefinition("renameContent", rename_content)
DROP_HEADLINE = CleanupStep("dropHeadline", drop_headline)


@pytest.fixture
def settings():
    return make_settings(batch_size=5, cleanup_batch_size=5, persist_retries=0)


@pytest.fixture
def make_rows():
    """Factory for article rows with ids 1..n and an empty ledger."""

    def _make(count: int, start: int = 1, **fields) -> List[Dict[str, Any]]:
        return [
            {
                "id": i,
                "headline": f"headline {i}",
                "content": f"content {i}",
                "applied_upgrades": None,
                **fields,
            }
            for i in range(start, start + count)
        ]

    return _make


@pytest.fixture
def article_store(make_rows):
    return InMemoryRowStore(make_rows(12))


@pytest.fixture
def article_config(article_store):
    return EntityUpgradeConfig(
        entity_type="articles",
        store=article_store,
        upgrades=[ADD_STATUS, RENAME_CONTENT],
    )
