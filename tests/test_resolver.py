"""Tests for effective-view resolution.

Tests:
- Folding pending upgrades in plan order
- Skipping upgrades already in the ledger
- Restricting the fold with upto
- Transform failures surfacing as TransformError
- Diffing raw and effective rows
- The EffectiveViewStore read path
"""

import copy

import pytest

from dataupgrade.protocols import TransformError
from dataupgrade.resolver import (
    EffectiveViewStore,
    effective_patch,
    fold_plan,
    merge_patch,
    resolve_effective_row,
)
from dataupgrade.storage import InMemoryRowStore
from dataupgrade.types import DROP, UpgradeDefinition

from conftest import ADD_STATUS, RENAME_CONTENT, SPLIT_HEADLINE


class TestMergePatch:
    def test_patch_wins(self):
        assert merge_patch({"id": 1, "a": 1}, {"a": 2, "b": 3}) == {"id": 1, "a": 2, "b": 3}

    def test_drop_removes_field(self):
        assert merge_patch({"id": 1, "a": 1}, {"a": DROP}) == {"id": 1}

    def test_drop_of_absent_field_is_noop(self):
        assert merge_patch({"id": 1}, {"a": DROP}) == {"id": 1}

    def test_ledger_in_patch_is_ignored(self):
        row = {"id": 1, "applied_upgrades": ["a"]}
        merged = merge_patch(row, {"applied_upgrades": []})
        assert merged["applied_upgrades"] == ["a"]

    def test_does_not_mutate_row(self):
        row = {"id": 1, "a": 1}
        merge_patch(row, {"a": 2})
        assert row == {"id": 1, "a": 1}


class TestResolveEffectiveRow:
    def test_headline_split_on_read(self):
        """An unmigrated row already reads with the new field."""
        raw = {"id": 1, "headline": "old", "applied_upgrades": None}
        effective = resolve_effective_row([SPLIT_HEADLINE], raw)
        assert effective == {
            "id": 1,
            "headline": "old",
            "title": "old",
            "applied_upgrades": ["splitHeadline"],
        }

    def test_raw_row_untouched(self):
        raw = {"id": 1, "headline": "old", "applied_upgrades": None}
        before = copy.deepcopy(raw)
        resolve_effective_row([SPLIT_HEADLINE], raw)
        assert raw == before

    def test_fully_upgraded_row_is_unchanged(self):
        raw = {
            "id": 1,
            "content": "x",
            "status": "DRAFT",
            "body": "x",
            "applied_upgrades": ["addStatusField", "renameContent"],
        }
        assert resolve_effective_row([ADD_STATUS, RENAME_CONTENT], raw) == raw

    def test_folds_in_plan_order(self):
        """renameContent sees the status written by addStatusField."""
        raw = {"id": 1, "content": "x", "applied_upgrades": []}
        effective = resolve_effective_row([ADD_STATUS, RENAME_CONTENT], raw)
        assert effective["status"] == "DRAFT"
        assert effective["body"] == "x"
        assert effective["applied_upgrades"] == ["addStatusField", "renameContent"]

    def test_applied_upgrades_are_skipped(self):
        calls = []

        def track(row):
            calls.append(row["id"])
            return {"seen": True}

        plan = [UpgradeDefinition("tracked", track)]
        resolve_effective_row(plan, {"id": 1, "applied_upgrades": ["tracked"]})
        assert calls == []

    def test_upto_restricts_fold(self):
        raw = {"id": 1, "content": "x", "applied_upgrades": None}
        effective = resolve_effective_row([ADD_STATUS, RENAME_CONTENT], raw, upto="addStatusField")
        assert effective["applied_upgrades"] == ["addStatusField"]
        assert "body" not in effective

    def test_upto_unknown_upgrade(self):
        with pytest.raises(ValueError, match="Unknown upgrade"):
            resolve_effective_row([ADD_STATUS], {"id": 1}, upto="nope")

    def test_deterministic(self):
        raw = {"id": 1, "content": "x"}
        plan = [ADD_STATUS, RENAME_CONTENT]
        assert resolve_effective_row(plan, raw) == resolve_effective_row(plan, raw)

    def test_transform_failure_raises_transform_error(self):
        def boom(row):
            raise RuntimeError("bad row")

        plan = [UpgradeDefinition("explode", boom)]
        with pytest.raises(TransformError) as exc_info:
            resolve_effective_row(plan, {"id": 7}, entity_type="articles")
        err = exc_info.value
        assert err.row_id == 7
        assert err.step == "explode"
        assert err.entity_type == "articles"
        assert isinstance(err.cause, RuntimeError)

    def test_non_mapping_patch_is_transform_error(self):
        plan = [UpgradeDefinition("bad", lambda row: ["not", "a", "dict"])]
        with pytest.raises(TransformError, match="expected a mapping"):
            resolve_effective_row(plan, {"id": 1})

    def test_none_patch_only_records_ledger(self):
        plan = [UpgradeDefinition("noop", lambda row: None)]
        effective = resolve_effective_row(plan, {"id": 1, "a": 1})
        assert effective == {"id": 1, "a": 1, "applied_upgrades": ["noop"]}

    def test_transform_cannot_write_ledger(self):
        plan = [UpgradeDefinition("sneaky", lambda row: {"applied_upgrades": ["forged"]})]
        effective = resolve_effective_row(plan, {"id": 1})
        assert effective["applied_upgrades"] == ["sneaky"]


class TestEffectivePatch:
    def test_changed_and_added_fields(self):
        raw = {"id": 1, "a": 1, "b": 2, "applied_upgrades": None}
        effective = {"id": 1, "a": 1, "b": 3, "c": 4, "applied_upgrades": ["x"]}
        assert effective_patch(raw, effective) == {"b": 3, "c": 4}

    def test_removed_field_becomes_drop(self):
        assert effective_patch({"id": 1, "a": 1}, {"id": 1}) == {"a": DROP}

    def test_identical_rows(self):
        assert effective_patch({"id": 1, "a": 1}, {"id": 1, "a": 1}) == {}

    def test_type_change_is_a_change(self):
        raw = {"id": 1, "flag": 1, "count": 3.0}
        effective = {"id": 1, "flag": True, "count": 3}
        assert effective_patch(raw, effective) == {"flag": True, "count": 3}


class TestFoldPlan:
    def test_patch_is_merged_transform_output(self):
        raw = {"id": 1, "content": "c", "applied_upgrades": None}
        effective, patch = fold_plan([ADD_STATUS, RENAME_CONTENT], raw)
        assert patch == {"status": "DRAFT", "body": "c"}
        merged = merge_patch(raw, patch)
        merged["applied_upgrades"] = effective["applied_upgrades"]
        assert merged == effective

    def test_patch_keeps_values_equal_to_stored(self):
        plan = [
            UpgradeDefinition(
                "normaliseTypes", lambda row: {"flag": bool(row["flag"]), "same": row["same"]}
            )
        ]
        effective, patch = fold_plan(plan, {"id": 1, "flag": 1, "same": "x"})
        assert patch == {"flag": True, "same": "x"}
        assert effective["flag"] is True

    def test_already_applied_upgrades_contribute_nothing(self):
        raw = {"id": 1, "content": "c", "status": "draft", "applied_upgrades": ["addStatusField"]}
        _, patch = fold_plan([ADD_STATUS, RENAME_CONTENT], raw)
        assert patch == {"status": "DRAFT", "body": "c"}

    def test_ledger_key_stripped_from_patch(self):
        plan = [UpgradeDefinition("sneaky", lambda row: {"applied_upgrades": ["forged"], "a": 1})]
        _, patch = fold_plan(plan, {"id": 1})
        assert patch == {"a": 1}

    def test_upgrade_may_not_drop_fields(self):
        plan = [UpgradeDefinition("dropTooEarly", lambda row: {"headline": DROP})]
        with pytest.raises(TransformError, match="upgrades cannot drop fields: headline"):
            fold_plan(plan, {"id": 1, "headline": "h"})

    def test_mutating_transform_cannot_reach_raw_row(self):
        def impure(row):
            row["applied_upgrades"].append("forged")
            row["tags"].append("mutated")
            return {}

        raw = {"id": 1, "tags": ["a"], "applied_upgrades": ["older"]}
        before = copy.deepcopy(raw)
        resolve_effective_row([UpgradeDefinition("impure", impure)], raw)
        assert raw == before


class TestEffectiveViewStore:
    @pytest.fixture
    def view(self):
        store = InMemoryRowStore(
            [
                {"id": 1, "headline": "one", "applied_upgrades": None},
                {"id": 2, "headline": "two", "title": "two", "applied_upgrades": ["splitHeadline"]},
            ]
        )
        return EffectiveViewStore(store, [SPLIT_HEADLINE], entity_type="articles")

    def test_get_row_resolves(self, view):
        assert view.get_row(1)["title"] == "one"

    def test_get_row_missing(self, view):
        assert view.get_row(99) is None

    def test_get_rows_resolves_all(self, view):
        rows = view.get_rows()
        assert [r["title"] for r in rows] == ["one", "two"]
        assert all(r["applied_upgrades"] == ["splitHeadline"] for r in rows)

    def test_reads_do_not_write(self, view):
        view.get_rows()
        assert view.store.get_row(1)["applied_upgrades"] is None

    def test_delegates_other_attributes(self, view):
        assert view.count() == 2
