"""Tests for formula versioning and date resolution."""

import json
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

from nominacalc.sdk.formulas import FormulaValidationError
from nominacalc.sdk.versions import (
    FormulaImmutableError,
    FormulaNotFoundError,
    FormulaStore,
    VersionConflictError,
)


@pytest.fixture
def store(isolated_env, ticking_clock):
    return FormulaStore(isolated_env["data_dir"], clock=ticking_clock)


def create(store, concept_code="P001", expression="dailySalary * workedDays", **fields):
    return store.create_formula("acme", concept_code, "PERCEPTION", "Sueldo", expression, **fields)


class TestCreateFormula:
    """Tests for create_formula."""

    def test_first_version(self, store, isolated_env):
        row = create(store, fiscal_year=2025, created_by="ana")

        assert row.version == 1
        assert row.is_active
        assert row.created_by == "ana"
        assert store.get_formula(row.id) == row

        path = isolated_env["data_dir"] / "formulas" / "acme" / "P001.json"
        doc = json.loads(path.read_text())
        assert doc["revision"] == 1
        assert [r["id"] for r in doc["rows"]] == [row.id]

    def test_invalid_expression_is_not_stored(self, store):
        with pytest.raises(FormulaValidationError):
            create(store, expression="dailySalary * bogus")
        assert store.list_formulas("acme") == []

    def test_unknown_field(self, store):
        with pytest.raises(ValueError):
            create(store, version=3)

    def test_same_fiscal_year_conflicts(self, store):
        first = create(store, fiscal_year=2025)
        with pytest.raises(VersionConflictError) as exc:
            create(store, fiscal_year=2025)
        assert [c.formula_id for c in exc.value.conflicts] == [first.id]
        assert exc.value.conflicts[0].reason == "FISCAL_YEAR"

    def test_overlapping_windows_conflict(self, store):
        create(store, valid_from=date(2025, 1, 1), valid_to=date(2025, 7, 1))
        with pytest.raises(VersionConflictError) as exc:
            create(store, valid_from=date(2025, 6, 1))
        assert exc.value.conflicts[0].reason == "DATE_RANGE"

    def test_adjacent_windows_do_not_conflict(self, store):
        """valid_to is exclusive, so a window may start on the previous end date."""
        create(store, valid_from=date(2025, 1, 1), valid_to=date(2025, 7, 1))
        create(store, valid_from=date(2025, 7, 1))
        assert len(store.list_formulas("acme", active_only=True)) == 2

    def test_two_defaults_conflict(self, store):
        create(store)
        with pytest.raises(VersionConflictError) as exc:
            create(store)
        assert exc.value.conflicts[0].reason == "DEFAULT"

    def test_year_and_window_rows_coexist(self, store):
        create(store, fiscal_year=2025)
        create(store, valid_from=date(2025, 1, 1))
        create(store)
        assert len(store.list_formulas("acme", "P001")) == 3

    def test_validate_no_overlap(self, store):
        row = create(store, fiscal_year=2024)
        assert store.validate_no_overlap("acme", "P001", fiscal_year=2025).valid
        check = store.validate_no_overlap("acme", "P001", fiscal_year=2024)
        assert not check.valid
        assert check.conflicts[0].formula_id == row.id
        assert store.validate_no_overlap("acme", "P001", fiscal_year=2024, exclude_id=row.id).valid

    def test_valid_to_needs_valid_from(self, store):
        with pytest.raises(ValueError, match="valid_to requires valid_from"):
            create(store, valid_to=date(2025, 7, 1))
        assert store.list_formulas("acme") == []
        with pytest.raises(ValueError, match="valid_to requires valid_from"):
            store.validate_no_overlap("acme", "P001", valid_to=date(2025, 7, 1))

    def test_rejects_path_like_ids(self, store):
        with pytest.raises(ValueError):
            store.create_formula("../etc", "P001", "PERCEPTION", "x", "1")
        with pytest.raises(ValueError):
            store.list_concepts("a/b")


class TestCreateNewVersion:
    """Tests for create_new_version."""

    def test_supersedes_previous(self, store):
        v1 = create(store, fiscal_year=2025, exempt_limit=30, exempt_limit_type="UMA")
        v2 = store.create_new_version(v1.id, {"expression": "dailySalary * 16"}, created_by="luis")

        assert v2.version == 2
        assert v2.is_active
        assert v2.expression == "dailySalary * 16"
        assert v2.fiscal_year == 2025
        assert v2.exempt_limit_type == "UMA"
        assert v2.created_by == "luis"

        old = store.get_formula(v1.id)
        assert not old.is_active
        assert old.superseded_by == v2.id
        assert old.superseded_at == v2.created_at
        assert old.expression == v1.expression

        history = store.version_history("acme", "P001")
        assert [r.version for r in history] == [2, 1]

    def test_conflict_with_other_active_row(self, store):
        a = create(store, fiscal_year=2024)
        b = create(store, fiscal_year=2025)

        with pytest.raises(VersionConflictError) as exc:
            store.create_new_version(a.id, {"fiscal_year": 2025})

        assert len(exc.value.conflicts) == 1
        assert exc.value.conflicts[0].formula_id == b.id
        # Nothing was written
        assert store.get_formula(a.id).is_active
        assert len(store.version_history("acme", "P001")) == 2

    def test_superseded_row_cannot_be_versioned_again(self, store):
        v1 = create(store, fiscal_year=2025)
        v2 = store.create_new_version(v1.id, {"expression": "dailySalary * 16"})

        with pytest.raises(VersionConflictError) as exc:
            store.create_new_version(v1.id, {"expression": "dailySalary * 17"})
        assert exc.value.conflicts[0].reason == "SUPERSEDED"
        assert exc.value.conflicts[0].formula_id == v2.id

    def test_invalid_expression(self, store):
        v1 = create(store)
        with pytest.raises(FormulaValidationError):
            store.create_new_version(v1.id, {"expression": "import os"})
        assert store.get_formula(v1.id).is_active

    def test_identity_fields_cannot_change(self, store):
        v1 = create(store)
        with pytest.raises(ValueError):
            store.create_new_version(v1.id, {"company_id": "other"})

    def test_unknown_formula(self, store):
        with pytest.raises(FormulaNotFoundError):
            store.create_new_version("nope", {"expression": "1"})

    def test_concurrent_versions_one_wins(self, store):
        v1 = create(store, fiscal_year=2025)

        def attempt(n):
            try:
                return store.create_new_version(v1.id, {"expression": f"dailySalary * {n}"})
            except VersionConflictError:
                return None

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(8)))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        active = store.list_formulas("acme", "P001", active_only=True)
        assert [r.id for r in active] == [winners[0].id]

    def test_second_store_waits_for_the_scope_lock(self, isolated_env, ticking_clock, monkeypatch):
        """Two stores on one data dir (as two processes would be) serialize their writes."""
        first = FormulaStore(isolated_env["data_dir"], clock=ticking_clock)
        other = FormulaStore(isolated_env["data_dir"], clock=ticking_clock)
        v1 = create(first, fiscal_year=2025)

        rival = {}

        def run_rival():
            try:
                rival["row"] = other.create_new_version(v1.id, {"expression": "dailySalary * 17"})
            except VersionConflictError as e:
                rival["error"] = e

        thread = threading.Thread(target=run_rival)
        real_replace = os.replace

        def replace_while_rival_runs(src, dst):
            if "blocked" not in rival:
                thread.start()
                thread.join(0.3)
                rival["blocked"] = thread.is_alive()
            real_replace(src, dst)

        monkeypatch.setattr("nominacalc.sdk.versions.os.replace", replace_while_rival_runs)
        winner = first.create_new_version(v1.id, {"expression": "dailySalary * 16"})
        thread.join(5)

        assert rival["blocked"]
        assert "row" not in rival
        assert rival["error"].conflicts[0].reason == "SUPERSEDED"
        assert rival["error"].conflicts[0].formula_id == winner.id
        assert [r.id for r in other.version_history("acme", "P001")] == [winner.id, v1.id]


class TestResolve:
    """Tests for resolve_formula_for_date."""

    def test_fiscal_year_wins(self, store):
        create(store, valid_from=date(2025, 1, 1))
        by_year = create(store, fiscal_year=2025)

        resolved = store.resolve_formula_for_date("acme", "P001", date(2025, 3, 15))
        assert resolved.id == by_year.id
        assert resolved.resolved_by == "FISCAL_YEAR"

    def test_date_window(self, store):
        first_half = create(store, valid_from=date(2025, 1, 1), valid_to=date(2025, 7, 1))
        second_half = create(store, valid_from=date(2025, 7, 1))

        assert store.resolve_formula_for_date("acme", "P001", date(2025, 6, 30)).id == first_half.id
        resolved = store.resolve_formula_for_date("acme", "P001", date(2025, 7, 1))
        assert resolved.id == second_half.id
        assert resolved.resolved_by == "DATE_RANGE"

    def test_dated_window_before_default(self, store):
        create(store)
        dated = create(store, valid_from=date(2025, 1, 1))
        assert store.resolve_formula_for_date("acme", "P001", date(2025, 2, 1)).id == dated.id

    def test_fallback_to_most_recent(self, store):
        create(store, fiscal_year=2023)
        newest = create(store, fiscal_year=2024)

        resolved = store.resolve_formula_for_date("acme", "P001", date(2026, 1, 15))
        assert resolved.id == newest.id
        assert resolved.resolved_by == "FALLBACK"

    def test_superseded_rows_are_ignored(self, store):
        v1 = create(store, fiscal_year=2025)
        v2 = store.create_new_version(v1.id, {"expression": "dailySalary * 16"})
        assert store.resolve_formula_for_date("acme", "P001", date(2025, 5, 1)).id == v2.id

    def test_nothing_to_resolve(self, store):
        assert store.resolve_formula_for_date("acme", "P999", date(2025, 1, 1)) is None

    def test_deterministic(self, store):
        create(store, valid_from=date(2025, 1, 1))
        create(store, fiscal_year=2024)
        target = date(2025, 5, 1)
        first = store.resolve_formula_for_date("acme", "P001", target)
        assert all(store.resolve_formula_for_date("acme", "P001", target).id == first.id for _ in range(5))


class TestDelete:
    """Tests for delete_formula."""

    def test_delete_unused_row(self, store):
        row = create(store)
        store.delete_formula(row.id)
        with pytest.raises(FormulaNotFoundError):
            store.get_formula(row.id)

    def test_history_is_immutable(self, store):
        v1 = create(store, fiscal_year=2025)
        v2 = store.create_new_version(v1.id, {"expression": "dailySalary * 16"})

        with pytest.raises(FormulaImmutableError):
            store.delete_formula(v1.id)
        with pytest.raises(FormulaImmutableError):
            store.delete_formula(v2.id)

    def test_referenced_row(self, isolated_env, ticking_clock):
        referenced = set()
        store = FormulaStore(isolated_env["data_dir"], is_referenced=referenced.__contains__, clock=ticking_clock)
        row = create(store)
        referenced.add(row.id)
        with pytest.raises(FormulaImmutableError):
            store.delete_formula(row.id)
