"""Tests for ledger_sync.categories -- additive taxonomy reconciliation."""

from __future__ import annotations

from conftest import FakeLedgerEngine, FakeLedgerServer
from ledger_sync.categories import reconcile_categories
from ledger_sync.models import CategoryGroup, LedgerCategoryGroup


class TestReconcileCategories:
    def test_twice_is_additive_and_idempotent(self):
        """First run creates one group and one category, second run writes nothing."""
        server = FakeLedgerServer(
            groups=[LedgerCategoryGroup(id="g0", name="Bills", categories=["Rent"])]
        )
        engine = FakeLedgerEngine(server)
        taxonomy = [CategoryGroup("Food", ["Groceries"])]

        first = reconcile_categories(taxonomy, engine)
        assert first.groups_created == 1
        assert first.categories_created == 1
        assert server.writes == 2

        second = reconcile_categories(taxonomy, engine)
        assert second.writes == 0
        assert server.writes == 2

        bills = next(g for g in server.groups if g.name == "Bills")
        assert bills.categories == ["Rent"]

    def test_adds_missing_category_to_existing_group(self):
        server = FakeLedgerServer(
            groups=[LedgerCategoryGroup(id="g0", name="food", categories=["groceries"])]
        )
        engine = FakeLedgerEngine(server)
        result = reconcile_categories(
            [CategoryGroup("Food", ["Groceries", "Restaurants"])], engine
        )

        assert result.groups_created == 0
        assert result.categories_created == 1
        assert server.groups[0].categories == ["groceries", "Restaurants"]

    def test_preserves_taxonomy_order(self):
        server = FakeLedgerServer()
        engine = FakeLedgerEngine(server)
        reconcile_categories(
            [CategoryGroup("B", ["b2", "b1"]), CategoryGroup("A", ["a1"])], engine
        )
        assert [g.name for g in server.groups] == ["B", "A"]
        assert server.groups[0].categories == ["b2", "b1"]

    def test_duplicate_names_in_taxonomy_created_once(self):
        server = FakeLedgerServer()
        engine = FakeLedgerEngine(server)
        result = reconcile_categories(
            [CategoryGroup("Food", ["Coffee", "coffee "]), CategoryGroup("food", ["Tea"])], engine
        )
        assert result.groups_created == 1
        assert result.categories_created == 2
        assert server.groups[0].categories == ["Coffee", "Tea"]

    def test_group_failure_skips_its_categories_only(self):
        class FlakyGroups(FakeLedgerEngine):
            def create_category_group(self, name):
                if name == "Broken":
                    raise RuntimeError("cannot create")
                return super().create_category_group(name)

        server = FakeLedgerServer()
        engine = FlakyGroups(server)
        result = reconcile_categories(
            [CategoryGroup("Broken", ["X"]), CategoryGroup("Food", ["Groceries"])], engine
        )

        assert len(result.errors) == 1
        assert "Broken" in result.errors[0]
        assert [g.name for g in server.groups] == ["Food"]
        assert result.categories_created == 1

    def test_category_failure_is_contained(self):
        server = FakeLedgerServer()
        engine = FakeLedgerEngine(server, failures={"create_category": RuntimeError("nope")})
        result = reconcile_categories([CategoryGroup("Food", ["A", "B"])], engine)

        assert result.groups_created == 1
        assert result.categories_created == 0
        assert len(result.errors) == 2

    def test_empty_taxonomy(self):
        engine = FakeLedgerEngine(FakeLedgerServer())
        assert reconcile_categories([], engine).writes == 0
