import json
import unittest
from datetime import datetime, timedelta
from decimal import Decimal

from budget_ledger.migration import LegacyKeys, build_from_legacy, migrate_legacy
from budget_ledger.models import AllocationType, Period, SavingsGoal, sequential_ids
from budget_ledger.schema import Keys
from budget_ledger.storage import InMemoryStore

NOW = datetime(2024, 5, 10, 12, 0)


def build(raw: dict):
    return build_from_legacy(raw, ids=sequential_ids("m-"), clock=lambda: NOW)


class BuildFromLegacyTests(unittest.TestCase):
    def test_number_arrays_become_ordered_entries(self) -> None:
        result = build({"incomes": [100, 250.5, "75"]})

        amounts = [entry.amount for entry in result.incomes]
        times = [entry.occurred_at for entry in result.incomes]
        self.assertEqual(amounts, [Decimal("100"), Decimal("250.5"), Decimal("75")])
        self.assertTrue(all(a < b for a, b in zip(times, times[1:])))
        self.assertEqual(times[1] - times[0], timedelta(minutes=1))
        self.assertEqual(times[-1], NOW)
        self.assertTrue(all(entry.description == "" for entry in result.incomes))

    def test_malformed_amounts_default_to_zero(self) -> None:
        result = build({"income": [None, "abc", -40, {"amount": "NaN"}, [1, 2]]})

        self.assertEqual(len(result.incomes), 5)
        self.assertTrue(all(entry.amount == Decimal("0") for entry in result.incomes))

    def test_string_categories_become_fixed_zero(self) -> None:
        result = build({"categories": ["Food", "  Rent "]})

        self.assertEqual([c.name for c in result.categories], ["Food", "Rent"])
        for category in result.categories:
            self.assertEqual(category.allocation_type, AllocationType.FIXED)
            self.assertEqual(category.allocation_value, Decimal("0"))
            self.assertEqual(category.carry_forward, Decimal("0"))

    def test_category_objects_get_defaults(self) -> None:
        result = build(
            {
                "categories": [
                    {"name": "Food", "budget": 500},
                    {"name": "Fun", "allocationType": "percent", "allocationValue": 150},
                    {"name": "Rent"},
                    {"name": "Bills", "limit": "120", "carryForward": "15.5"},
                    {"budget": 10},
                    42,
                ]
            }
        )

        by_name = {c.name: c for c in result.categories}
        self.assertEqual(set(by_name), {"Food", "Fun", "Rent", "Bills"})
        self.assertEqual(by_name["Food"].allocation_value, Decimal("500"))
        self.assertEqual(by_name["Fun"].allocation_type, AllocationType.PERCENT_OF_INCOME)
        self.assertEqual(by_name["Fun"].allocation_value, Decimal("100"))
        self.assertEqual(by_name["Rent"].allocation_value, Decimal("0"))
        self.assertEqual(by_name["Bills"].carry_forward, Decimal("15.5"))

    def test_category_budgets_key_overrides_budget(self) -> None:
        result = build(
            {
                "categories": [{"name": "Food", "budget": 500}],
                "categoryBudgets": {"food": 650},
            }
        )

        self.assertEqual(result.categories[0].allocation_value, Decimal("650"))

    def test_duplicate_categories_keep_first_and_orphan_expenses(self) -> None:
        result = build(
            {
                "categories": [
                    {"id": 1, "name": "Food", "budget": 300},
                    {"id": 2, "name": "food", "budget": 999},
                ],
                "expenses": [
                    {"amount": 10, "categoryId": 1},
                    {"amount": 20, "categoryId": 2},
                    {"amount": 30, "category": "food"},
                    {"amount": 40, "category": "FOOD"},
                ],
            }
        )

        [food] = result.categories
        self.assertEqual(food.allocation_value, Decimal("300"))
        self.assertEqual(result.dropped_categories, ["food"])
        self.assertEqual(result.dropped_expenses, 2)
        self.assertEqual([e.amount for e in result.expenses], [Decimal("10"), Decimal("40")])
        self.assertTrue(all(e.category_id == food.id for e in result.expenses))

    def test_unknown_category_reference_uses_placeholder(self) -> None:
        result = build(
            {
                "categories": ["Food"],
                "expenses": [
                    {"amount": 5, "category": "Travel"},
                    {"amount": 6},
                    7,
                ],
            }
        )

        names = [c.name for c in result.categories]
        self.assertEqual(names, ["Food", "Uncategorized"])
        placeholder = result.categories[1]
        self.assertTrue(all(e.category_id == placeholder.id for e in result.expenses))

    def test_fallback_category_when_none_exist(self) -> None:
        result = build({"incomes": [100]})

        [fallback] = result.categories
        self.assertEqual(fallback.name, "Uncategorized")
        self.assertEqual(fallback.allocation_value, Decimal("0"))

    def test_combined_transactions_shape(self) -> None:
        result = build(
            {
                "transactions": [
                    {"id": 1, "type": "income", "name": "Salary", "amount": 1000, "category": ""},
                    {"id": 2, "type": "expense", "name": "Pizza", "amount": 25.5, "category": "Food"},
                    {"id": 3, "type": "transfer", "amount": 5},
                ],
                "categories": [{"name": "Food", "budget": 500}],
            }
        )

        [salary] = result.incomes
        [pizza] = result.expenses
        self.assertEqual(salary.description, "Salary")
        self.assertEqual(pizza.description, "Pizza")
        self.assertEqual(pizza.amount, Decimal("25.5"))
        self.assertEqual(pizza.category_id, result.categories[0].id)

    def test_transactions_without_categories_use_built_in_categories(self) -> None:
        result = build(
            {
                "transactions": [
                    {"id": 1, "type": "expense", "name": "Pizza", "amount": 20, "category": "Food"},
                    {"id": 2, "type": "expense", "name": "Power", "amount": 80, "category": "Utilities"},
                ]
            }
        )

        names = [c.name for c in result.categories]
        self.assertEqual(names, ["Utilities", "Food", "Rent", "Entertainment", "Others"])
        self.assertEqual(result.categories[1].allocation_value, Decimal("500"))
        by_id = {c.id: c.name for c in result.categories}
        self.assertEqual([by_id[e.category_id] for e in result.expenses], ["Food", "Utilities"])

    def test_parsed_timestamps_are_kept(self) -> None:
        result = build(
            {
                "expenses": [
                    {"amount": 5, "date": "2024-03-02T10:00:00"},
                    {"amount": 6, "timestamp": 1714557600000},
                ]
            }
        )

        self.assertEqual(result.expenses[0].occurred_at, datetime(2024, 3, 2, 10, 0))
        self.assertEqual(
            result.expenses[1].occurred_at, datetime.fromtimestamp(1714557600)
        )

    def test_goal_and_marker(self) -> None:
        result = build(
            {
                "savingsGoal": 20,
                "savingsGoalType": "percentage",
                "lastMonth": "2024-4",
            }
        )

        self.assertEqual(result.goal, SavingsGoal(AllocationType.PERCENT_OF_INCOME, Decimal("20")))
        self.assertEqual(result.last_processed_period, Period(2024, 4))

    def test_goal_object_and_bad_marker(self) -> None:
        result = build(
            {
                "savingsGoal": {"type": "fixed", "value": "300"},
                "lastProcessedMonth": "sometime",
            }
        )

        self.assertEqual(result.goal, SavingsGoal(AllocationType.FIXED, Decimal("300")))
        self.assertIsNone(result.last_processed_period)

    def test_non_list_values_are_treated_as_empty(self) -> None:
        result = build({"incomes": {"a": 1}, "categories": "Food"})

        self.assertEqual(result.incomes, [])
        self.assertEqual([c.name for c in result.categories], ["Uncategorized"])


class MigrateLegacyTests(unittest.TestCase):
    def test_migrates_once_and_removes_legacy_keys(self) -> None:
        store = InMemoryStore(
            {
                "incomes": json.dumps([100, 200, 300]),
                "expenses": json.dumps([5]),
                "categories": json.dumps(["Food"]),
            }
        )

        result = migrate_legacy(store, ids=sequential_ids(), clock=lambda: NOW)

        self.assertEqual(sorted(result.migrated_keys), ["categories", "expenses", "incomes"])
        for key in (LegacyKeys.INCOMES, LegacyKeys.EXPENSES, LegacyKeys.CATEGORIES):
            self.assertIsNone(store.load(key))
        incomes = json.loads(store.load(Keys.INCOMES))
        self.assertEqual([Decimal(i["amount"]) for i in incomes], [Decimal(100), Decimal(200), Decimal(300)])
        self.assertEqual(store.load(Keys.SCHEMA), "2")

        self.assertIsNone(migrate_legacy(store, ids=sequential_ids(), clock=lambda: NOW))

    def test_current_schema_short_circuits(self) -> None:
        store = InMemoryStore({Keys.SCHEMA: "2", "incomes": json.dumps([1])})

        self.assertIsNone(migrate_legacy(store))
        self.assertEqual(store.load("incomes"), "[1]")

    def test_empty_store_has_nothing_to_migrate(self) -> None:
        store = InMemoryStore()

        self.assertIsNone(migrate_legacy(store))
        self.assertEqual(store.data, {})

    def test_invalid_json_does_not_abort(self) -> None:
        store = InMemoryStore(
            {
                "incomes": "[1, 2",
                "lastMonth": "2024-03",
                "expenses": json.dumps([4]),
            }
        )

        result = migrate_legacy(store, ids=sequential_ids(), clock=lambda: NOW)

        self.assertEqual(result.incomes, [])
        self.assertEqual(len(result.expenses), 1)
        self.assertEqual(result.last_processed_period, Period(2024, 3))
        self.assertIsNone(store.load("incomes"))


if __name__ == "__main__":
    unittest.main()
