import unittest
from datetime import datetime
from decimal import Decimal
from unittest import mock

from fastapi.testclient import TestClient

from budget_ledger import main
from budget_ledger.errors import StorageError
from budget_ledger.ledger import BudgetLedger
from budget_ledger.models import sequential_ids
from budget_ledger.storage import InMemoryStore


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class LedgerApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FixedClock(datetime(2024, 5, 10, 12, 0))
        self.ledger = BudgetLedger.load(InMemoryStore(), ids=sequential_ids(), clock=self.clock)
        main.app.state.ledger = self.ledger
        self.client = TestClient(main.app)

    def tearDown(self) -> None:
        main.app.state.ledger = None

    def create_category(self, name: str = "Food", allocation_type: str = "fixed", value: str = "300") -> dict:
        response = self.client.post(
            "/categories",
            json={"name": name, "allocation_type": allocation_type, "allocation_value": value},
        )
        self.assertEqual(response.status_code, 200)
        return response.json()

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})

    def test_over_budget_flow(self) -> None:
        self.client.post("/incomes", json={"description": "Salary", "amount": "1000"})
        food = self.create_category()
        response = self.client.post(
            "/expenses",
            json={"description": "Groceries", "amount": "350", "category_id": food["id"]},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["category_name"], "Food")

        [status] = self.client.get("/categories/status", params={"month": "2024-05"}).json()

        self.assertEqual(status["month"], "2024-05")
        self.assertEqual(Decimal(status["allocated"]), Decimal("300"))
        self.assertEqual(Decimal(status["remaining"]), Decimal("-50"))
        self.assertTrue(status["over_budget"])

    def test_summary_with_goal(self) -> None:
        self.client.post("/incomes", json={"amount": "2000"})
        goal = self.client.put("/savings-goal", json={"type": "percent_of_income", "value": "10"})
        self.assertEqual(goal.status_code, 200)

        summary = self.client.get("/summary").json()

        self.assertEqual(summary["month"], "2024-05")
        self.assertEqual(Decimal(summary["balance"]), Decimal("2000"))
        self.assertEqual(Decimal(summary["savings"]["target"]), Decimal("200"))
        self.assertTrue(summary["savings"]["achieved"])

        self.assertEqual(self.client.delete("/savings-goal").status_code, 200)
        self.assertIsNone(self.client.get("/savings-goal").json())

    def test_validation_errors_map_to_400(self) -> None:
        self.create_category()

        duplicate = self.client.post("/categories", json={"name": "food", "allocation_value": "1"})
        bad_amount = self.client.post("/incomes", json={"amount": "-3"})
        bad_type = self.client.post(
            "/categories", json={"name": "Rent", "allocation_type": "weekly", "allocation_value": "1"}
        )
        bad_month = self.client.get("/summary", params={"month": "May"})

        self.assertEqual(duplicate.status_code, 400)
        self.assertEqual(bad_amount.status_code, 400)
        self.assertEqual(bad_type.status_code, 400)
        self.assertEqual(bad_month.status_code, 400)

    def test_missing_ids_map_to_404(self) -> None:
        self.assertEqual(self.client.delete("/incomes/nope").status_code, 404)
        self.assertEqual(self.client.put("/incomes/nope", json={"amount": "1"}).status_code, 404)
        self.assertEqual(self.client.delete("/categories/nope").status_code, 404)

    def test_delete_category_reports_removed_expenses(self) -> None:
        food = self.create_category()
        for amount in ("10", "20"):
            self.client.post("/expenses", json={"amount": amount, "category_id": food["id"]})

        response = self.client.delete(f"/categories/{food['id']}")

        self.assertEqual(response.json(), {"status": "deleted", "removed_expenses": 2})
        self.assertEqual(self.client.get("/expenses").json(), [])

    def test_update_expense_and_filter_by_month(self) -> None:
        food = self.create_category()
        rent = self.create_category("Rent", value="1000")
        expense = self.client.post("/expenses", json={"amount": "10", "category_id": food["id"]}).json()

        response = self.client.put(
            f"/expenses/{expense['id']}",
            json={"description": "Moved", "amount": "12", "category_id": rent["id"]},
        )

        self.assertEqual(response.json()["category_name"], "Rent")
        self.assertEqual(len(self.client.get("/expenses", params={"month": "2024-05"}).json()), 1)
        self.assertEqual(self.client.get("/expenses", params={"month": "2024-06"}).json(), [])

    def test_rollover_endpoint(self) -> None:
        food = self.create_category(value="100")
        self.client.post("/expenses", json={"amount": "40", "category_id": food["id"]})
        self.clock.now = datetime(2024, 6, 1)

        first = self.client.post("/rollover").json()
        second = self.client.post("/rollover").json()

        self.assertEqual(first["month"], "2024-06")
        [adjustment] = first["adjustments"]
        self.assertEqual(adjustment["kind"], "carry")
        self.assertEqual(Decimal(adjustment["carry_forward"]), Decimal("60"))
        self.assertEqual(second["adjustments"], [])
        [category] = self.client.get("/categories").json()
        self.assertEqual(Decimal(category["carry_forward"]), Decimal("60"))

    def test_new_month_is_rolled_over_on_next_request(self) -> None:
        food = self.create_category(value="100")
        self.client.post("/expenses", json={"amount": "40", "category_id": food["id"]})
        self.clock.now = datetime(2024, 6, 2)

        [status] = self.client.get("/categories/status").json()

        self.assertEqual(status["month"], "2024-06")
        self.assertEqual(Decimal(status["allocated"]), Decimal("160"))
        self.assertEqual(self.client.post("/rollover").json()["adjustments"], [])

    def test_storage_failure_while_building_ledger_maps_to_503(self) -> None:
        main.app.state.ledger = None

        with mock.patch.object(main, "build_ledger", side_effect=StorageError("down")):
            summary = self.client.get("/summary")
            incomes = self.client.get("/incomes")

        self.assertEqual(summary.status_code, 503)
        self.assertEqual(incomes.status_code, 503)
        self.assertIsNone(main.app.state.ledger)


if __name__ == "__main__":
    unittest.main()
