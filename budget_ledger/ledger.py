from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from budget_ledger.budget_engine import (
    CategoryStatus,
    PercentCarryPolicy,
    PeriodTotals,
    RolloverAdjustment,
    SavingsProgress,
    category_status,
    plan_rollover,
    savings_progress,
    totals_for_period,
)
from budget_ledger.category_registry import CategoryRegistry
from budget_ledger.entry_store import EntryStore
from budget_ledger.errors import ValidationError
from budget_ledger.migration import DEFAULT_FALLBACK_CATEGORY, migrate_legacy
from budget_ledger.models import (
    Category,
    Clock,
    EntryKind,
    ExpenseEntry,
    IdGenerator,
    IncomeEntry,
    Period,
    SavingsGoal,
    coerce_allocation,
    uuid_ids,
)
from budget_ledger.schema import (
    SCHEMA_VERSION,
    CategoryRecord,
    ExpenseRecord,
    IncomeRecord,
    Keys,
    dump_goal,
    dump_period,
    dump_records,
    load_goal,
    load_period,
    load_records,
)
from budget_ledger.storage import KeyValueStore

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("budget_ledger.audit")


@dataclass(frozen=True)
class LedgerSummary:
    period: Period
    totals: PeriodTotals
    savings: Optional[SavingsProgress] = None


class BudgetLedger:
    """In-memory ledger state plus the store it is flushed to.

    Every mutating call updates memory first and then saves the keys it
    touched. If a save fails the ``StorageError`` propagates and memory
    stays as mutated; the next successful flush of that key catches up.
    """

    def __init__(
        self,
        store: KeyValueStore,
        categories: CategoryRegistry,
        entries: EntryStore,
        *,
        goal: Optional[SavingsGoal] = None,
        last_processed_period: Optional[Period] = None,
        policy: str = PercentCarryPolicy.AFTER,
        clock: Clock = datetime.now,
    ) -> None:
        self.store = store
        self.categories = categories
        self.entries = entries
        self.policy = PercentCarryPolicy.validate(policy)
        self.last_processed_period = last_processed_period
        self.audit_log: list[RolloverAdjustment] = []
        self._goal = goal
        self._clock = clock

    @classmethod
    def load(
        cls,
        store: KeyValueStore,
        *,
        ids: IdGenerator = uuid_ids,
        clock: Clock = datetime.now,
        policy: str = PercentCarryPolicy.AFTER,
        fallback_category: str = DEFAULT_FALLBACK_CATEGORY,
        seed_default_categories: bool = False,
        advance: bool = True,
    ) -> "BudgetLedger":
        """Build a ledger from ``store``, migrating legacy keys first.

        A store with neither current nor legacy keys yields an empty ledger
        (optionally seeded with the default categories) and is initialised
        with the current schema marker. With ``advance`` the ledger then
        rolls over to the clock's current month if needed.
        """
        migrate_legacy(store, ids=ids, clock=clock, fallback_category=fallback_category)

        fresh = store.load(Keys.SCHEMA) is None
        categories = CategoryRegistry(
            [r.to_category() for r in load_records(store.load(Keys.CATEGORIES), CategoryRecord, Keys.CATEGORIES)],
            ids=ids,
            clock=clock,
        )
        expenses = [r.to_entry() for r in load_records(store.load(Keys.EXPENSES), ExpenseRecord, Keys.EXPENSES)]
        orphaned = [e for e in expenses if e.category_id not in categories]
        if orphaned:
            logger.warning(
                "Dropping %d stored expenses whose category no longer exists", len(orphaned)
            )
            expenses = [e for e in expenses if e.category_id in categories]
        entries = EntryStore(
            categories,
            [r.to_entry() for r in load_records(store.load(Keys.INCOMES), IncomeRecord, Keys.INCOMES)],
            expenses,
            ids=ids,
            clock=clock,
        )
        ledger = cls(
            store,
            categories,
            entries,
            goal=load_goal(store.load(Keys.GOAL)),
            last_processed_period=load_period(store.load(Keys.LAST_PROCESSED_PERIOD)),
            policy=policy,
            clock=clock,
        )
        if fresh:
            if seed_default_categories:
                categories.seed_defaults()
            ledger.flush()
            logger.info("Initialised empty ledger with %d categories", len(categories))
        elif orphaned:
            ledger._flush(Keys.EXPENSES)
        if advance:
            ledger.advance_to(ledger.current_period())
        return ledger

    def current_period(self) -> Period:
        return Period.from_datetime(self._clock())

    # Incomes

    def list_incomes(self, period: Optional[Period] = None) -> list[IncomeEntry]:
        if period is None:
            return self.entries.incomes()
        return self.entries.entries_in_period(period, EntryKind.INCOME)

    def create_income(self, description: Optional[str], amount: Decimal | int | float | str) -> IncomeEntry:
        self._sync_period()
        entry = self.entries.add_income(description, amount)
        self._flush(Keys.INCOMES)
        return entry

    def update_income(
        self, entry_id: str, description: Optional[str], amount: Decimal | int | float | str
    ) -> IncomeEntry:
        self._sync_period()
        entry = self.entries.edit_income(entry_id, description, amount)
        self._flush(Keys.INCOMES)
        return entry

    def delete_income(self, entry_id: str) -> None:
        self._sync_period()
        self.entries.delete_income(entry_id)
        self._flush(Keys.INCOMES)

    # Expenses

    def list_expenses(self, period: Optional[Period] = None) -> list[ExpenseEntry]:
        if period is None:
            return self.entries.expenses()
        return self.entries.entries_in_period(period, EntryKind.EXPENSE)

    def create_expense(
        self,
        description: Optional[str],
        amount: Decimal | int | float | str,
        category_id: str,
    ) -> ExpenseEntry:
        self._sync_period()
        entry = self.entries.add_expense(description, amount, category_id)
        self._flush(Keys.EXPENSES)
        return entry

    def update_expense(
        self,
        entry_id: str,
        description: Optional[str],
        amount: Decimal | int | float | str,
        category_id: str,
    ) -> ExpenseEntry:
        self._sync_period()
        entry = self.entries.edit_expense(entry_id, description, amount, category_id)
        self._flush(Keys.EXPENSES)
        return entry

    def delete_expense(self, entry_id: str) -> None:
        self._sync_period()
        self.entries.delete_expense(entry_id)
        self._flush(Keys.EXPENSES)

    # Categories

    def list_categories(self) -> list[Category]:
        return self.categories.categories()

    def create_category(
        self,
        name: str,
        allocation_type: str,
        allocation_value: Decimal | int | float | str,
    ) -> Category:
        self._sync_period()
        category = self.categories.add_category(name, allocation_type, allocation_value)
        self._flush(Keys.CATEGORIES)
        return category

    def update_category(
        self,
        category_id: str,
        name: str,
        allocation_type: str,
        allocation_value: Decimal | int | float | str,
    ) -> Category:
        self._sync_period()
        category = self.categories.rename_or_update(category_id, name, allocation_type, allocation_value)
        self._flush(Keys.CATEGORIES)
        return category

    def delete_category(self, category_id: str) -> list[ExpenseEntry]:
        """Delete a category and every expense filed under it.

        Irreversible; the caller is expected to have confirmed it. Returns
        the removed expenses.
        """
        self._sync_period()
        self.categories.delete_category(category_id)
        removed = self.entries.purge_category(category_id)
        # Expenses first: stored expenses must never outlive their category.
        self._flush(Keys.EXPENSES, Keys.CATEGORIES)
        return removed

    # Savings goal

    @property
    def savings_goal(self) -> Optional[SavingsGoal]:
        return self._goal

    def set_savings_goal(self, goal_type: str, value: Decimal | int | float | str) -> SavingsGoal:
        self._sync_period()
        normalized_type, amount = coerce_allocation(goal_type, value)
        self._goal = SavingsGoal(type=normalized_type, value=amount)
        self._flush(Keys.GOAL)
        return self._goal

    def clear_savings_goal(self) -> None:
        self._sync_period()
        self._goal = None
        self._flush(Keys.GOAL)

    # Summaries

    def compute_summary(self, period: Optional[Period] = None) -> LedgerSummary:
        self._sync_period()
        period = period or self.current_period()
        totals = totals_for_period(self.entries.incomes(), self.entries.expenses(), period)
        savings = savings_progress(self._goal, totals) if self._goal else None
        return LedgerSummary(period=period, totals=totals, savings=savings)

    def compute_category_statuses(self, period: Optional[Period] = None) -> list[CategoryStatus]:
        self._sync_period()
        period = period or self.current_period()
        incomes = self.entries.incomes()
        expenses = self.entries.expenses()
        return [
            category_status(category, incomes, expenses, period, self.policy)
            for category in self.categories.categories()
        ]

    # Rollover

    def rollover(self, from_period: Period, to_period: Period) -> list[RolloverAdjustment]:
        """Close ``from_period`` and carry unused budget into ``to_period``.

        Once a period has been recorded, only the transition out of that
        period is applied. A transition from an earlier period, or to a
        period that is not after it, has already been applied and is ignored.
        """
        if to_period <= from_period:
            raise ValidationError("to_period must be after from_period.")
        last = self.last_processed_period
        if last is not None:
            if from_period < last or to_period <= last:
                logger.debug("Rollover %s -> %s already processed", from_period, to_period)
                return []
            if from_period != last:
                raise ValidationError(f"Rollover must start from the last processed month {last}.")

        adjustments = plan_rollover(
            self.categories.categories(),
            self.entries.incomes(),
            self.entries.expenses(),
            from_period,
            self.policy,
        )
        for adjustment in adjustments:
            self.categories.apply_carry_forward(adjustment.category_id, adjustment.carry_after)
            audit_logger.info(adjustment.describe())
        self.audit_log.extend(adjustments)
        self.last_processed_period = to_period
        self._flush(Keys.CATEGORIES, Keys.LAST_PROCESSED_PERIOD)
        return adjustments

    def advance_to(self, period: Optional[Period] = None) -> list[RolloverAdjustment]:
        """Record ``period`` as current, rolling over once if it is new."""
        period = period or self.current_period()
        if self.last_processed_period is None:
            self.last_processed_period = period
            self._flush(Keys.LAST_PROCESSED_PERIOD)
            return []
        if period <= self.last_processed_period:
            return []
        return self.rollover(self.last_processed_period, period)

    def _sync_period(self) -> None:
        # Mutations and summaries see the rollover for the month they run in.
        self.advance_to(self.current_period())

    # Persistence

    def flush(self) -> None:
        self._flush(
            Keys.INCOMES,
            Keys.EXPENSES,
            Keys.CATEGORIES,
            Keys.GOAL,
            Keys.LAST_PROCESSED_PERIOD,
            Keys.SCHEMA,
        )

    def _flush(self, *keys: str) -> None:
        for key in keys:
            self.store.save(key, self._encode(key))

    def _encode(self, key: str) -> str:
        if key == Keys.INCOMES:
            return dump_records([IncomeRecord.from_entry(e) for e in self.entries.incomes()])
        if key == Keys.EXPENSES:
            return dump_records([ExpenseRecord.from_entry(e) for e in self.entries.expenses()])
        if key == Keys.CATEGORIES:
            return dump_records([CategoryRecord.from_category(c) for c in self.categories.categories()])
        if key == Keys.GOAL:
            return dump_goal(self._goal)
        if key == Keys.LAST_PROCESSED_PERIOD:
            return dump_period(self.last_processed_period)
        if key == Keys.SCHEMA:
            return json.dumps(SCHEMA_VERSION)
        raise KeyError(key)
