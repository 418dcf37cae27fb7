from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Union

from budget_ledger.category_registry import CategoryRegistry
from budget_ledger.errors import NotFoundError, ValidationError
from budget_ledger.models import (
    Clock,
    EntryKind,
    ExpenseEntry,
    IdGenerator,
    IncomeEntry,
    Period,
    clean_description,
    coerce_amount,
    uuid_ids,
)

logger = logging.getLogger(__name__)

Entry = Union[IncomeEntry, ExpenseEntry]


class EntryStore:
    """Income and expense entries in insertion order.

    Expenses are validated against ``categories`` so every stored expense
    points at a live category.
    """

    def __init__(
        self,
        categories: CategoryRegistry,
        incomes: Iterable[IncomeEntry] = (),
        expenses: Iterable[ExpenseEntry] = (),
        *,
        ids: IdGenerator = uuid_ids,
        clock: Clock = datetime.now,
    ) -> None:
        self._categories = categories
        self._ids = ids
        self._clock = clock
        self._incomes: dict[str, IncomeEntry] = {entry.id: entry for entry in incomes}
        self._expenses: dict[str, ExpenseEntry] = {entry.id: entry for entry in expenses}

    def incomes(self) -> list[IncomeEntry]:
        return list(self._incomes.values())

    def expenses(self) -> list[ExpenseEntry]:
        return list(self._expenses.values())

    def get_income(self, entry_id: str) -> IncomeEntry:
        try:
            return self._incomes[entry_id]
        except KeyError as exc:
            raise NotFoundError(f"Income not found: {entry_id}") from exc

    def get_expense(self, entry_id: str) -> ExpenseEntry:
        try:
            return self._expenses[entry_id]
        except KeyError as exc:
            raise NotFoundError(f"Expense not found: {entry_id}") from exc

    def add_income(self, description: Optional[str], amount: Decimal | int | float | str) -> IncomeEntry:
        entry = IncomeEntry(
            id=self._ids(),
            amount=coerce_amount(amount),
            occurred_at=self._clock(),
            description=clean_description(description),
        )
        self._incomes[entry.id] = entry
        return entry

    def add_expense(
        self,
        description: Optional[str],
        amount: Decimal | int | float | str,
        category_id: str,
    ) -> ExpenseEntry:
        value = coerce_amount(amount)
        self._require_category(category_id)
        entry = ExpenseEntry(
            id=self._ids(),
            amount=value,
            category_id=category_id,
            occurred_at=self._clock(),
            description=clean_description(description),
        )
        self._expenses[entry.id] = entry
        return entry

    def edit_income(
        self,
        entry_id: str,
        description: Optional[str],
        amount: Decimal | int | float | str,
    ) -> IncomeEntry:
        current = self.get_income(entry_id)
        updated = replace(
            current,
            amount=coerce_amount(amount),
            description=clean_description(description),
        )
        self._incomes[entry_id] = updated
        return updated

    def edit_expense(
        self,
        entry_id: str,
        description: Optional[str],
        amount: Decimal | int | float | str,
        category_id: str,
    ) -> ExpenseEntry:
        current = self.get_expense(entry_id)
        value = coerce_amount(amount)
        self._require_category(category_id)
        updated = replace(
            current,
            amount=value,
            category_id=category_id,
            description=clean_description(description),
        )
        self._expenses[entry_id] = updated
        return updated

    def delete_income(self, entry_id: str) -> IncomeEntry:
        entry = self.get_income(entry_id)
        del self._incomes[entry_id]
        return entry

    def delete_expense(self, entry_id: str) -> ExpenseEntry:
        entry = self.get_expense(entry_id)
        del self._expenses[entry_id]
        return entry

    def purge_category(self, category_id: str) -> list[ExpenseEntry]:
        removed = [entry for entry in self._expenses.values() if entry.category_id == category_id]
        for entry in removed:
            del self._expenses[entry.id]
        if removed:
            logger.info("Removed %d expenses of deleted category %s", len(removed), category_id)
        return removed

    def entries_in_period(self, period: Period, kind: str) -> list[Entry]:
        normalized = EntryKind.validate(kind)
        source = self._incomes if normalized == EntryKind.INCOME else self._expenses
        return [entry for entry in source.values() if period.contains(entry.occurred_at)]

    def _require_category(self, category_id: str) -> None:
        if not category_id or category_id not in self._categories:
            raise ValidationError("Expense category does not exist.")
