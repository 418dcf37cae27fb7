from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional

from budget_ledger.errors import ValidationError
from budget_ledger.models import (
    HUNDRED,
    ZERO,
    AllocationType,
    Category,
    ExpenseEntry,
    IncomeEntry,
    Period,
    SavingsGoal,
)


class PercentCarryPolicy:
    """How carry-forward combines with a percent-of-income allocation."""

    AFTER = "after"
    BEFORE = "before"
    NONE = "none"
    values = {AFTER, BEFORE, NONE}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Invalid percent carry policy.")
        return normalized


class RolloverKind:
    CARRY = "carry"
    OVERSPEND = "overspend"


@dataclass(frozen=True)
class PeriodTotals:
    income: Decimal
    expense: Decimal
    balance: Decimal


@dataclass(frozen=True)
class CategoryStatus:
    category_id: str
    name: str
    allocated: Decimal
    spent: Decimal
    remaining: Decimal
    over_budget: bool
    percent_used: Optional[Decimal] = None


@dataclass(frozen=True)
class SavingsProgress:
    target: Decimal
    saved: Decimal
    achieved: bool
    percent_achieved: Decimal


@dataclass(frozen=True)
class RolloverAdjustment:
    category_id: str
    category_name: str
    from_period: Period
    kind: str
    spent: Decimal
    total_budget: Decimal
    leftover: Decimal
    carry_before: Decimal
    carry_after: Decimal

    def describe(self) -> str:
        if self.kind == RolloverKind.CARRY:
            return (
                f"{self.category_name}: carried {self.leftover} unused budget from "
                f"{self.from_period} (carry-forward {self.carry_before} -> {self.carry_after})"
            )
        return (
            f"{self.category_name}: overspent {self.spent - self.total_budget} in "
            f"{self.from_period}; carry-forward reset from {self.carry_before} to 0"
        )


def totals_for_period(
    incomes: Iterable[IncomeEntry],
    expenses: Iterable[ExpenseEntry],
    period: Period,
) -> PeriodTotals:
    income = _sum_amounts(incomes, period)
    expense = _sum_amounts(expenses, period)
    return PeriodTotals(income=income, expense=expense, balance=income - expense)


def allocated_amount(
    category: Category,
    period_income: Decimal,
    policy: str = PercentCarryPolicy.AFTER,
) -> Decimal:
    if category.allocation_type != AllocationType.PERCENT_OF_INCOME:
        return category.allocation_value + category.carry_forward

    income = _coerce_amount(period_income)
    if policy == PercentCarryPolicy.BEFORE:
        return category.allocation_value / HUNDRED * (income + category.carry_forward)
    if policy == PercentCarryPolicy.NONE:
        return category.allocation_value / HUNDRED * income
    return category.allocation_value / HUNDRED * income + category.carry_forward


def category_spend(
    category: Category,
    expenses: Iterable[ExpenseEntry],
    period: Period,
) -> Decimal:
    return _sum_amounts(
        (entry for entry in expenses if entry.category_id == category.id),
        period,
    )


def category_status(
    category: Category,
    incomes: Iterable[IncomeEntry],
    expenses: Iterable[ExpenseEntry],
    period: Period,
    policy: str = PercentCarryPolicy.AFTER,
) -> CategoryStatus:
    allocated = allocated_amount(category, _sum_amounts(incomes, period), policy)
    spent = category_spend(category, expenses, period)
    percent_used = spent / allocated * HUNDRED if allocated > ZERO else None
    return CategoryStatus(
        category_id=category.id,
        name=category.name,
        allocated=allocated,
        spent=spent,
        remaining=allocated - spent,
        over_budget=spent > allocated,
        percent_used=percent_used,
    )


def savings_progress(goal: SavingsGoal, totals: PeriodTotals) -> SavingsProgress:
    if goal.type == AllocationType.PERCENT_OF_INCOME:
        target = goal.value / HUNDRED * totals.income
    else:
        target = goal.value

    saved = max(totals.balance, ZERO)
    achieved = totals.balance >= target
    if target > ZERO:
        percent = min(saved / target * HUNDRED, HUNDRED)
    else:
        percent = HUNDRED if achieved else ZERO
    return SavingsProgress(
        target=target,
        saved=saved,
        achieved=achieved,
        percent_achieved=percent,
    )


def plan_rollover(
    categories: Iterable[Category],
    incomes: Iterable[IncomeEntry],
    expenses: Iterable[ExpenseEntry],
    from_period: Period,
    policy: str = PercentCarryPolicy.AFTER,
) -> List[RolloverAdjustment]:
    """Work out the carry-forward changes for closing ``from_period``.

    The budget being closed is the one ``category_status`` reports for that
    month under the same ``policy``. Unused budget adds to the category's
    carry-forward. Overspending resets it to zero; it never goes
    negative. Categories that spent exactly their budget are left out.
    """
    expense_list = list(expenses)
    period_income = _sum_amounts(incomes, from_period)
    adjustments: List[RolloverAdjustment] = []
    for category in categories:
        spent = category_spend(category, expense_list, from_period)
        total_budget = allocated_amount(category, period_income, policy)
        leftover = max(ZERO, total_budget - spent)
        if leftover > ZERO:
            kind = RolloverKind.CARRY
            carry_after = category.carry_forward + leftover
        elif spent > total_budget:
            kind = RolloverKind.OVERSPEND
            carry_after = ZERO
        else:
            continue
        adjustments.append(
            RolloverAdjustment(
                category_id=category.id,
                category_name=category.name,
                from_period=from_period,
                kind=kind,
                spent=spent,
                total_budget=total_budget,
                leftover=leftover,
                carry_before=category.carry_forward,
                carry_after=carry_after,
            )
        )
    return adjustments


def _sum_amounts(
    entries: Iterable[IncomeEntry | ExpenseEntry],
    period: Period,
) -> Decimal:
    total = ZERO
    for entry in entries:
        if not period.contains(entry.occurred_at):
            continue
        total += _coerce_amount(entry.amount)
    return total


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
