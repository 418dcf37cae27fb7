from __future__ import annotations

import itertools
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional
from uuid import uuid4

from budget_ledger.errors import ValidationError

ZERO = Decimal("0")
HUNDRED = Decimal("100")

IdGenerator = Callable[[], str]
Clock = Callable[[], datetime]


class AllocationType:
    FIXED = "fixed"
    PERCENT_OF_INCOME = "percent_of_income"
    values = {FIXED, PERCENT_OF_INCOME}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        if normalized in {"percent", "percentage"}:
            normalized = cls.PERCENT_OF_INCOME
        if normalized not in cls.values:
            raise ValidationError("Invalid allocation type.")
        return normalized


class EntryKind:
    INCOME = "income"
    EXPENSE = "expense"
    values = {INCOME, EXPENSE}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = str(value).strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Invalid entry kind.")
        return normalized


@dataclass(frozen=True, order=True)
class Period:
    """A calendar month used to bucket entries, totals and rollover."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError("month must be between 1 and 12.")

    @classmethod
    def from_datetime(cls, value: date | datetime) -> "Period":
        return cls(value.year, value.month)

    @classmethod
    def parse(cls, value: str) -> "Period":
        try:
            year_part, month_part = str(value).strip().split("-")[:2]
            return cls(int(year_part), int(month_part))
        except ValueError as exc:
            raise ValueError("Invalid month format. Use YYYY-MM.") from exc

    def contains(self, value: date | datetime) -> bool:
        return value.year == self.year and value.month == self.month

    def shift(self, months: int) -> "Period":
        month_index = (self.year * 12 + self.month - 1) + months
        return Period(month_index // 12, month_index % 12 + 1)

    def next(self) -> "Period":
        return self.shift(1)

    def previous(self) -> "Period":
        return self.shift(-1)

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class IncomeEntry:
    id: str
    amount: Decimal
    occurred_at: datetime
    description: str = ""


@dataclass(frozen=True)
class ExpenseEntry:
    id: str
    amount: Decimal
    category_id: str
    occurred_at: datetime
    description: str = ""


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    allocation_type: str
    allocation_value: Decimal
    created_at: datetime
    carry_forward: Decimal = ZERO

    @property
    def name_key(self) -> str:
        return normalize_name_key(self.name)


@dataclass(frozen=True)
class SavingsGoal:
    type: str
    value: Decimal


def normalize_name_key(name: str) -> str:
    return name.strip().casefold()


def coerce_amount(value: Decimal | int | float | str) -> Decimal:
    """Turn user input into a positive, finite Decimal or raise ValidationError."""
    if isinstance(value, bool) or value is None:
        raise ValidationError("Amount must be a number.")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Amount must be a number.") from exc
    if not amount.is_finite():
        raise ValidationError("Amount must be a finite number.")
    if amount <= ZERO:
        raise ValidationError("Amount must be greater than zero.")
    return amount


def coerce_allocation(allocation_type: str, value: Decimal | int | float | str) -> tuple[str, Decimal]:
    normalized_type = AllocationType.validate(allocation_type)
    if isinstance(value, bool) or value is None:
        raise ValidationError("Allocation value must be a number.")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Allocation value must be a number.") from exc
    if not amount.is_finite() or amount < ZERO:
        raise ValidationError("Allocation value must be zero or greater.")
    if normalized_type == AllocationType.PERCENT_OF_INCOME and amount > HUNDRED:
        raise ValidationError("Percentage allocation must be between 0 and 100.")
    return normalized_type, amount


def clean_description(value: Optional[str]) -> str:
    return value.strip() if value else ""


def uuid_ids() -> str:
    return uuid4().hex


def sequential_ids(prefix: str = "") -> IdGenerator:
    """Deterministic id generator: ``prefix1``, ``prefix2``, ..."""
    counter = itertools.count(1)
    return lambda: f"{prefix}{next(counter)}"
