"""Persisted record shapes for the current storage layout.

Each logical collection lives under its own key as JSON text. Decimals are
written as strings so amounts survive a round trip without float drift.
"""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence, Type, TypeVar

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from budget_ledger.errors import StorageError
from budget_ledger.models import Category, ExpenseEntry, IncomeEntry, Period, SavingsGoal

SCHEMA_VERSION = 2


class Keys:
    SCHEMA = "ledger.schema"
    INCOMES = "ledger.incomes"
    EXPENSES = "ledger.expenses"
    CATEGORIES = "ledger.categories"
    GOAL = "ledger.goal"
    LAST_PROCESSED_PERIOD = "ledger.last_processed_period"


class IncomeRecord(BaseModel):
    id: str
    description: str = ""
    amount: Decimal
    occurred_at: datetime

    @classmethod
    def from_entry(cls, entry: IncomeEntry) -> "IncomeRecord":
        return cls(
            id=entry.id,
            description=entry.description,
            amount=entry.amount,
            occurred_at=entry.occurred_at,
        )

    def to_entry(self) -> IncomeEntry:
        return IncomeEntry(
            id=self.id,
            amount=self.amount,
            occurred_at=self.occurred_at,
            description=self.description,
        )


class ExpenseRecord(BaseModel):
    id: str
    description: str = ""
    amount: Decimal
    category_id: str
    occurred_at: datetime

    @classmethod
    def from_entry(cls, entry: ExpenseEntry) -> "ExpenseRecord":
        return cls(
            id=entry.id,
            description=entry.description,
            amount=entry.amount,
            category_id=entry.category_id,
            occurred_at=entry.occurred_at,
        )

    def to_entry(self) -> ExpenseEntry:
        return ExpenseEntry(
            id=self.id,
            amount=self.amount,
            category_id=self.category_id,
            occurred_at=self.occurred_at,
            description=self.description,
        )


class CategoryRecord(BaseModel):
    id: str
    name: str
    allocation_type: str
    allocation_value: Decimal
    carry_forward: Decimal = Decimal("0")
    created_at: datetime

    @classmethod
    def from_category(cls, category: Category) -> "CategoryRecord":
        return cls(
            id=category.id,
            name=category.name,
            allocation_type=category.allocation_type,
            allocation_value=category.allocation_value,
            carry_forward=category.carry_forward,
            created_at=category.created_at,
        )

    def to_category(self) -> Category:
        return Category(
            id=self.id,
            name=self.name,
            allocation_type=self.allocation_type,
            allocation_value=self.allocation_value,
            created_at=self.created_at,
            carry_forward=self.carry_forward,
        )


class SavingsGoalRecord(BaseModel):
    type: str
    value: Decimal

    @classmethod
    def from_goal(cls, goal: SavingsGoal) -> "SavingsGoalRecord":
        return cls(type=goal.type, value=goal.value)

    def to_goal(self) -> SavingsGoal:
        return SavingsGoal(type=self.type, value=self.value)


RecordT = TypeVar("RecordT", bound=BaseModel)


def dump_records(records: Sequence[BaseModel]) -> str:
    return json.dumps([record.model_dump(mode="json") for record in records])


def load_records(raw: Optional[str], model: Type[RecordT], key: str) -> list[RecordT]:
    if raw is None:
        return []
    try:
        return TypeAdapter(list[model]).validate_json(raw)
    except PydanticValidationError as exc:
        raise StorageError(f"Stored value for {key} is not valid.") from exc


def dump_goal(goal: Optional[SavingsGoal]) -> str:
    if goal is None:
        return "null"
    return json.dumps(SavingsGoalRecord.from_goal(goal).model_dump(mode="json"))


def load_goal(raw: Optional[str]) -> Optional[SavingsGoal]:
    if raw is None or raw.strip() == "null":
        return None
    try:
        return SavingsGoalRecord.model_validate_json(raw).to_goal()
    except PydanticValidationError as exc:
        raise StorageError(f"Stored value for {Keys.GOAL} is not valid.") from exc


def dump_period(period: Optional[Period]) -> str:
    return json.dumps(str(period) if period else None)


def load_period(raw: Optional[str]) -> Optional[Period]:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
        return Period.parse(value) if value else None
    except ValueError as exc:
        raise StorageError(f"Stored value for {Keys.LAST_PROCESSED_PERIOD} is not valid.") from exc
