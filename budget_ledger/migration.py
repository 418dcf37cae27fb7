"""One-time migration of legacy browser-storage layouts.

Older versions of the tracker kept their data under loosely shaped keys: a
single ``transactions`` list, bare arrays of numbers for incomes and
expenses, categories as plain strings or ``{name, budget}`` objects and a
separate ``categoryBudgets`` map. Every record is decoded leniently: a bad
record falls back to a safe default instead of failing the migration.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from budget_ledger.category_registry import DEFAULT_CATEGORIES
from budget_ledger.errors import ValidationError
from budget_ledger.models import (
    HUNDRED,
    ZERO,
    AllocationType,
    Category,
    Clock,
    ExpenseEntry,
    IdGenerator,
    IncomeEntry,
    Period,
    SavingsGoal,
    normalize_name_key,
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
)
from budget_ledger.storage import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_CATEGORY = "Uncategorized"
SYNTHETIC_SPACING = timedelta(minutes=1)


class LegacyKeys:
    TRANSACTIONS = "transactions"
    INCOMES = "incomes"
    INCOME = "income"
    EXPENSES = "expenses"
    CATEGORIES = "categories"
    CATEGORY_BUDGETS = "categoryBudgets"
    SAVINGS_GOAL = "savingsGoal"
    SAVINGS_GOAL_TYPE = "savingsGoalType"
    LAST_PROCESSED_MONTH = "lastProcessedMonth"
    LAST_MONTH = "lastMonth"

    all = (
        TRANSACTIONS,
        INCOMES,
        INCOME,
        EXPENSES,
        CATEGORIES,
        CATEGORY_BUDGETS,
        SAVINGS_GOAL,
        SAVINGS_GOAL_TYPE,
        LAST_PROCESSED_MONTH,
        LAST_MONTH,
    )


@dataclass
class MigrationResult:
    incomes: list[IncomeEntry] = field(default_factory=list)
    expenses: list[ExpenseEntry] = field(default_factory=list)
    categories: list[Category] = field(default_factory=list)
    goal: Optional[SavingsGoal] = None
    last_processed_period: Optional[Period] = None
    dropped_categories: list[str] = field(default_factory=list)
    dropped_expenses: int = 0
    migrated_keys: list[str] = field(default_factory=list)


@dataclass
class _LegacyEntry:
    amount: Decimal
    description: str
    occurred_at: Optional[datetime]
    category_id: Optional[str] = None
    category_name: Optional[str] = None


@dataclass
class _LegacyCategory:
    name: str
    allocation_type: str
    allocation_value: Decimal
    carry_forward: Decimal
    legacy_id: Optional[str] = None


def migrate_legacy(
    store: KeyValueStore,
    *,
    ids: IdGenerator = uuid_ids,
    clock: Clock = datetime.now,
    fallback_category: str = DEFAULT_FALLBACK_CATEGORY,
) -> Optional[MigrationResult]:
    """Migrate legacy keys into the current layout, once.

    Returns ``None`` when the current schema marker is already present or
    there is nothing legacy to migrate. Storage failures propagate; the
    schema marker is written last so an interrupted run is retried.
    """
    if store.load(Keys.SCHEMA) is not None:
        return None

    raw: dict[str, Any] = {}
    present: list[str] = []
    for key in LegacyKeys.all:
        text = store.load(key)
        if text is None:
            continue
        present.append(key)
        raw[key] = _parse_json(key, text)
    if not present:
        return None

    result = build_from_legacy(raw, ids=ids, clock=clock, fallback_category=fallback_category)
    result.migrated_keys = present

    store.save(Keys.INCOMES, dump_records([IncomeRecord.from_entry(e) for e in result.incomes]))
    store.save(Keys.EXPENSES, dump_records([ExpenseRecord.from_entry(e) for e in result.expenses]))
    store.save(
        Keys.CATEGORIES,
        dump_records([CategoryRecord.from_category(c) for c in result.categories]),
    )
    store.save(Keys.GOAL, dump_goal(result.goal))
    store.save(Keys.LAST_PROCESSED_PERIOD, dump_period(result.last_processed_period))
    store.save(Keys.SCHEMA, json.dumps(SCHEMA_VERSION))
    for key in present:
        store.delete(key)

    logger.info(
        "Migrated legacy data from %s: %d incomes, %d expenses, %d categories",
        ", ".join(present),
        len(result.incomes),
        len(result.expenses),
        len(result.categories),
    )
    return result


def build_from_legacy(
    raw: dict[str, Any],
    *,
    ids: IdGenerator = uuid_ids,
    clock: Clock = datetime.now,
    fallback_category: str = DEFAULT_FALLBACK_CATEGORY,
) -> MigrationResult:
    """Decode already-parsed legacy values into current-schema objects."""
    now = clock()
    result = MigrationResult()

    legacy_categories = _decode_categories(raw.get(LegacyKeys.CATEGORIES))
    if LegacyKeys.TRANSACTIONS in raw and LegacyKeys.CATEGORIES not in raw:
        # The single-list layout filed expenses under the built-in categories.
        legacy_categories = [
            _LegacyCategory(name, AllocationType.FIXED, budget, ZERO)
            for name, budget in DEFAULT_CATEGORIES
        ]
    _apply_category_budgets(legacy_categories, raw.get(LegacyKeys.CATEGORY_BUDGETS))

    by_legacy_id: dict[str, str] = {}
    by_exact_name: dict[str, str] = {}
    by_name_key: dict[str, str] = {}
    dropped_ids: set[str] = set()
    dropped_names: set[str] = set()
    for legacy in legacy_categories:
        key = normalize_name_key(legacy.name)
        if key in by_name_key:
            logger.warning("Dropping duplicate legacy category %r", legacy.name)
            result.dropped_categories.append(legacy.name)
            dropped_names.add(legacy.name)
            if legacy.legacy_id is not None:
                dropped_ids.add(legacy.legacy_id)
            continue
        category = Category(
            id=ids(),
            name=legacy.name,
            allocation_type=legacy.allocation_type,
            allocation_value=legacy.allocation_value,
            created_at=now,
            carry_forward=legacy.carry_forward,
        )
        result.categories.append(category)
        by_name_key[key] = category.id
        by_exact_name[legacy.name] = category.id
        if legacy.legacy_id is not None:
            by_legacy_id[legacy.legacy_id] = category.id

    legacy_incomes: list[_LegacyEntry] = []
    legacy_expenses: list[_LegacyEntry] = []
    transactions = raw.get(LegacyKeys.TRANSACTIONS)
    for item in _as_list(LegacyKeys.TRANSACTIONS, transactions):
        kind = str(item.get("type", "")).strip().lower() if isinstance(item, dict) else ""
        if kind == "income":
            legacy_incomes.append(_decode_entry(item))
        elif kind == "expense":
            legacy_expenses.append(_decode_entry(item))
        else:
            logger.warning("Skipping legacy transaction without a type: %r", item)
    for key in (LegacyKeys.INCOMES, LegacyKeys.INCOME):
        legacy_incomes.extend(_decode_entry(item) for item in _as_list(key, raw.get(key)))
    legacy_expenses.extend(
        _decode_entry(item) for item in _as_list(LegacyKeys.EXPENSES, raw.get(LegacyKeys.EXPENSES))
    )

    income_times = _assign_timestamps(legacy_incomes, now)
    for legacy, occurred_at in zip(legacy_incomes, income_times):
        result.incomes.append(
            IncomeEntry(
                id=ids(),
                amount=legacy.amount,
                occurred_at=occurred_at,
                description=legacy.description,
            )
        )

    placeholder_id: Optional[str] = None
    expense_times = _assign_timestamps(legacy_expenses, now)
    for legacy, occurred_at in zip(legacy_expenses, expense_times):
        category_id: Optional[str] = None
        orphaned = False
        if legacy.category_id is not None:
            if legacy.category_id in by_legacy_id:
                category_id = by_legacy_id[legacy.category_id]
            elif legacy.category_id in dropped_ids:
                orphaned = True
        if category_id is None and not orphaned and legacy.category_name:
            if legacy.category_name in by_exact_name:
                category_id = by_exact_name[legacy.category_name]
            elif legacy.category_name in dropped_names:
                orphaned = True
            else:
                category_id = by_name_key.get(normalize_name_key(legacy.category_name))
        if orphaned:
            # Expenses of a dropped duplicate category are not reassigned.
            result.dropped_expenses += 1
            logger.warning("Dropping legacy expense of a duplicate category: %r", legacy)
            continue
        if category_id is None:
            if placeholder_id is None:
                placeholder_id = _ensure_category(result, by_name_key, fallback_category, ids, now)
            category_id = placeholder_id
        result.expenses.append(
            ExpenseEntry(
                id=ids(),
                amount=legacy.amount,
                category_id=category_id,
                occurred_at=occurred_at,
                description=legacy.description,
            )
        )

    if not result.categories:
        _ensure_category(result, by_name_key, fallback_category, ids, now)

    result.goal = _decode_goal(
        raw.get(LegacyKeys.SAVINGS_GOAL), raw.get(LegacyKeys.SAVINGS_GOAL_TYPE)
    )
    result.last_processed_period = _decode_period(
        raw.get(LegacyKeys.LAST_PROCESSED_MONTH, raw.get(LegacyKeys.LAST_MONTH))
    )
    return result


def _parse_json(key: str, text: str) -> Any:
    # Some variants stored scalars unquoted, e.g. ``lastMonth = 2024-05``.
    try:
        return json.loads(text)
    except ValueError:
        logger.warning("Legacy key %s is not valid JSON; reading it as plain text", key)
        return text


def _as_list(key: str, value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    logger.warning("Legacy key %s is not a list; treating it as empty", key)
    return []


def _lenient_decimal(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        return ZERO
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return ZERO
    if not amount.is_finite() or amount < ZERO:
        return ZERO
    return amount


def _lenient_text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _lenient_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(value / 1000)
        else:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _first(item: dict, *names: str) -> Any:
    for name in names:
        if name in item and item[name] is not None:
            return item[name]
    return None


def _decode_entry(item: Any) -> _LegacyEntry:
    if isinstance(item, dict):
        category_id = _first(item, "categoryId", "category_id")
        return _LegacyEntry(
            amount=_lenient_decimal(_first(item, "amount", "value")),
            description=_lenient_text(_first(item, "description", "name", "source", "note")),
            occurred_at=_lenient_timestamp(
                _first(item, "occurredAt", "occurred_at", "date", "timestamp", "createdAt")
            ),
            category_id=str(category_id) if category_id is not None else None,
            category_name=_lenient_text(_first(item, "category", "categoryName")) or None,
        )
    if not isinstance(item, (int, float, str)) or isinstance(item, bool):
        logger.warning("Coercing malformed legacy entry %r to a zero amount", item)
    return _LegacyEntry(amount=_lenient_decimal(item), description="", occurred_at=None)


def _assign_timestamps(entries: list[_LegacyEntry], now: datetime) -> list[datetime]:
    """Keep parsed timestamps; space the missing ones a minute apart up to ``now``."""
    missing = sum(1 for entry in entries if entry.occurred_at is None)
    cursor = now - SYNTHETIC_SPACING * (missing - 1) if missing else now
    times: list[datetime] = []
    for entry in entries:
        if entry.occurred_at is not None:
            times.append(entry.occurred_at)
            continue
        times.append(cursor)
        cursor += SYNTHETIC_SPACING
    return times


def _decode_categories(value: Any) -> list[_LegacyCategory]:
    decoded: list[_LegacyCategory] = []
    for item in _as_list(LegacyKeys.CATEGORIES, value):
        if isinstance(item, str):
            name = item.strip()
            if name:
                decoded.append(_LegacyCategory(name, AllocationType.FIXED, ZERO, ZERO))
            continue
        if not isinstance(item, dict):
            logger.warning("Skipping malformed legacy category %r", item)
            continue
        name = _lenient_text(item.get("name"))
        if not name:
            logger.warning("Skipping legacy category without a name: %r", item)
            continue
        try:
            allocation_type = AllocationType.validate(
                _first(item, "allocationType", "type") or AllocationType.FIXED
            )
        except ValidationError:
            allocation_type = AllocationType.FIXED
        allocation_value = _lenient_decimal(
            _first(item, "allocationValue", "budget", "limit", "percentage")
        )
        if allocation_type == AllocationType.PERCENT_OF_INCOME and allocation_value > HUNDRED:
            logger.warning("Clamping legacy percentage for %r to 100", name)
            allocation_value = HUNDRED
        legacy_id = item.get("id")
        decoded.append(
            _LegacyCategory(
                name=name,
                allocation_type=allocation_type,
                allocation_value=allocation_value,
                carry_forward=_lenient_decimal(item.get("carryForward")),
                legacy_id=str(legacy_id) if legacy_id is not None else None,
            )
        )
    return decoded


def _apply_category_budgets(categories: list[_LegacyCategory], value: Any) -> None:
    if value is None:
        return
    if not isinstance(value, dict):
        logger.warning("Legacy key %s is not a mapping; ignoring it", LegacyKeys.CATEGORY_BUDGETS)
        return
    budgets = {normalize_name_key(str(name)): budget for name, budget in value.items()}
    for category in categories:
        key = normalize_name_key(category.name)
        if key in budgets and category.allocation_type == AllocationType.FIXED:
            category.allocation_value = _lenient_decimal(budgets[key])


def _ensure_category(
    result: MigrationResult,
    by_name_key: dict[str, str],
    name: str,
    ids: IdGenerator,
    now: datetime,
) -> str:
    key = normalize_name_key(name)
    if key in by_name_key:
        return by_name_key[key]
    category = Category(
        id=ids(),
        name=name,
        allocation_type=AllocationType.FIXED,
        allocation_value=ZERO,
        created_at=now,
    )
    result.categories.append(category)
    by_name_key[key] = category.id
    return category.id


def _decode_goal(value: Any, type_value: Any) -> Optional[SavingsGoal]:
    if value is None:
        return None
    goal_type: Any = type_value
    goal_value: Any = value
    if isinstance(value, dict):
        goal_type = type_value or value.get("type")
        goal_value = value.get("value", value.get("amount"))
    try:
        normalized_type = AllocationType.validate(goal_type or AllocationType.FIXED)
    except ValidationError:
        normalized_type = AllocationType.FIXED
    amount = _lenient_decimal(goal_value)
    if amount == ZERO:
        return None
    if normalized_type == AllocationType.PERCENT_OF_INCOME and amount > HUNDRED:
        amount = HUNDRED
    return SavingsGoal(type=normalized_type, value=amount)


def _decode_period(value: Any) -> Optional[Period]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return Period.parse(value)
    except ValueError:
        logger.warning("Ignoring unparseable legacy month %r", value)
        return None
