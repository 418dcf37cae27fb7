import logging
from datetime import datetime
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from budget_ledger.budget_engine import CategoryStatus, RolloverAdjustment, SavingsProgress
from budget_ledger.config import configure_logging, load_settings
from budget_ledger.errors import LedgerError, NotFoundError, StorageError, ValidationError
from budget_ledger.ledger import BudgetLedger
from budget_ledger.models import AllocationType, Category, ExpenseEntry, IncomeEntry, Period
from budget_ledger.storage import SqlKeyValueStore

logger = logging.getLogger(__name__)

settings = load_settings()

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_ledger() -> BudgetLedger:
    store = SqlKeyValueStore.from_url(settings.database_url)
    store.create_schema()
    return BudgetLedger.load(
        store,
        policy=settings.percent_carry_policy,
        fallback_category=settings.fallback_category,
        seed_default_categories=settings.seed_default_categories,
    )


@app.on_event("startup")
def init_ledger() -> None:
    configure_logging(settings)
    if getattr(app.state, "ledger", None) is not None:
        return
    try:
        app.state.ledger = build_ledger()
    except StorageError:
        # Retried lazily by the first request.
        logger.exception("Ledger storage unavailable at startup")


def get_ledger() -> BudgetLedger:
    ledger = getattr(app.state, "ledger", None)
    if ledger is None:
        try:
            ledger = build_ledger()
        except LedgerError as exc:
            raise to_http_error(exc) from exc
        app.state.ledger = ledger
    return ledger


def to_http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StorageError):
        return HTTPException(status_code=503, detail="Ledger storage unavailable.")
    return HTTPException(status_code=400, detail=str(exc))


def parse_month(month: str | None) -> Period | None:
    if not month:
        return None
    try:
        return Period.parse(month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


class IncomePayload(BaseModel):
    description: str | None = None
    amount: Decimal


class ExpensePayload(BaseModel):
    description: str | None = None
    amount: Decimal
    category_id: str

    @classmethod
    def validate_payload(cls, payload: "ExpensePayload") -> "ExpensePayload":
        payload.category_id = payload.category_id.strip()
        if not payload.category_id:
            raise ValidationError("Expense category required.")
        return payload


class CategoryPayload(BaseModel):
    name: str
    allocation_type: str = AllocationType.FIXED
    allocation_value: Decimal = Decimal("0")

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValidationError("Category name required.")
        payload.allocation_type = AllocationType.validate(payload.allocation_type)
        return payload


class SavingsGoalPayload(BaseModel):
    type: str = AllocationType.FIXED
    value: Decimal


class IncomeResponse(BaseModel):
    id: str
    description: str
    amount: Decimal
    occurred_at: datetime

    @classmethod
    def from_entry(cls, entry: IncomeEntry) -> "IncomeResponse":
        return cls(
            id=entry.id,
            description=entry.description,
            amount=entry.amount,
            occurred_at=entry.occurred_at,
        )


class ExpenseResponse(BaseModel):
    id: str
    description: str
    amount: Decimal
    category_id: str
    category_name: str | None = None
    occurred_at: datetime

    @classmethod
    def from_entry(cls, entry: ExpenseEntry, category_name: str | None) -> "ExpenseResponse":
        return cls(
            id=entry.id,
            description=entry.description,
            amount=entry.amount,
            category_id=entry.category_id,
            category_name=category_name,
            occurred_at=entry.occurred_at,
        )


class CategoryResponse(BaseModel):
    id: str
    name: str
    allocation_type: str
    allocation_value: Decimal
    carry_forward: Decimal
    created_at: datetime

    @classmethod
    def from_category(cls, category: Category) -> "CategoryResponse":
        return cls(
            id=category.id,
            name=category.name,
            allocation_type=category.allocation_type,
            allocation_value=category.allocation_value,
            carry_forward=category.carry_forward,
            created_at=category.created_at,
        )


class CategoryStatusResponse(BaseModel):
    category_id: str
    name: str
    month: str
    allocated: Decimal
    spent: Decimal
    remaining: Decimal
    over_budget: bool
    percent_used: Decimal | None = None

    @classmethod
    def from_status(cls, status: CategoryStatus, period: Period) -> "CategoryStatusResponse":
        return cls(
            category_id=status.category_id,
            name=status.name,
            month=str(period),
            allocated=status.allocated,
            spent=status.spent,
            remaining=status.remaining,
            over_budget=status.over_budget,
            percent_used=status.percent_used,
        )


class SavingsGoalResponse(BaseModel):
    type: str
    value: Decimal


class SavingsProgressResponse(BaseModel):
    target: Decimal
    saved: Decimal
    achieved: bool
    percent_achieved: Decimal

    @classmethod
    def from_progress(cls, progress: SavingsProgress) -> "SavingsProgressResponse":
        return cls(
            target=progress.target,
            saved=progress.saved,
            achieved=progress.achieved,
            percent_achieved=progress.percent_achieved,
        )


class SummaryResponse(BaseModel):
    month: str
    total_income: Decimal
    total_expenses: Decimal
    balance: Decimal
    savings: SavingsProgressResponse | None = None


class RolloverEntryResponse(BaseModel):
    category_id: str
    category_name: str
    from_month: str
    kind: str
    spent: Decimal
    total_budget: Decimal
    leftover: Decimal
    carry_forward: Decimal
    message: str

    @classmethod
    def from_adjustment(cls, adjustment: RolloverAdjustment) -> "RolloverEntryResponse":
        return cls(
            category_id=adjustment.category_id,
            category_name=adjustment.category_name,
            from_month=str(adjustment.from_period),
            kind=adjustment.kind,
            spent=adjustment.spent,
            total_budget=adjustment.total_budget,
            leftover=adjustment.leftover,
            carry_forward=adjustment.carry_after,
            message=adjustment.describe(),
        )


class RolloverResponse(BaseModel):
    month: str
    adjustments: list[RolloverEntryResponse]


def expense_response(ledger: BudgetLedger, entry: ExpenseEntry) -> ExpenseResponse:
    category_name = None
    if entry.category_id in ledger.categories:
        category_name = ledger.categories.get(entry.category_id).name
    return ExpenseResponse.from_entry(entry, category_name)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/incomes", response_model=list[IncomeResponse])
def list_incomes(month: str | None = Query(None)) -> list[IncomeResponse]:
    period = parse_month(month)
    return [IncomeResponse.from_entry(entry) for entry in get_ledger().list_incomes(period)]


@app.post("/incomes", response_model=IncomeResponse)
def create_income(payload: IncomePayload) -> IncomeResponse:
    try:
        entry = get_ledger().create_income(payload.description, payload.amount)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return IncomeResponse.from_entry(entry)


@app.put("/incomes/{income_id}", response_model=IncomeResponse)
def update_income(income_id: str, payload: IncomePayload) -> IncomeResponse:
    try:
        entry = get_ledger().update_income(income_id, payload.description, payload.amount)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return IncomeResponse.from_entry(entry)


@app.delete("/incomes/{income_id}")
def delete_income(income_id: str) -> dict:
    try:
        get_ledger().delete_income(income_id)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return {"status": "deleted"}


@app.get("/expenses", response_model=list[ExpenseResponse])
def list_expenses(month: str | None = Query(None)) -> list[ExpenseResponse]:
    period = parse_month(month)
    ledger = get_ledger()
    return [expense_response(ledger, entry) for entry in ledger.list_expenses(period)]


@app.post("/expenses", response_model=ExpenseResponse)
def create_expense(payload: ExpensePayload) -> ExpenseResponse:
    ledger = get_ledger()
    try:
        payload = ExpensePayload.validate_payload(payload)
        entry = ledger.create_expense(payload.description, payload.amount, payload.category_id)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return expense_response(ledger, entry)


@app.put("/expenses/{expense_id}", response_model=ExpenseResponse)
def update_expense(expense_id: str, payload: ExpensePayload) -> ExpenseResponse:
    ledger = get_ledger()
    try:
        payload = ExpensePayload.validate_payload(payload)
        entry = ledger.update_expense(
            expense_id, payload.description, payload.amount, payload.category_id
        )
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return expense_response(ledger, entry)


@app.delete("/expenses/{expense_id}")
def delete_expense(expense_id: str) -> dict:
    try:
        get_ledger().delete_expense(expense_id)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return {"status": "deleted"}


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories() -> list[CategoryResponse]:
    return [CategoryResponse.from_category(c) for c in get_ledger().list_categories()]


@app.get("/categories/status", response_model=list[CategoryStatusResponse])
def list_category_statuses(month: str | None = Query(None)) -> list[CategoryStatusResponse]:
    ledger = get_ledger()
    period = parse_month(month) or ledger.current_period()
    try:
        statuses = ledger.compute_category_statuses(period)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return [CategoryStatusResponse.from_status(status, period) for status in statuses]


@app.post("/categories", response_model=CategoryResponse)
def create_category(payload: CategoryPayload) -> CategoryResponse:
    try:
        payload = CategoryPayload.validate_payload(payload)
        category = get_ledger().create_category(
            payload.name, payload.allocation_type, payload.allocation_value
        )
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return CategoryResponse.from_category(category)


@app.put("/categories/{category_id}", response_model=CategoryResponse)
def update_category(category_id: str, payload: CategoryPayload) -> CategoryResponse:
    try:
        payload = CategoryPayload.validate_payload(payload)
        category = get_ledger().update_category(
            category_id, payload.name, payload.allocation_type, payload.allocation_value
        )
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return CategoryResponse.from_category(category)


@app.delete("/categories/{category_id}")
def delete_category(category_id: str) -> dict:
    try:
        removed = get_ledger().delete_category(category_id)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return {"status": "deleted", "removed_expenses": len(removed)}


@app.get("/savings-goal", response_model=SavingsGoalResponse | None)
def get_savings_goal() -> SavingsGoalResponse | None:
    goal = get_ledger().savings_goal
    if goal is None:
        return None
    return SavingsGoalResponse(type=goal.type, value=goal.value)


@app.put("/savings-goal", response_model=SavingsGoalResponse)
def set_savings_goal(payload: SavingsGoalPayload) -> SavingsGoalResponse:
    try:
        goal = get_ledger().set_savings_goal(payload.type, payload.value)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return SavingsGoalResponse(type=goal.type, value=goal.value)


@app.delete("/savings-goal")
def clear_savings_goal() -> dict:
    try:
        get_ledger().clear_savings_goal()
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return {"status": "deleted"}


@app.get("/summary", response_model=SummaryResponse)
def get_summary(month: str | None = Query(None)) -> SummaryResponse:
    period = parse_month(month)
    try:
        summary = get_ledger().compute_summary(period)
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return SummaryResponse(
        month=str(summary.period),
        total_income=summary.totals.income,
        total_expenses=summary.totals.expense,
        balance=summary.totals.balance,
        savings=SavingsProgressResponse.from_progress(summary.savings) if summary.savings else None,
    )


@app.post("/rollover", response_model=RolloverResponse)
def run_rollover() -> RolloverResponse:
    ledger = get_ledger()
    try:
        adjustments = ledger.advance_to(ledger.current_period())
    except LedgerError as exc:
        raise to_http_error(exc) from exc
    return RolloverResponse(
        month=str(ledger.current_period()),
        adjustments=[RolloverEntryResponse.from_adjustment(a) for a in adjustments],
    )
