from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from budget_ledger.budget_engine import PercentCarryPolicy
from budget_ledger.errors import ValidationError
from budget_ledger.migration import DEFAULT_FALLBACK_CATEGORY

DEFAULT_DATABASE_URL = "sqlite:///./budget_ledger.db"
DEFAULT_FRONTEND_ORIGIN = "http://localhost:3000"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    frontend_origin: str = DEFAULT_FRONTEND_ORIGIN
    percent_carry_policy: str = PercentCarryPolicy.AFTER
    fallback_category: str = DEFAULT_FALLBACK_CATEGORY
    seed_default_categories: bool = True
    log_level: str = "INFO"


def get_percent_carry_policy() -> str:
    raw = os.getenv("BUDGET_PERCENT_CARRY_POLICY", PercentCarryPolicy.AFTER)
    try:
        return PercentCarryPolicy.validate(raw)
    except ValidationError:
        return PercentCarryPolicy.AFTER


def get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def get_log_level() -> str:
    raw = os.getenv("BUDGET_LOG_LEVEL", "INFO").strip().upper()
    if raw not in logging.getLevelNamesMapping():
        return "INFO"
    return raw


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("BUDGET_DATABASE_URL", DEFAULT_DATABASE_URL),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", DEFAULT_FRONTEND_ORIGIN),
        percent_carry_policy=get_percent_carry_policy(),
        fallback_category=os.getenv("BUDGET_FALLBACK_CATEGORY", "").strip()
        or DEFAULT_FALLBACK_CATEGORY,
        seed_default_categories=get_bool("BUDGET_SEED_DEFAULT_CATEGORIES", True),
        log_level=get_log_level(),
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
