from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from budget_ledger.errors import NotFoundError, ValidationError
from budget_ledger.models import (
    ZERO,
    AllocationType,
    Category,
    Clock,
    IdGenerator,
    coerce_allocation,
    normalize_name_key,
    uuid_ids,
)

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    ("Utilities", Decimal("300")),
    ("Food", Decimal("500")),
    ("Rent", Decimal("1000")),
    ("Entertainment", Decimal("200")),
    ("Others", Decimal("200")),
]


class CategoryRegistry:
    """Budget categories keyed by id, with case-insensitive unique names."""

    def __init__(
        self,
        categories: Iterable[Category] = (),
        *,
        ids: IdGenerator = uuid_ids,
        clock: Clock = datetime.now,
    ) -> None:
        self._ids = ids
        self._clock = clock
        self._categories: dict[str, Category] = {}
        for category in categories:
            self._categories[category.id] = category

    def __len__(self) -> int:
        return len(self._categories)

    def __contains__(self, category_id: object) -> bool:
        return category_id in self._categories

    def categories(self) -> list[Category]:
        return list(self._categories.values())

    def get(self, category_id: str) -> Category:
        try:
            return self._categories[category_id]
        except KeyError as exc:
            raise NotFoundError(f"Category not found: {category_id}") from exc

    def find_by_name(self, name: str) -> Optional[Category]:
        key = normalize_name_key(name)
        for category in self._categories.values():
            if category.name_key == key:
                return category
        return None

    def add_category(
        self,
        name: str,
        allocation_type: str,
        allocation_value: Decimal | int | float | str,
    ) -> Category:
        cleaned_name = self._validate_name(name)
        normalized_type, value = coerce_allocation(allocation_type, allocation_value)
        category = Category(
            id=self._ids(),
            name=cleaned_name,
            allocation_type=normalized_type,
            allocation_value=value,
            created_at=self._clock(),
            carry_forward=ZERO,
        )
        self._categories[category.id] = category
        logger.debug("Added category %s (%s)", category.name, category.id)
        return category

    def rename_or_update(
        self,
        category_id: str,
        name: str,
        allocation_type: str,
        allocation_value: Decimal | int | float | str,
    ) -> Category:
        current = self.get(category_id)
        cleaned_name = self._validate_name(name, exclude_id=category_id)
        normalized_type, value = coerce_allocation(allocation_type, allocation_value)
        updated = replace(
            current,
            name=cleaned_name,
            allocation_type=normalized_type,
            allocation_value=value,
        )
        self._categories[category_id] = updated
        return updated

    def delete_category(self, category_id: str) -> Category:
        """Remove a category. Callers must also purge its expenses."""
        category = self.get(category_id)
        del self._categories[category_id]
        logger.debug("Deleted category %s (%s)", category.name, category.id)
        return category

    def apply_carry_forward(self, category_id: str, carry_forward: Decimal) -> Category:
        # Only rollover may call this.
        if carry_forward < ZERO:
            raise ValueError("carry_forward cannot be negative.")
        updated = replace(self.get(category_id), carry_forward=carry_forward)
        self._categories[category_id] = updated
        return updated

    def seed_defaults(self) -> list[Category]:
        if self._categories:
            return []
        return [
            self.add_category(name, AllocationType.FIXED, budget)
            for name, budget in DEFAULT_CATEGORIES
        ]

    def _validate_name(self, name: Optional[str], exclude_id: Optional[str] = None) -> str:
        cleaned = name.strip() if name else ""
        if not cleaned:
            raise ValidationError("Category name required.")
        existing = self.find_by_name(cleaned)
        if existing is not None and existing.id != exclude_id:
            raise ValidationError("Category already exists.")
        return cleaned
