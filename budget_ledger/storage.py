from __future__ import annotations

import logging
from typing import Optional, Protocol

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from budget_ledger.errors import StorageError

logger = logging.getLogger(__name__)

metadata = MetaData()

kv_store = Table(
    "kv_store",
    metadata,
    Column("key", String(255), primary_key=True),
    Column("value", Text, nullable=False),
    Column("updated_at", DateTime, nullable=False, server_default=func.now(), onupdate=func.now()),
)


class KeyValueStore(Protocol):
    def load(self, key: str) -> Optional[str]: ...

    def save(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryStore:
    """Dict-backed store, used by tests and as a scratch ledger."""

    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def load(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def save(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class SqlKeyValueStore:
    """Key-value store over a single SQLAlchemy table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> "SqlKeyValueStore":
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        return cls(create_engine(database_url, connect_args=connect_args))

    def create_schema(self) -> None:
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StorageError("Failed to create key-value table.") from exc

    def load(self, key: str) -> Optional[str]:
        try:
            with self.engine.begin() as conn:
                return conn.execute(
                    select(kv_store.c.value).where(kv_store.c.key == key)
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load {key}.") from exc

    def save(self, key: str, value: str) -> None:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(kv_store).where(kv_store.c.key == key).values(value=value)
                )
                if result.rowcount == 0:
                    conn.execute(insert(kv_store).values(key=key, value=value))
        except SQLAlchemyError as exc:
            logger.error("Failed to save %s: %s", key, exc)
            raise StorageError(f"Failed to save {key}.") from exc

    def delete(self, key: str) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(delete(kv_store).where(kv_store.c.key == key))
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to delete {key}.") from exc
