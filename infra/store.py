"""
Transactional store used by every service.

Services only see the `Store` protocol: `query`, `execute` and
`transaction(fn)`. `SqlStore` implements it over a SQLAlchemy engine; inside
`transaction` the callback receives a store bound to the open connection, and
any exception it raises rolls the whole unit back.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol, TypeVar, Union

from pydantic import BaseModel
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import Executable

from .schema import create_schema

T = TypeVar("T")
Statement = Union[str, Executable]


@dataclass(frozen=True)
class ExecuteResult:
    affected_rows: int
    insert_id: Optional[Any] = None


class Store(Protocol):
    def query(self, statement: Statement, params: Optional[dict] = None) -> list[dict]: ...

    def execute(self, statement: Statement, params: Optional[dict] = None) -> ExecuteResult: ...

    def transaction(self, fn: Callable[["Store"], T]) -> T: ...


class SqlStore:
    def __init__(self, engine: Engine, connection: Optional[Connection] = None):
        self.engine = engine
        self._connection = connection

    @property
    def in_transaction(self) -> bool:
        return self._connection is not None

    def query(self, statement: Statement, params: Optional[dict] = None) -> list[dict]:
        if self._connection is not None:
            return self._fetch(self._connection, statement, params)
        with self.engine.connect() as conn:
            return self._fetch(conn, statement, params)

    def execute(self, statement: Statement, params: Optional[dict] = None) -> ExecuteResult:
        if self._connection is not None:
            return self._run(self._connection, statement, params)
        with self.engine.begin() as conn:
            return self._run(conn, statement, params)

    def transaction(self, fn: Callable[["SqlStore"], T]) -> T:
        # Nested calls join the outer transaction.
        if self._connection is not None:
            return fn(self)
        with self.engine.begin() as conn:
            return fn(SqlStore(self.engine, conn))

    def _fetch(self, conn: Connection, statement: Statement, params: Optional[dict]) -> list[dict]:
        result = conn.execute(_coerce(statement), params or {})
        return [dict(row) for row in result.mappings()]

    def _run(self, conn: Connection, statement: Statement, params: Optional[dict]) -> ExecuteResult:
        result = conn.execute(_coerce(statement), params or {})
        insert_id = result.lastrowid if result.is_insert else None
        return ExecuteResult(affected_rows=result.rowcount, insert_id=insert_id)


def _coerce(statement: Statement) -> Executable:
    if isinstance(statement, str):
        return text(statement)
    return statement


def to_row(model: BaseModel, **overrides) -> dict:
    row = model.model_dump()
    row.update(overrides)
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in row.items()}


def create_store(database_url: str, echo: bool = False, create_tables: bool = True) -> SqlStore:
    kwargs: dict[str, Any] = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise each checkout sees an empty database
            kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, **kwargs)
    if create_tables:
        create_schema(engine)
    return SqlStore(engine)
