"""Database handles for direct (SQLAlchemy engine) and proxied (HTTP) stores.

Every tenant is served through a ``DatabaseHandle``. Two implementations exist:

- ``EngineDatabase`` wraps a SQLAlchemy ``AsyncEngine`` (SQLite through
  aiosqlite or PostgreSQL through asyncpg) and supports native transactions.
- ``ProxyDatabase`` sends compiled SQL to the SQLite proxy service over HTTP.
  It has no local transaction primitive; atomic units are submitted as a
  batch to the proxy's ``/transaction`` endpoint.

Data-access functions only depend on the small ``Executor`` surface
(``fetch_all`` / ``fetch_one`` / ``execute``), so the same SQLAlchemy Core
statements run unchanged against either handle.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, AsyncIterator, Optional, Union

import httpx
from sqlalchemy import text
from sqlalchemy.dialects import sqlite
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.schema import CreateIndex, CreateTable
from sqlalchemy.sql import Executable
from sqlalchemy.sql.dml import Insert, Update

logger = logging.getLogger(__name__)

Statement = Union[Executable, str]

_PROXY_DIALECT = sqlite.dialect(paramstyle="qmark")


class Base(DeclarativeBase):
    """Declarative base for ORM models."""
    pass


class ProxyQueryError(RuntimeError):
    """Raised when the SQLite proxy rejects or fails a query."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        self.code = code
        super().__init__(message)


def _jsonable(value: Any) -> Any:
    """Convert a bound parameter into something the proxy can JSON-decode."""
    if isinstance(value, datetime):
        # Matches the storage format of SQLAlchemy's SQLite DATETIME type
        return value.isoformat(sep=" ", timespec="microseconds")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def _default_value(default: Any) -> Any:
    if default.is_callable:
        return default.arg(None)
    return default.arg


def with_python_defaults(statement: Executable) -> Executable:
    """
    Fill in Python-side column defaults an engine would evaluate at execute time.

    ``default=`` applies to INSERT, ``onupdate=`` to UPDATE. Columns the
    statement already sets are left alone.
    """
    if not isinstance(statement, (Insert, Update)):
        return statement

    compiled = statement.compile(dialect=_PROXY_DIALECT)
    missing = {
        column.key: _default_value(column.default)
        for column in compiled.insert_prefetch
    }
    missing.update(
        (column.key, _default_value(column.onupdate))
        for column in compiled.update_prefetch
    )
    if not missing:
        return statement
    return statement.values(**missing)


def compile_statement(statement: Statement) -> tuple[str, list[Any]]:
    """
    Compile a SQLAlchemy statement into ``(sql, params)`` with ``?`` placeholders.

    Args:
        statement: A Core/ORM statement or a raw SQL string

    Returns:
        Tuple of SQL text and positional parameter list
    """
    if isinstance(statement, str):
        return statement, []

    statement = with_python_defaults(statement)
    compiled = statement.compile(
        dialect=_PROXY_DIALECT,
        compile_kwargs={"render_postcompile": True},
    )
    params = compiled.params
    names = compiled.positiontup or []
    return compiled.string, [_jsonable(params[name]) for name in names]


class Executor(ABC):
    """Minimal query surface used by the data-access layer."""

    @abstractmethod
    async def fetch_all(self, statement: Statement) -> list[dict[str, Any]]:
        """Run a query and return every row as a dict."""

    @abstractmethod
    async def fetch_one(self, statement: Statement) -> Optional[dict[str, Any]]:
        """Run a query and return the first row as a dict, or None."""

    @abstractmethod
    async def execute(self, statement: Statement) -> int:
        """Run a write statement and return the affected row count."""


class ConnectionExecutor(Executor):
    """Executor bound to one SQLAlchemy connection (inside a transaction)."""

    def __init__(self, connection: AsyncConnection) -> None:
        self.connection = connection

    async def fetch_all(self, statement: Statement) -> list[dict[str, Any]]:
        if isinstance(statement, str):
            statement = text(statement)
        result = await self.connection.execute(statement)
        return [dict(row) for row in result.mappings().all()]

    async def fetch_one(self, statement: Statement) -> Optional[dict[str, Any]]:
        if isinstance(statement, str):
            statement = text(statement)
        result = await self.connection.execute(statement)
        row = result.mappings().first()
        return dict(row) if row is not None else None

    async def execute(self, statement: Statement) -> int:
        if isinstance(statement, str):
            statement = text(statement)
        result = await self.connection.execute(statement)
        return result.rowcount or 0


class DatabaseHandle(Executor):
    """A tenant's database. Statements outside a transaction autocommit."""

    tenant_id: Optional[str]
    supports_local_transactions: bool = False

    @property
    def kind(self) -> str:
        """Short backend name for logs and health output."""
        return type(self).__name__

    @abstractmethod
    async def ping(self) -> None:
        """Round-trip a trivial query; raises when the store is unreachable."""

    @abstractmethod
    async def create_schema(self) -> None:
        """Create every table of ``Base.metadata`` if missing."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections held by the handle."""


class EngineDatabase(DatabaseHandle):
    """Handle backed by a local SQLAlchemy async engine."""

    supports_local_transactions = True

    def __init__(self, engine: AsyncEngine, tenant_id: Optional[str] = None) -> None:
        self.engine = engine
        self.tenant_id = tenant_id

    @property
    def kind(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[ConnectionExecutor]:
        """Open a native transaction: commit on success, roll back on error."""
        async with self.engine.begin() as connection:
            yield ConnectionExecutor(connection)

    async def fetch_all(self, statement: Statement) -> list[dict[str, Any]]:
        async with self.engine.connect() as connection:
            return await ConnectionExecutor(connection).fetch_all(statement)

    async def fetch_one(self, statement: Statement) -> Optional[dict[str, Any]]:
        async with self.engine.connect() as connection:
            return await ConnectionExecutor(connection).fetch_one(statement)

    async def execute(self, statement: Statement) -> int:
        async with self.begin() as executor:
            return await executor.execute(statement)

    async def ping(self) -> None:
        async with self.engine.connect() as connection:
            await connection.execute(text("SELECT 1"))

    async def create_schema(self) -> None:
        async with self.engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()


class ProxyDatabase(DatabaseHandle):
    """
    Handle that executes SQL remotely through the SQLite proxy service.

    The proxy owns the SQLite files; this process never opens them. There is
    no BEGIN/COMMIT over HTTP, so atomic units go through ``execute_batch``.
    """

    supports_local_transactions = False

    def __init__(
        self,
        tenant_id: Optional[str],
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.tenant_id = tenant_id
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def kind(self) -> str:
        return "proxy"

    @property
    def proxy_tenant(self) -> str:
        return self.tenant_id or "default"

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(f"{self.base_url}{path}", json=body)
        except httpx.HTTPError as e:
            raise ProxyQueryError(f"SQLite proxy request failed: {e}") from e

        if response.status_code >= 400:
            try:
                error = response.json()
            except ValueError:
                raise ProxyQueryError(
                    f"Proxy error ({response.status_code}): {response.text[:200]}"
                )
            raise ProxyQueryError(
                error.get("error") or "Proxy query failed",
                code=error.get("code"),
            )
        return response.json()

    async def _query(self, statement: Statement) -> dict[str, Any]:
        query, params = compile_statement(statement)
        return await self._post(
            "/query",
            {"tenantId": self.proxy_tenant, "query": query, "params": params},
        )

    async def fetch_all(self, statement: Statement) -> list[dict[str, Any]]:
        result = await self._query(statement)
        rows = result.get("result")
        if rows is None:
            return []
        return rows if isinstance(rows, list) else [rows]

    async def fetch_one(self, statement: Statement) -> Optional[dict[str, Any]]:
        rows = await self.fetch_all(statement)
        return rows[0] if rows else None

    async def execute(self, statement: Statement) -> int:
        result = await self._query(statement)
        return int((result.get("result") or {}).get("changes", 0))

    async def execute_batch(self, queries: list[tuple[str, list[Any]]]) -> list[Any]:
        """
        Execute an ordered list of statements as one atomic unit on the proxy.

        Args:
            queries: ``(sql, params)`` tuples in execution order

        Returns:
            Per-statement results in the same order

        Raises:
            ProxyQueryError: If any statement fails (nothing is applied)
        """
        if not queries:
            return []

        logger.debug(
            f"Executing batched transaction: {len(queries)} queries "
            f"for tenant {self.proxy_tenant}"
        )
        result = await self._post(
            "/transaction",
            {
                "tenantId": self.proxy_tenant,
                "queries": [{"query": q, "params": p} for q, p in queries],
            },
        )
        return result.get("results", [])

    async def ping(self) -> None:
        await self.fetch_one("SELECT 1 AS ok")

    async def create_schema(self) -> None:
        ddl: list[tuple[str, list[Any]]] = []
        for table in Base.metadata.sorted_tables:
            ddl.append((str(CreateTable(table, if_not_exists=True).compile(dialect=_PROXY_DIALECT)), []))
            for index in table.indexes:
                ddl.append((str(CreateIndex(index, if_not_exists=True).compile(dialect=_PROXY_DIALECT)), []))
        await self.execute_batch(ddl)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "Base",
    "ConnectionExecutor",
    "DatabaseHandle",
    "EngineDatabase",
    "Executor",
    "ProxyDatabase",
    "ProxyQueryError",
    "Statement",
    "compile_statement",
    "with_python_defaults",
]
