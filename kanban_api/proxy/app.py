"""
SQLite proxy service.

Pods that cannot safely open tenant SQLite files themselves (shared network
storage) send their SQL here instead. The proxy keeps exactly one connection
per tenant database and executes statements for a tenant one at a time.

Endpoints:
    POST /query        one statement, ``{"type": "all"|"run", "result": ...}``
    POST /transaction  a batch in one SQLite transaction, all or nothing
    GET  /info/{id}    journal mode and integrity of one tenant database
    GET  /health       open connection count

Run with ``uvicorn kanban_api.proxy.app:app --port 3001``.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiosqlite
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import settings
from ..services.tenant_service import DEFAULT_KEY, is_valid_tenant_id

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SLOW_QUERY_THRESHOLD_MS = 100

READ_PREFIXES = ("SELECT", "PRAGMA", "WITH")
SCHEMA_PREFIXES = ("CREATE", "ALTER", "DROP")
EXISTING_SCHEMA_MARKERS = ("already exists", "duplicate column", "duplicate table", "duplicate index")
BLOCKED_FRAGMENTS = ("DROP TABLE", "DROP INDEX", "DROP VIEW", "DROP TRIGGER", "VACUUM")
BLOCKED_PREFIXES = ("ATTACH ", "DETACH ")


class QueryRequest(BaseModel):
    tenant_id: str = Field(alias="tenantId")
    query: str = Field(min_length=1)
    params: list[Any] = Field(default_factory=list)


class BatchQuery(BaseModel):
    query: str = Field(min_length=1)
    params: list[Any] = Field(default_factory=list)


class TransactionRequest(BaseModel):
    tenant_id: str = Field(alias="tenantId")
    queries: list[BatchQuery]


def is_read_query(query: str) -> bool:
    return query.lstrip().upper().startswith(READ_PREFIXES)


def is_blocked_query(query: str) -> bool:
    """Destructive statements are refused; ``ALTER TABLE ... ADD`` is allowed."""
    upper = query.strip().upper()
    if any(fragment in upper for fragment in BLOCKED_FRAGMENTS):
        return True
    if "ALTER TABLE" in upper and " DROP " in upper:
        return True
    return upper.startswith(BLOCKED_PREFIXES) or " ATTACH " in upper or " DETACH " in upper


def _is_existing_schema_error(query: str, error: Exception) -> bool:
    upper = query.lstrip().upper()
    message = str(error).lower()
    return upper.startswith(SCHEMA_PREFIXES) and any(m in message for m in EXISTING_SCHEMA_MARKERS)


class ProxyStore:
    """
    One aiosqlite connection and one lock per tenant database.

    Connections run in autocommit mode; ``run_batch`` issues BEGIN/COMMIT
    explicitly so a batch is a single SQLite transaction.
    """

    def __init__(self, data_dir: str) -> None:
        self.data_dir = Path(data_dir)
        self._connections: dict[str, aiosqlite.Connection] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._open_lock = asyncio.Lock()

    def path_for(self, tenant_id: str) -> Path:
        if tenant_id == DEFAULT_KEY:
            return self.data_dir / "kanban.db"
        return self.data_dir / "tenants" / tenant_id / "kanban.db"

    @property
    def open_connections(self) -> int:
        return len(self._connections)

    def lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    async def connection(self, tenant_id: str) -> aiosqlite.Connection:
        async with self._open_lock:
            db = self._connections.get(tenant_id)
            if db is not None:
                return db

            path = self.path_for(tenant_id)
            path.parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(str(path), isolation_level=None)
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA journal_mode = WAL")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA foreign_keys = ON")
            self._connections[tenant_id] = db
            logger.info(f"Opened database connection for tenant: {tenant_id}")
            return db

    async def _execute(self, db: aiosqlite.Connection, query: str, params: list[Any]) -> dict:
        async with db.execute(query, params) as cursor:
            if is_read_query(query):
                rows = await cursor.fetchall()
                return {"type": "all", "result": [dict(row) for row in rows]}
            return {
                "type": "run",
                "result": {"changes": cursor.rowcount, "lastInsertRowid": cursor.lastrowid},
            }

    async def run_query(self, tenant_id: str, query: str, params: list[Any]) -> dict:
        db = await self.connection(tenant_id)
        async with self.lock_for(tenant_id):
            started = time.perf_counter()
            try:
                result = await self._execute(db, query, params)
            except aiosqlite.Error as e:
                if _is_existing_schema_error(query, e):
                    logger.info(f"Schema operation skipped (already exists): {query[:80]}")
                    return {"type": "run", "result": {"changes": 0, "lastInsertRowid": None}}
                raise
            elapsed_ms = (time.perf_counter() - started) * 1000
            if elapsed_ms >= SLOW_QUERY_THRESHOLD_MS:
                logger.info(f"Query took {elapsed_ms:.2f}ms (tenant: {tenant_id}): {query[:80]}")
            return result

    async def run_batch(self, tenant_id: str, queries: list[BatchQuery]) -> list[Any]:
        """Execute every query in one transaction; any error rolls back all of them."""
        db = await self.connection(tenant_id)
        async with self.lock_for(tenant_id):
            started = time.perf_counter()
            await db.execute("BEGIN")
            results = []
            try:
                for item in queries:
                    outcome = await self._execute(db, item.query, item.params)
                    results.append(outcome["result"])
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info(
                f"Batched transaction completed in {elapsed_ms:.2f}ms "
                f"for {len(queries)} queries (tenant: {tenant_id})"
            )
            return results

    async def info(self, tenant_id: str) -> dict:
        db = await self.connection(tenant_id)
        async with self.lock_for(tenant_id):
            values = {}
            for pragma in ("journal_mode", "synchronous", "integrity_check"):
                async with db.execute(f"PRAGMA {pragma}") as cursor:
                    row = await cursor.fetchone()
                    values[pragma] = row[0] if row else None
        return {
            "tenantId": tenant_id,
            "journalMode": values["journal_mode"],
            "synchronous": values["synchronous"],
            "integrity": values["integrity_check"],
        }

    async def close_all(self) -> None:
        connections = list(self._connections.items())
        self._connections.clear()
        for tenant_id, db in connections:
            try:
                await db.close()
            except aiosqlite.Error as e:
                logger.warning(f"Error closing database for tenant {tenant_id}: {e}")


def _check_tenant(tenant_id: str) -> None:
    if tenant_id != DEFAULT_KEY and not is_valid_tenant_id(tenant_id):
        raise HTTPException(status_code=400, detail="Invalid tenantId")


def _error_response(error: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"error": str(error), "code": getattr(error, "sqlite_errorname", None)},
    )


def create_proxy_app(data_dir: Optional[str] = None) -> FastAPI:
    """
    Build the proxy application.

    Args:
        data_dir: Root directory holding ``kanban.db`` and ``tenants/<id>/``;
            defaults to ``settings.sqlite_data_dir``
    """
    store = ProxyStore(data_dir or settings.sqlite_data_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await store.close_all()

    proxy = FastAPI(
        title="Kanban SQLite Proxy",
        version="1.0.0",
        lifespan=lifespan,
    )
    proxy.state.store = store

    @proxy.get("/health")
    async def health():
        return {
            "status": "healthy",
            "connections": store.open_connections,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @proxy.post("/query")
    async def query(body: QueryRequest):
        _check_tenant(body.tenant_id)
        if is_blocked_query(body.query):
            logger.error(f"Blocked dangerous query for tenant {body.tenant_id}: {body.query[:100]}")
            raise HTTPException(status_code=403, detail="Dangerous operations not allowed via proxy")
        try:
            return await store.run_query(body.tenant_id, body.query, body.params)
        except aiosqlite.Error as e:
            logger.error(f"Query error (tenant: {body.tenant_id}): {e}")
            return _error_response(e)

    @proxy.post("/transaction")
    async def transaction(body: TransactionRequest):
        _check_tenant(body.tenant_id)
        if any(is_blocked_query(item.query) for item in body.queries):
            raise HTTPException(status_code=403, detail="Dangerous operations not allowed via proxy")
        logger.info(
            f"Received batched transaction: {len(body.queries)} queries for tenant {body.tenant_id}"
        )
        try:
            results = await store.run_batch(body.tenant_id, body.queries)
        except aiosqlite.Error as e:
            logger.error(f"Transaction error (tenant: {body.tenant_id}): {e}")
            return _error_response(e)
        return {"results": results}

    @proxy.get("/info/{tenant_id}")
    async def info(tenant_id: str):
        _check_tenant(tenant_id)
        return await store.info(tenant_id)

    return proxy


app = create_proxy_app()
