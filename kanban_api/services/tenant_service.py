"""
Tenant resolution and the per-tenant database handle cache.

In multi-tenant mode each request names its tenant through the host it was
sent to (``<tenant>.<tenant_domain>``). The ingress may rewrite ``Host``, so
``X-Forwarded-Host`` and ``X-Original-Host`` take precedence. Admin-portal
routes may target any tenant through ``?tenantId=`` or ``X-Tenant-Id``.

Handles are created lazily on first use and cached for the lifetime of the
process. Concurrent requests for the same cold tenant share one
initialisation.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Optional

from fastapi import Request
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import create_async_engine
from starlette.requests import HTTPConnection

from ..config import settings
from ..database import DatabaseHandle, EngineDatabase, ProxyDatabase
from ..exceptions import KanbanError, TenantHintMissing, TenantNotReady
from .settings_service import ensure_instance_active

logger = logging.getLogger(__name__)

TENANT_ID_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")
ADMIN_PORTAL_PREFIX = "/api/admin-portal"
DEFAULT_KEY = "default"

HandleFactory = Callable[[Optional[str]], Awaitable[DatabaseHandle]]


# ============================================================================
# Tenant hint extraction
# ============================================================================


def is_valid_tenant_id(value: Optional[str]) -> bool:
    return bool(value) and TENANT_ID_PATTERN.match(value) is not None


def tenant_from_host(host: Optional[str], domain: str) -> Optional[str]:
    """
    Extract the tenant id from a hostname.

    Examples:
        acme.ezkan.cloud -> acme
        acme.ezkan.cloud:443 -> acme
        localhost:8000 -> None
    """
    if not host:
        return None

    # X-Forwarded-Host may hold a comma separated chain; the first hop wins
    hostname = host.split(",")[0].strip().lower().split(":")[0]
    if not hostname.endswith(f".{domain.lower()}"):
        return None

    tenant_id = hostname.split(".")[0]
    return tenant_id if is_valid_tenant_id(tenant_id) else None


def extract_tenant_id(
    headers: Mapping[str, str],
    path: str,
    query_params: Mapping[str, str],
    domain: str,
) -> Optional[str]:
    """
    Determine the tenant id of a request.

    Args:
        headers: Request headers (case-insensitive mapping)
        path: URL path
        query_params: Query string parameters
        domain: Base tenant domain, e.g. ``ezkan.cloud``

    Returns:
        The tenant id, or None if the request carries no usable hint
    """
    host = (
        headers.get("x-forwarded-host")
        or headers.get("x-original-host")
        or headers.get("host")
    )
    tenant_id = tenant_from_host(host, domain)

    if path.startswith(ADMIN_PORTAL_PREFIX):
        override = query_params.get("tenantId") or headers.get("x-tenant-id")
        if is_valid_tenant_id(override):
            logger.info(f"Admin portal accessing tenant via parameter: {override}")
            tenant_id = override

    return tenant_id


# ============================================================================
# Handle factories
# ============================================================================


def sqlite_path_for(tenant_id: Optional[str]) -> Path:
    """Database file of a tenant; single-tenant mode uses the data dir root."""
    base = Path(settings.sqlite_data_dir)
    if tenant_id:
        return base / "tenants" / tenant_id / "kanban.db"
    return base / "kanban.db"


def postgres_schema_for(tenant_id: Optional[str]) -> str:
    if not tenant_id:
        return "public"
    return f"tenant_{tenant_id.replace('-', '_')}"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _open_sqlite(tenant_id: Optional[str]) -> EngineDatabase:
    path = sqlite_path_for(tenant_id)
    if not path.exists():
        if not settings.auto_provision_tenants:
            raise TenantNotReady(tenant_id, f"database file {path} does not exist")
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Provisioning SQLite database for tenant {tenant_id or DEFAULT_KEY}")

    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", echo=settings.sql_echo)
    event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return EngineDatabase(engine, tenant_id)


async def _open_postgres(tenant_id: Optional[str]) -> EngineDatabase:
    schema = postgres_schema_for(tenant_id)
    engine = create_async_engine(
        settings.database_url,
        echo=settings.sql_echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        connect_args={"server_settings": {"search_path": schema}},
    )
    try:
        async with engine.begin() as conn:
            exists = (
                await conn.execute(
                    text("SELECT 1 FROM information_schema.schemata WHERE schema_name = :schema"),
                    {"schema": schema},
                )
            ).first()
            if exists is None:
                if not settings.auto_provision_tenants:
                    raise TenantNotReady(tenant_id, f"schema {schema} does not exist")
                logger.info(f"Provisioning PostgreSQL schema {schema}")
                await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema}"'))
    except BaseException:
        await engine.dispose()
        raise
    return EngineDatabase(engine, tenant_id)


async def open_tenant_database(tenant_id: Optional[str]) -> DatabaseHandle:
    """
    Create and initialise the database handle of one tenant.

    Raises:
        TenantNotReady: If the backing store is missing or unreachable
    """
    try:
        if settings.db_backend == "proxy":
            handle: DatabaseHandle = ProxyDatabase(
                tenant_id,
                settings.sqlite_proxy_url,
                timeout=settings.proxy_timeout_seconds,
            )
        elif settings.db_backend == "postgres":
            handle = await _open_postgres(tenant_id)
        else:
            handle = _open_sqlite(tenant_id)
    except KanbanError:
        raise
    except Exception as e:
        raise TenantNotReady(tenant_id, str(e)) from e

    try:
        await handle.create_schema()
    except Exception as e:
        await handle.close()
        raise TenantNotReady(tenant_id, str(e)) from e

    logger.info(f"Initialized {handle.kind} database for tenant {tenant_id or DEFAULT_KEY}")
    return handle


# ============================================================================
# Registry
# ============================================================================


class TenantRegistry:
    """
    Process-wide cache of tenant database handles.

    Lifecycle: handles are added by ``get_or_create`` and only released by
    ``close_all`` at shutdown. Initialisation of a cold tenant happens once
    even when many requests arrive together; a failed initialisation is not
    cached, so the next request retries.
    """

    def __init__(self, factory: HandleFactory = open_tenant_database) -> None:
        self._factory = factory
        self._handles: dict[str, DatabaseHandle] = {}
        self._pending: dict[str, asyncio.Future] = {}

    async def get_or_create(self, tenant_id: Optional[str]) -> DatabaseHandle:
        key = tenant_id or DEFAULT_KEY

        handle = self._handles.get(key)
        if handle is not None:
            return handle

        pending = self._pending.get(key)
        if pending is None:
            # Owned by the registry, not by the request that started it
            pending = asyncio.ensure_future(self._initialize(key, tenant_id))
            self._pending[key] = pending

        # A cancelled caller only stops waiting; the shared init keeps running
        return await asyncio.shield(pending)

    async def _initialize(self, key: str, tenant_id: Optional[str]) -> DatabaseHandle:
        try:
            handle = await self._factory(tenant_id)
        except Exception as e:
            logger.warning(f"Tenant {key} initialization failed: {e}")
            raise
        else:
            self._handles[key] = handle
            return handle
        finally:
            self._pending.pop(key, None)

    def get(self, tenant_id: Optional[str]) -> Optional[DatabaseHandle]:
        return self._handles.get(tenant_id or DEFAULT_KEY)

    def cached_tenants(self) -> list[str]:
        return list(self._handles)

    async def close_all(self) -> None:
        """Dispose every cached handle. Only used on application shutdown."""
        handles = list(self._handles.items())
        self._handles.clear()
        for key, handle in handles:
            try:
                await handle.close()
            except Exception as e:
                logger.warning(f"Error closing database for tenant {key}: {e}")


# ============================================================================
# Resolver
# ============================================================================


@dataclass
class TenantContext:
    """The tenant a request operates on and its database handle."""

    tenant_id: Optional[str]
    db: DatabaseHandle


class TenantResolver:
    """Maps inbound connections (HTTP or WebSocket) to tenant handles."""

    def __init__(self, registry: TenantRegistry) -> None:
        self.registry = registry

    def tenant_id_for(self, connection: HTTPConnection) -> Optional[str]:
        """
        Raises:
            TenantHintMissing: Multi-tenant mode and no resolvable host
        """
        if not settings.multi_tenant:
            return None

        tenant_id = extract_tenant_id(
            connection.headers,
            connection.url.path,
            connection.query_params,
            settings.tenant_domain,
        )
        if tenant_id is None:
            logger.error(
                f"No tenant hint on {connection.url.path} "
                f"(host={connection.headers.get('host')!r}); check ingress configuration"
            )
            raise TenantHintMissing()
        return tenant_id

    async def resolve(self, connection: HTTPConnection) -> DatabaseHandle:
        """Return the database handle for the tenant of ``connection``."""
        tenant_id = self.tenant_id_for(connection)
        connection.state.tenant_id = tenant_id
        return await self.registry.get_or_create(tenant_id)

    async def context(self, connection: HTTPConnection) -> TenantContext:
        db = await self.resolve(connection)
        return TenantContext(tenant_id=connection.state.tenant_id, db=db)


tenant_registry = TenantRegistry()
tenant_resolver = TenantResolver(tenant_registry)


async def get_tenant(request: Request) -> TenantContext:
    """
    FastAPI dependency resolving the request's tenant.

    Also enforces the tenant's instance status, except on admin-portal routes
    which must keep working for suspended instances.
    """
    tenant = await tenant_resolver.context(request)
    if not request.url.path.startswith(ADMIN_PORTAL_PREFIX):
        await ensure_instance_active(tenant.db)
    return tenant


__all__ = [
    "ADMIN_PORTAL_PREFIX",
    "TenantContext",
    "TenantRegistry",
    "TenantResolver",
    "extract_tenant_id",
    "get_tenant",
    "is_valid_tenant_id",
    "open_tenant_database",
    "postgres_schema_for",
    "sqlite_path_for",
    "tenant_from_host",
    "tenant_registry",
    "tenant_resolver",
]
