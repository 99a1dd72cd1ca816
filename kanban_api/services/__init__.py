"""Business logic services."""

from .auth_service import (
    Principal,
    create_access_token,
    decode_access_token,
    get_current_principal,
    require_admin,
    require_role,
)
from .event_publisher import (
    EventPublisher,
    LocalEventPublisher,
    PostgresEventPublisher,
    RedisEventPublisher,
    channel_for,
    create_event_publisher,
    get_event_publisher,
    set_event_publisher,
)
from .ordering_service import (
    PositionUpdate,
    Scope,
    ScopeLocks,
    board_scope,
    column_scope,
    compute_move,
    compute_renumber,
    compute_reorder,
    scope_locks,
    task_scope,
)
from .redis_service import RedisService, redis_service
from .tenant_service import (
    TenantContext,
    TenantRegistry,
    TenantResolver,
    get_tenant,
    tenant_registry,
    tenant_resolver,
)
from .transaction_service import run_transaction

__all__ = [
    # Auth service
    "Principal",
    "create_access_token",
    "decode_access_token",
    "get_current_principal",
    "require_admin",
    "require_role",
    # Event publisher
    "EventPublisher",
    "LocalEventPublisher",
    "PostgresEventPublisher",
    "RedisEventPublisher",
    "channel_for",
    "create_event_publisher",
    "get_event_publisher",
    "set_event_publisher",
    # Ordering service
    "PositionUpdate",
    "Scope",
    "ScopeLocks",
    "board_scope",
    "column_scope",
    "compute_move",
    "compute_renumber",
    "compute_reorder",
    "scope_locks",
    "task_scope",
    # Redis service
    "RedisService",
    "redis_service",
    # Tenant service
    "TenantContext",
    "TenantRegistry",
    "TenantResolver",
    "get_tenant",
    "tenant_registry",
    "tenant_resolver",
    # Transaction service
    "run_transaction",
]
