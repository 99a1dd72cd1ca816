"""Domain errors raised by the tenancy, ordering and transaction layers.

Every error carries an HTTP status code and a client-safe detail message.
The exception handlers registered in ``main.py`` turn them into JSON
responses; nothing here ever includes SQL text.
"""

from typing import Optional


class KanbanError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code: int = 500
    detail: str = "Internal server error"

    def __init__(self, detail: Optional[str] = None) -> None:
        if detail is not None:
            self.detail = detail
        super().__init__(self.detail)


class TenantHintMissing(KanbanError):
    """Multi-tenant mode is on but the request carries no tenant host."""

    status_code = 400
    detail = "Request does not identify a tenant"


class TenantNotReady(KanbanError):
    """The tenant is known but its backing store is not provisioned yet."""

    status_code = 503
    retry_after = 5

    def __init__(self, tenant_id: Optional[str], reason: Optional[str] = None) -> None:
        self.tenant_id = tenant_id
        self.reason = reason
        super().__init__(f"Tenant '{tenant_id or 'default'}' is not ready. Please retry.")


class InstanceUnavailable(KanbanError):
    """The tenant's INSTANCE_STATUS setting is not 'active'."""

    status_code = 503
    retry_after = 30

    def __init__(self, instance_status: str) -> None:
        self.instance_status = instance_status
        super().__init__(f"Instance unavailable (status: {instance_status})")


class ItemNotFound(KanbanError):
    """Reorder/renumber target does not exist in the expected scope."""

    status_code = 404

    def __init__(self, item_id: str, scope: Optional[str] = None) -> None:
        self.item_id = item_id
        self.scope = scope
        where = f" in {scope}" if scope else ""
        super().__init__(f"Item {item_id} not found{where}")


class ItemConflict(KanbanError):
    """An item with the client-supplied id already exists."""

    status_code = 409

    def __init__(self, item_id: str, kind: Optional[str] = None) -> None:
        self.item_id = item_id
        self.kind = kind
        where = f" in {kind}" if kind else ""
        super().__init__(f"Item {item_id} already exists{where}")


class InvalidTargetPosition(KanbanError):
    """Requested position lies outside the scope's bounds."""

    status_code = 400

    def __init__(self, position: int, max_position: int) -> None:
        self.position = position
        self.max_position = max_position
        super().__init__(
            f"Target position {position} is out of range (0..{max_position})"
        )


class TransactionAborted(KanbanError):
    """An operation inside a transaction failed; nothing was applied."""

    status_code = 500
    detail = "The operation could not be completed and was rolled back"


class PublishFailed(KanbanError):
    """Event transport unavailable or timed out. Never reaches a client."""

    def __init__(self, channel: str, reason: str) -> None:
        self.channel = channel
        self.reason = reason
        super().__init__(f"Publish to {channel} failed: {reason}")


class UpstreamTimeout(KanbanError):
    """An outbound call to the admin portal exceeded its deadline."""

    status_code = 504
    detail = "Upstream service timed out"


class UpstreamUnavailable(KanbanError):
    """An outbound call to the admin portal could not be completed."""

    status_code = 502
    detail = "Upstream service unavailable"


__all__ = [
    "KanbanError",
    "TenantHintMissing",
    "TenantNotReady",
    "InstanceUnavailable",
    "ItemNotFound",
    "ItemConflict",
    "InvalidTargetPosition",
    "TransactionAborted",
    "PublishFailed",
    "UpstreamTimeout",
    "UpstreamUnavailable",
]
