"""Per-tenant key/value settings (INSTANCE_STATUS, ADMIN_PORTAL_URL, INSTANCE_ID, OWNER)."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, insert, select, update

from ..database import Executor
from ..exceptions import InstanceUnavailable
from ..models import Setting

logger = logging.getLogger(__name__)

INSTANCE_STATUS = "INSTANCE_STATUS"
ADMIN_PORTAL_URL = "ADMIN_PORTAL_URL"
INSTANCE_ID = "INSTANCE_ID"
OWNER = "OWNER"

ACTIVE = "active"


async def get_setting(db: Executor, key: str) -> Optional[str]:
    """Return the value stored under ``key`` or None."""
    row = await db.fetch_one(select(Setting.value).where(Setting.key == key))
    return row["value"] if row else None


async def list_settings(db: Executor) -> dict[str, str]:
    """All settings as a key to value mapping."""
    rows = await db.fetch_all(select(Setting.key, Setting.value).order_by(Setting.key))
    return {row["key"]: row["value"] for row in rows}


async def set_setting(db: Executor, key: str, value: Optional[str]) -> None:
    """Insert or update a setting. ``None`` deletes the key."""
    if value is None:
        await db.execute(delete(Setting).where(Setting.key == key))
        return

    now = datetime.utcnow()
    existing = await db.fetch_one(select(Setting.key).where(Setting.key == key))
    if existing:
        await db.execute(
            update(Setting).where(Setting.key == key).values(value=value, updated_at=now)
        )
    else:
        await db.execute(insert(Setting).values(key=key, value=value, updated_at=now))


async def get_instance_status(db: Executor) -> str:
    """Instance status, ``active`` when never set."""
    return (await get_setting(db, INSTANCE_STATUS)) or ACTIVE


async def ensure_instance_active(db: Executor) -> None:
    """
    Refuse service for suspended or terminated instances.

    Raises:
        InstanceUnavailable: If INSTANCE_STATUS is set to anything but ``active``
    """
    status = await get_instance_status(db)
    if status != ACTIVE:
        logger.warning(f"Rejecting request: instance status is '{status}'")
        raise InstanceUnavailable(status)
