"""Data access for tasks."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update

from ..database import DatabaseHandle, Executor
from ..exceptions import ItemNotFound
from ..models import BoardColumn, Task
from .ordering_service import (
    PositionUpdate,
    delete_from_scope,
    insert_into_scope,
    task_scope,
)


async def list_tasks(db: Executor, column_id: str) -> list[dict[str, Any]]:
    """Tasks of a column in display order."""
    return await db.fetch_all(
        select(Task.__table__)
        .where(Task.column_id == column_id)
        .order_by(Task.position, Task.created_at, Task.id)
    )


async def get_task(db: Executor, task_id: str) -> Optional[dict[str, Any]]:
    return await db.fetch_one(select(Task.__table__).where(Task.id == task_id))


async def create_task(
    db: DatabaseHandle,
    column_id: str,
    title: str,
    description: Optional[str] = None,
    ticket: Optional[str] = None,
    member_id: Optional[str] = None,
    task_id: Optional[str] = None,
    position: Optional[int] = None,
) -> tuple[dict[str, Any], list[PositionUpdate]]:
    """
    Create a task in a column; ``board_id`` is taken from the column.

    Raises:
        ItemNotFound: If the column does not exist
    """
    column = await db.fetch_one(
        select(BoardColumn.id, BoardColumn.board_id).where(BoardColumn.id == column_id)
    )
    if column is None:
        raise ItemNotFound(column_id, "columns")

    now = datetime.utcnow()
    values = {
        "id": task_id or str(uuid.uuid4()),
        "board_id": column["board_id"],
        "column_id": column_id,
        "title": title,
        "description": description,
        "ticket": ticket,
        "member_id": member_id,
        "pre_board_id": None,
        "pre_column_id": None,
        "created_at": now,
        "updated_at": now,
    }
    return await insert_into_scope(db, task_scope(column_id), values, position)


async def update_task(
    db: Executor,
    task_id: str,
    changes: dict[str, Any],
) -> Optional[dict[str, Any]]:
    """Apply field changes; returns the updated row or None if missing."""
    task = await get_task(db, task_id)
    if task is None:
        return None
    if changes:
        changes = {**changes, "updated_at": datetime.utcnow()}
        await db.execute(update(Task).where(Task.id == task_id).values(**changes))
        task.update(changes)
    return task


async def delete_task(db: DatabaseHandle, task: dict[str, Any]) -> list[PositionUpdate]:
    """Delete a task and renumber the rest of its column."""
    return await delete_from_scope(db, task_scope(task["column_id"]), task["id"])


def position_updates_payload(
    updates: list[PositionUpdate],
    column_id: Optional[str] = None,
) -> list[dict[str, Any]]:
    """Shape updates as ``[{taskId, position, columnId}]`` for events."""
    return [
        {
            "taskId": u.id,
            "position": u.position,
            "columnId": u.scope_id or column_id,
        }
        for u in updates
    ]
