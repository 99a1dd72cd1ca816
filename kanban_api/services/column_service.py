"""Data access for board columns."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, select, update

from ..database import DatabaseHandle, Executor
from ..exceptions import ItemNotFound
from ..models import Board, BoardColumn, Task
from .ordering_service import (
    PositionUpdate,
    column_scope,
    delete_from_scope,
    insert_into_scope,
)


async def list_columns(db: Executor, board_id: str) -> list[dict[str, Any]]:
    """Columns of a board in display order."""
    return await db.fetch_all(
        select(BoardColumn.__table__)
        .where(BoardColumn.board_id == board_id)
        .order_by(BoardColumn.position, BoardColumn.created_at, BoardColumn.id)
    )


async def get_column(db: Executor, column_id: str) -> Optional[dict[str, Any]]:
    return await db.fetch_one(
        select(BoardColumn.__table__).where(BoardColumn.id == column_id)
    )


async def column_positions(db: Executor, board_id: str) -> list[dict[str, Any]]:
    """``[{id, position}]`` of a board's columns, as sent in reorder events."""
    rows = await db.fetch_all(
        select(BoardColumn.id, BoardColumn.position)
        .where(BoardColumn.board_id == board_id)
        .order_by(BoardColumn.position)
    )
    return [{"id": row["id"], "position": row["position"]} for row in rows]


async def create_column(
    db: DatabaseHandle,
    board_id: str,
    title: str,
    column_id: Optional[str] = None,
    position: Optional[int] = None,
    is_finished: bool = False,
    is_archived: bool = False,
) -> tuple[dict[str, Any], list[PositionUpdate]]:
    """
    Create a column on a board.

    Raises:
        ItemNotFound: If the board does not exist
    """
    board = await db.fetch_one(select(Board.id).where(Board.id == board_id))
    if board is None:
        raise ItemNotFound(board_id, "boards")

    now = datetime.utcnow()
    values = {
        "id": column_id or str(uuid.uuid4()),
        "board_id": board_id,
        "title": title,
        "is_finished": is_finished,
        "is_archived": is_archived,
        "created_at": now,
        "updated_at": now,
    }
    return await insert_into_scope(db, column_scope(board_id), values, position)


async def update_column(
    db: Executor,
    column_id: str,
    changes: dict[str, Any],
) -> Optional[dict[str, Any]]:
    """Apply field changes; returns the updated row or None if missing."""
    column = await get_column(db, column_id)
    if column is None:
        return None
    if changes:
        changes = {**changes, "updated_at": datetime.utcnow()}
        await db.execute(
            update(BoardColumn).where(BoardColumn.id == column_id).values(**changes)
        )
        column.update(changes)
    return column


async def delete_column(db: DatabaseHandle, column: dict[str, Any]) -> list[PositionUpdate]:
    """Delete a column and its tasks, closing the gap on its board."""
    return await delete_from_scope(
        db,
        column_scope(column["board_id"]),
        column["id"],
        dependents=[delete(Task).where(Task.column_id == column["id"])],
    )
