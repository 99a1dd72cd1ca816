"""Data access for boards."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, select, update

from ..database import DatabaseHandle, Executor
from ..models import Board, BoardColumn, Task
from .ordering_service import (
    PositionUpdate,
    board_scope,
    delete_from_scope,
    insert_into_scope,
)


async def list_boards(db: Executor) -> list[dict[str, Any]]:
    """All boards in display order."""
    return await db.fetch_all(
        select(Board.__table__).order_by(Board.position, Board.created_at, Board.id)
    )


async def get_board(db: Executor, board_id: str) -> Optional[dict[str, Any]]:
    return await db.fetch_one(select(Board.__table__).where(Board.id == board_id))


async def create_board(
    db: DatabaseHandle,
    title: str,
    project: Optional[str] = None,
    board_id: Optional[str] = None,
    position: Optional[int] = None,
) -> tuple[dict[str, Any], list[PositionUpdate]]:
    """
    Create a board at the end of the list, or at ``position``.

    Returns:
        Tuple of (new board row, position updates of shifted boards)
    """
    now = datetime.utcnow()
    values = {
        "id": board_id or str(uuid.uuid4()),
        "title": title,
        "project": project,
        "created_at": now,
        "updated_at": now,
    }
    return await insert_into_scope(db, board_scope(), values, position)


async def update_board(
    db: Executor,
    board_id: str,
    changes: dict[str, Any],
) -> Optional[dict[str, Any]]:
    """Apply field changes; returns the updated row or None if missing."""
    board = await get_board(db, board_id)
    if board is None:
        return None
    if changes:
        changes = {**changes, "updated_at": datetime.utcnow()}
        await db.execute(update(Board).where(Board.id == board_id).values(**changes))
        board.update(changes)
    return board


async def delete_board(db: DatabaseHandle, board_id: str) -> list[PositionUpdate]:
    """
    Delete a board with its columns and tasks, closing the gap in board order.

    Raises:
        ItemNotFound: If the board does not exist
    """
    return await delete_from_scope(
        db,
        board_scope(),
        board_id,
        dependents=[
            delete(Task).where(Task.board_id == board_id),
            delete(BoardColumn).where(BoardColumn.board_id == board_id),
        ],
    )
