"""
Ordering engine for boards, columns and tasks.

Every orderable item lives in a scope (all boards of a tenant, all columns of
a board, all tasks of a column) whose positions are dense and zero-based.
The ``compute_*`` functions are pure: they take the current rows of a scope
and return the minimal list of position updates. The async helpers at the
bottom read a scope, plan the change and write every update through one
``run_transaction`` call, holding a per-scope lock for the whole
read-compute-write cycle.
"""

import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Optional, Sequence

from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.sql import Executable

from ..database import DatabaseHandle, Executor
from ..exceptions import InvalidTargetPosition, ItemConflict, ItemNotFound
from ..models import Board, BoardColumn, Task
from .transaction_service import run_transaction

logger = logging.getLogger(__name__)


# ============================================================================
# Types
# ============================================================================


@dataclass(frozen=True)
class PositionedItem:
    """One row of a scope as seen by the ordering engine."""

    id: str
    position: int
    created_at: Any = None


@dataclass(frozen=True)
class PositionUpdate:
    """
    New position for one item.

    ``scope_id`` names the target scope for rows of a cross-scope move that
    end up there; it is None for rows that stay in the primary scope.
    """

    id: str
    position: int
    scope_id: Optional[str] = None


@dataclass(frozen=True)
class Scope:
    """A set of sibling items sharing one ordering sequence."""

    name: str
    table: Table
    parent_column: Optional[str] = None
    parent_id: Optional[str] = None
    parent_table: Optional[Table] = None

    @property
    def key(self) -> str:
        return f"{self.name}:{self.parent_id or '*'}"

    def filter(self, stmt):
        if self.parent_column is None:
            return stmt
        return stmt.where(self.table.c[self.parent_column] == self.parent_id)


def board_scope() -> Scope:
    return Scope("boards", Board.__table__)


def column_scope(board_id: str) -> Scope:
    return Scope("columns", BoardColumn.__table__, "board_id", board_id, Board.__table__)


def task_scope(column_id: str) -> Scope:
    return Scope("tasks", Task.__table__, "column_id", column_id, BoardColumn.__table__)


# ============================================================================
# Pure planning functions
# ============================================================================


def _sort_key(item: PositionedItem):
    # None sorts after any timestamp; values of different types never meet
    return (item.position, item.created_at is None, item.created_at or "", item.id)


def is_dense(items: Sequence[PositionedItem]) -> bool:
    """True when positions are exactly ``0..len(items)-1``."""
    return sorted(item.position for item in items) == list(range(len(items)))


def compute_reorder(
    items: Sequence[PositionedItem],
    moving_id: str,
    target_position: int,
) -> list[PositionUpdate]:
    """
    Compute the position updates that move one item inside a dense scope.

    Items strictly after the current position and up to the target shift
    down by one when moving forward; items from the target up to (not
    including) the current position shift up by one when moving backward.
    Position 0 and the last position are ordinary targets.

    Args:
        items: Current rows of the scope
        moving_id: ID of the item being moved
        target_position: Desired zero-based position

    Returns:
        Updates for every item whose position changes, moving item last.
        Empty when the target equals the current position.

    Raises:
        ItemNotFound: If moving_id is not in the scope
        InvalidTargetPosition: If target_position is outside 0..N-1
    """
    current = next((item.position for item in items if item.id == moving_id), None)
    if current is None:
        raise ItemNotFound(moving_id)

    max_position = len(items) - 1
    if target_position < 0 or target_position > max_position:
        raise InvalidTargetPosition(target_position, max_position)

    if target_position == current:
        return []

    updates: list[PositionUpdate] = []
    for item in items:
        if item.id == moving_id:
            continue
        if current < item.position <= target_position:
            updates.append(PositionUpdate(item.id, item.position - 1))
        elif target_position <= item.position < current:
            updates.append(PositionUpdate(item.id, item.position + 1))

    updates.append(PositionUpdate(moving_id, target_position))
    return updates


def compute_renumber(items: Iterable[PositionedItem]) -> list[PositionUpdate]:
    """
    Recompute dense positions for a whole scope.

    Rows are ordered by current position, then creation time, then id.
    Only rows whose position actually changes are returned, so running it
    on an already dense scope yields nothing.
    """
    ordered = sorted(items, key=_sort_key)
    return [
        PositionUpdate(item.id, index)
        for index, item in enumerate(ordered)
        if item.position != index
    ]


def compute_move(
    source_items: Sequence[PositionedItem],
    target_items: Sequence[PositionedItem],
    moving_id: str,
    target_position: int,
    target_scope_id: str,
) -> list[PositionUpdate]:
    """
    Move an item from one dense scope into another.

    The gap left in the source closes (later items shift down) and a slot
    opens in the target (items at or after ``target_position`` shift up).

    Raises:
        ItemNotFound: If moving_id is not in the source scope
        InvalidTargetPosition: If target_position is outside 0..len(target)
    """
    current = next((item.position for item in source_items if item.id == moving_id), None)
    if current is None:
        raise ItemNotFound(moving_id)

    if target_position < 0 or target_position > len(target_items):
        raise InvalidTargetPosition(target_position, len(target_items))

    updates = [
        PositionUpdate(item.id, item.position - 1)
        for item in source_items
        if item.position > current
    ]
    updates.extend(
        PositionUpdate(item.id, item.position + 1, scope_id=target_scope_id)
        for item in target_items
        if item.position >= target_position
    )
    updates.append(PositionUpdate(moving_id, target_position, scope_id=target_scope_id))
    return updates


def compute_insert(items: Sequence[PositionedItem], position: int) -> list[PositionUpdate]:
    """Open a slot at ``position`` in a dense scope (0..N inclusive)."""
    if position < 0 or position > len(items):
        raise InvalidTargetPosition(position, len(items))
    return [
        PositionUpdate(item.id, item.position + 1)
        for item in items
        if item.position >= position
    ]


def _normalized(items: Sequence[PositionedItem]) -> tuple[list[PositionedItem], list[PositionUpdate]]:
    if is_dense(items):
        return list(items), []
    repairs = compute_renumber(items)
    new_positions = {u.id: u.position for u in repairs}
    fixed = [
        PositionedItem(item.id, new_positions.get(item.id, item.position), item.created_at)
        for item in items
    ]
    logger.warning(f"Scope was not dense, renumbered {len(repairs)} items before move")
    return fixed, repairs


def _merge(
    original: Iterable[PositionedItem],
    *update_lists: list[PositionUpdate],
) -> list[PositionUpdate]:
    """Collapse several update passes into one list, dropping no-op writes."""
    before = {item.id: item.position for item in original}
    merged: dict[str, PositionUpdate] = {}
    for updates in update_lists:
        for u in updates:
            merged[u.id] = u
    return [
        u for u in merged.values()
        if u.scope_id is not None or before.get(u.id) != u.position
    ]


def plan_reorder(
    items: Sequence[PositionedItem],
    moving_id: str,
    target_position: int,
) -> list[PositionUpdate]:
    """Reorder inside one scope, repairing a non-dense scope first."""
    fixed, repairs = _normalized(items)
    return _merge(items, repairs, compute_reorder(fixed, moving_id, target_position))


def plan_move(
    source_items: Sequence[PositionedItem],
    target_items: Sequence[PositionedItem],
    moving_id: str,
    target_position: int,
    target_scope_id: str,
) -> list[PositionUpdate]:
    """Cross-scope move, repairing either scope first when needed."""
    source, source_repairs = _normalized(source_items)
    target, target_repairs = _normalized(target_items)
    target_repairs = [PositionUpdate(u.id, u.position, target_scope_id) for u in target_repairs]
    moves = compute_move(source, target, moving_id, target_position, target_scope_id)
    return _merge(
        list(source_items) + list(target_items),
        source_repairs,
        target_repairs,
        moves,
    )


def plan_insert(items: Sequence[PositionedItem], position: Optional[int]) -> tuple[int, list[PositionUpdate]]:
    """
    Plan the insertion of a new item.

    Returns:
        Tuple of (position for the new item, updates for existing items).
        Without an explicit position the item is appended at the end.
    """
    fixed, repairs = _normalized(items)
    if position is None:
        return len(fixed), repairs
    return position, _merge(items, repairs, compute_insert(fixed, position))


def plan_positions(
    scopes: dict[str, Sequence[PositionedItem]],
    requested: dict[str, tuple[str, int]],
) -> list[PositionUpdate]:
    """
    Place several items at requested positions, possibly across scopes.

    ``requested`` maps an item id to ``(target scope id, position)``. Every
    scope in ``scopes`` ends up dense: requested items take their slot and
    win ties against siblings already at that position, the rest keep their
    relative order. Returned updates always carry the scope id.

    Raises:
        ItemNotFound: If a requested item is in none of the scopes
    """
    home = {item.id: scope_id for scope_id, items in scopes.items() for item in items}
    for item_id in requested:
        if item_id not in home:
            raise ItemNotFound(item_id)

    placed: dict[str, list[tuple[int, int, PositionedItem]]] = {scope_id: [] for scope_id in scopes}
    for scope_id, items in scopes.items():
        for item in items:
            if item.id in requested:
                target_scope, position = requested[item.id]
                placed.setdefault(target_scope, []).append((position, 0, item))
            else:
                placed[scope_id].append((item.position, 1, item))

    updates: list[PositionUpdate] = []
    for scope_id, entries in placed.items():
        entries.sort(key=lambda entry: (entry[0], entry[1]) + _sort_key(entry[2])[1:])
        for index, (_, _, item) in enumerate(entries):
            if item.position != index or home[item.id] != scope_id:
                updates.append(PositionUpdate(item.id, index, scope_id))
    return updates


# ============================================================================
# Per-scope locking
# ============================================================================


class ScopeLocks:
    """
    In-process mutex per (tenant, scope).

    Serialises read-compute-write cycles for the same scope inside one
    worker process. Separate worker processes are not coordinated. A lock
    is dropped once nobody holds or waits for it.
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._users: dict[tuple[str, str], int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def _acquire(self, key: tuple[str, str]) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold(self, tenant_id: Optional[str], *scopes: Scope) -> AsyncIterator[None]:
        # Fixed acquisition order so two cross-scope moves cannot deadlock
        tenant_key = tenant_id or "default"
        async with AsyncExitStack() as stack:
            for scope_key in sorted({scope.key for scope in scopes}):
                await stack.enter_async_context(self._acquire((tenant_key, scope_key)))
            yield


scope_locks = ScopeLocks()


# ============================================================================
# Applying plans
# ============================================================================


async def load_scope(executor: Executor, scope: Scope) -> list[PositionedItem]:
    """Read every item of a scope ordered for display."""
    table = scope.table
    stmt = scope.filter(
        select(table.c.id, table.c.position, table.c.created_at)
    ).order_by(table.c.position, table.c.created_at, table.c.id)
    rows = await executor.fetch_all(stmt)
    return [
        PositionedItem(row["id"], int(row["position"]), row.get("created_at"))
        for row in rows
    ]


async def ensure_parent_exists(executor: Executor, scope: Scope) -> None:
    """
    Raises:
        ItemNotFound: If the board or column owning the scope does not exist
    """
    parent = scope.parent_table
    if parent is None:
        return
    row = await executor.fetch_one(select(parent.c.id).where(parent.c.id == scope.parent_id))
    if row is None:
        raise ItemNotFound(scope.parent_id, parent.name)


async def apply_updates(
    executor: Executor,
    scope: Scope,
    updates: Sequence[PositionUpdate],
    extra_values: Optional[dict[str, dict[str, Any]]] = None,
) -> None:
    """
    Write position updates for a scope.

    Args:
        executor: Transaction executor
        scope: Scope the updates belong to
        updates: Planned updates
        extra_values: Optional per-id column values written with the position
    """
    table = scope.table
    now = datetime.utcnow()
    for u in updates:
        values: dict[str, Any] = {"position": u.position, "updated_at": now}
        if extra_values and u.id in extra_values:
            values.update(extra_values[u.id])
        await executor.execute(update(table).where(table.c.id == u.id).values(**values))


async def reorder_scope(
    handle: DatabaseHandle,
    scope: Scope,
    moving_id: str,
    target_position: int,
    moving_values: Optional[dict[str, Any]] = None,
) -> list[PositionUpdate]:
    """
    Move one item inside its scope atomically.

    Args:
        handle: Tenant database handle
        scope: Scope of the moving item
        moving_id: ID of the item being moved
        target_position: Desired position
        moving_values: Extra column values for the moving item

    Returns:
        The updates that were written (empty for a no-op)
    """
    async def work(executor: Executor) -> list[PositionUpdate]:
        items = await load_scope(executor, scope)
        if not any(item.id == moving_id for item in items):
            raise ItemNotFound(moving_id, scope.key)
        updates = plan_reorder(items, moving_id, target_position)
        extra = {moving_id: moving_values} if moving_values and updates else None
        await apply_updates(executor, scope, updates, extra)
        return updates

    async with scope_locks.hold(handle.tenant_id, scope):
        updates = await run_transaction(handle, work)

    logger.info(
        f"Reordered {moving_id} to {target_position} in {scope.key} "
        f"({len(updates)} position updates)"
    )
    return updates


async def renumber_scope(handle: DatabaseHandle, scope: Scope) -> list[PositionUpdate]:
    """
    Repair a scope to dense positions atomically. Idempotent.

    Raises:
        ItemNotFound: If the scope's parent board or column does not exist
    """
    async def work(executor: Executor) -> list[PositionUpdate]:
        await ensure_parent_exists(executor, scope)
        items = await load_scope(executor, scope)
        updates = compute_renumber(items)
        await apply_updates(executor, scope, updates)
        return updates

    async with scope_locks.hold(handle.tenant_id, scope):
        return await run_transaction(handle, work)


async def insert_into_scope(
    handle: DatabaseHandle,
    scope: Scope,
    values: dict[str, Any],
    position: Optional[int] = None,
) -> tuple[dict[str, Any], list[PositionUpdate]]:
    """
    Insert a new item, appending it or opening a slot at ``position``.

    Returns:
        Tuple of (inserted row values, updates applied to siblings)

    Raises:
        ItemConflict: If ``values`` carries an id that is already taken
    """
    async def work(executor: Executor) -> tuple[dict[str, Any], list[PositionUpdate]]:
        item_id = values.get("id")
        if item_id is not None:
            existing = await executor.fetch_one(
                select(scope.table.c.id).where(scope.table.c.id == item_id)
            )
            if existing is not None:
                raise ItemConflict(item_id, scope.table.name)
        items = await load_scope(executor, scope)
        new_position, updates = plan_insert(items, position)
        await apply_updates(executor, scope, updates)
        row = {**values, "position": new_position}
        await executor.execute(insert(scope.table).values(**row))
        return row, updates

    async with scope_locks.hold(handle.tenant_id, scope):
        return await run_transaction(handle, work)


async def delete_from_scope(
    handle: DatabaseHandle,
    scope: Scope,
    item_id: str,
    dependents: Sequence[Executable] = (),
) -> list[PositionUpdate]:
    """
    Delete an item and close the gap it leaves.

    The remaining siblings are renumbered from the rows read before the
    delete, so proxied batches (whose reads cannot see pending writes) plan
    the same updates as native transactions.

    Args:
        handle: Tenant database handle
        scope: Scope of the item
        item_id: ID of the item to delete
        dependents: Statements removing child rows, executed first

    Returns:
        Position updates applied to the remaining siblings

    Raises:
        ItemNotFound: If the item is not in the scope
    """
    table = scope.table

    async def work(executor: Executor) -> list[PositionUpdate]:
        items = await load_scope(executor, scope)
        if not any(item.id == item_id for item in items):
            raise ItemNotFound(item_id, scope.key)
        for stmt in dependents:
            await executor.execute(stmt)
        await executor.execute(delete(table).where(table.c.id == item_id))
        updates = compute_renumber(item for item in items if item.id != item_id)
        await apply_updates(executor, scope, updates)
        return updates

    async with scope_locks.hold(handle.tenant_id, scope):
        return await run_transaction(handle, work)


async def move_task(
    handle: DatabaseHandle,
    task_id: str,
    target_column_id: str,
    target_position: int,
) -> tuple[dict[str, Any], list[PositionUpdate]]:
    """
    Move a task to a position in another column (possibly on another board).

    A move into the task's own column is handled as a plain reorder.

    Returns:
        Tuple of (task row before the move, updates written)

    Raises:
        ItemNotFound: If the task or the target column does not exist
    """
    tasks = Task.__table__
    columns = BoardColumn.__table__

    task = await handle.fetch_one(select(tasks).where(tasks.c.id == task_id))
    if task is None:
        raise ItemNotFound(task_id, "tasks")
    target_column = await handle.fetch_one(
        select(columns.c.id, columns.c.board_id).where(columns.c.id == target_column_id)
    )
    if target_column is None:
        raise ItemNotFound(target_column_id, "columns")

    previous = {
        "pre_board_id": task["board_id"],
        "pre_column_id": task["column_id"],
    }
    source = task_scope(task["column_id"])

    if task["column_id"] == target_column_id:
        updates = await reorder_scope(handle, source, task_id, target_position, previous)
        return task, updates

    target = task_scope(target_column_id)

    async def work(executor: Executor) -> list[PositionUpdate]:
        source_items = await load_scope(executor, source)
        target_items = await load_scope(executor, target)
        updates = plan_move(source_items, target_items, task_id, target_position, target_column_id)
        extra = {
            task_id: {
                **previous,
                "column_id": target_column_id,
                "board_id": target_column["board_id"],
            }
        }
        await apply_updates(executor, source, updates, extra)
        return updates

    async with scope_locks.hold(handle.tenant_id, source, target):
        updates = await run_transaction(handle, work)

    logger.info(f"Moved task {task_id} from column {task['column_id']} to {target_column_id}")
    return task, updates


async def update_task_positions(
    handle: DatabaseHandle,
    requested: dict[str, tuple[Optional[str], int]],
) -> tuple[list[PositionUpdate], dict[str, str]]:
    """
    Apply a drag-and-drop result covering several tasks in one transaction.

    Args:
        handle: Tenant database handle
        requested: Task id to ``(target column id or None to stay, position)``

    Returns:
        Tuple of (updates written, board id of every affected column)

    Raises:
        ItemNotFound: If a task or a target column does not exist
    """
    tasks = Task.__table__
    columns = BoardColumn.__table__

    current = {
        row["id"]: row
        for row in await handle.fetch_all(
            select(tasks.c.id, tasks.c.column_id, tasks.c.board_id)
            .where(tasks.c.id.in_(list(requested)))
        )
    }
    missing = [task_id for task_id in requested if task_id not in current]
    if missing:
        raise ItemNotFound(missing[0], "tasks")

    targets = {
        task_id: (column_id or current[task_id]["column_id"], position)
        for task_id, (column_id, position) in requested.items()
    }
    column_ids = {row["column_id"] for row in current.values()}
    column_ids.update(column_id for column_id, _ in targets.values())
    column_boards = {
        row["id"]: row["board_id"]
        for row in await handle.fetch_all(
            select(columns.c.id, columns.c.board_id).where(columns.c.id.in_(list(column_ids)))
        )
    }
    unknown = sorted(column_ids - set(column_boards))
    if unknown:
        raise ItemNotFound(unknown[0], "columns")

    scopes = [task_scope(column_id) for column_id in sorted(column_ids)]

    async def work(executor: Executor) -> list[PositionUpdate]:
        loaded = {scope.parent_id: await load_scope(executor, scope) for scope in scopes}
        updates = plan_positions(loaded, targets)
        extra: dict[str, dict[str, Any]] = {}
        for u in updates:
            values: dict[str, Any] = {"column_id": u.scope_id, "board_id": column_boards[u.scope_id]}
            if u.id in current:
                values["pre_board_id"] = current[u.id]["board_id"]
                values["pre_column_id"] = current[u.id]["column_id"]
            extra[u.id] = values
        await apply_updates(executor, scopes[0], updates, extra)
        return updates

    async with scope_locks.hold(handle.tenant_id, *scopes):
        updates = await run_transaction(handle, work)

    logger.info(
        f"Updated positions of {len(requested)} tasks across {len(scopes)} columns "
        f"({len(updates)} position updates)"
    )
    return updates, column_boards


__all__ = [
    "PositionedItem",
    "PositionUpdate",
    "Scope",
    "ScopeLocks",
    "apply_updates",
    "board_scope",
    "column_scope",
    "compute_insert",
    "compute_move",
    "compute_renumber",
    "compute_reorder",
    "delete_from_scope",
    "ensure_parent_exists",
    "insert_into_scope",
    "is_dense",
    "load_scope",
    "move_task",
    "plan_insert",
    "plan_move",
    "plan_positions",
    "plan_reorder",
    "renumber_scope",
    "reorder_scope",
    "scope_locks",
    "task_scope",
    "update_task_positions",
]
