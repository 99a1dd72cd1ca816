"""Tasks API endpoints.

Tasks are ordered per column. Position changes (create at a position,
reorder, move, delete) publish ``tasks-positions-updated`` with
``[{taskId, position, columnId}]`` after the entity event.
"""

from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from ..exceptions import ItemNotFound
from ..schemas.ordering import (
    BatchPositionsRequest,
    OperationResult,
    RenumberRequest,
    ReorderRequest,
    TaskMoveRequest,
)
from ..schemas.task import TaskCreate, TaskResponse, TaskUpdate
from ..services import task_service
from ..services.auth_service import Principal, get_current_principal
from ..services.event_publisher import EventPublisher, get_event_publisher
from ..services.ordering_service import (
    PositionUpdate,
    move_task as move_task_between_columns,
    renumber_scope,
    reorder_scope,
    task_scope,
    update_task_positions,
)
from ..services.tenant_service import TenantContext, get_tenant

router = APIRouter(tags=["Tasks"])


async def _get_task_or_404(tenant: TenantContext, task_id: str) -> dict:
    task = await task_service.get_task(tenant.db, task_id)
    if task is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task with ID {task_id} not found",
        )
    return task


async def _publish_positions(
    publisher: EventPublisher,
    tenant: TenantContext,
    board_id: str,
    column_id: Optional[str],
    updates: List[PositionUpdate],
) -> None:
    if not updates:
        return
    await publisher.publish(
        "tasks-positions-updated",
        {
            "boardId": board_id,
            "updates": task_service.position_updates_payload(updates, column_id),
        },
        tenant.tenant_id,
    )


async def _publish_task(
    publisher: EventPublisher,
    tenant: TenantContext,
    event_name: str,
    task: TaskResponse,
    principal: Principal,
) -> None:
    await publisher.publish(
        event_name,
        {
            "boardId": task.board_id,
            "columnId": task.column_id,
            "taskId": task.id,
            "task": task.model_dump(mode="json"),
            "updatedBy": principal.user_id,
        },
        tenant.tenant_id,
    )


# ============================================================================
# CRUD
# ============================================================================


@router.get(
    "/api/columns/{column_id}/tasks",
    response_model=List[TaskResponse],
    summary="List tasks of a column",
)
async def list_tasks(
    column_id: str,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
) -> List[TaskResponse]:
    rows = await task_service.list_tasks(tenant.db, column_id)
    return [TaskResponse.model_validate(row) for row in rows]


@router.get(
    "/api/tasks/{task_id}",
    response_model=TaskResponse,
    summary="Get a task",
    responses={404: {"description": "Task not found"}},
)
async def get_task(
    task_id: str,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
) -> TaskResponse:
    return TaskResponse.model_validate(await _get_task_or_404(tenant, task_id))


@router.post(
    "/api/tasks",
    response_model=TaskResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a task",
    responses={
        400: {"description": "Position out of range"},
        404: {"description": "Column not found"},
    },
)
async def create_task(
    body: TaskCreate,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> TaskResponse:
    row, shifted = await task_service.create_task(
        tenant.db,
        column_id=body.column_id,
        title=body.title,
        description=body.description,
        ticket=body.ticket,
        member_id=body.member_id,
        task_id=body.id,
        position=body.position,
    )
    task = TaskResponse.model_validate(row)

    await _publish_task(publisher, tenant, "task-created", task, principal)
    await _publish_positions(publisher, tenant, task.board_id, task.column_id, shifted)
    return task


@router.put(
    "/api/tasks/{task_id}",
    response_model=TaskResponse,
    summary="Update a task",
    responses={404: {"description": "Task not found"}},
)
async def update_task(
    task_id: str,
    body: TaskUpdate,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> TaskResponse:
    row = await task_service.update_task(
        tenant.db, task_id, body.model_dump(exclude_unset=True)
    )
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task with ID {task_id} not found",
        )
    task = TaskResponse.model_validate(row)
    await _publish_task(publisher, tenant, "task-updated", task, principal)
    return task


@router.delete(
    "/api/tasks/{task_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a task",
    description="Delete a task; the remaining tasks of its column are renumbered.",
    responses={404: {"description": "Task not found"}},
)
async def delete_task(
    task_id: str,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> None:
    task = await _get_task_or_404(tenant, task_id)
    updates = await task_service.delete_task(tenant.db, task)

    await publisher.publish(
        "task-deleted",
        {
            "boardId": task["board_id"],
            "columnId": task["column_id"],
            "taskId": task_id,
            "updatedBy": principal.user_id,
        },
        tenant.tenant_id,
    )
    await _publish_positions(publisher, tenant, task["board_id"], task["column_id"], updates)


# ============================================================================
# Ordering
# ============================================================================


@router.post(
    "/api/tasks/reorder",
    response_model=OperationResult,
    summary="Reorder a task inside its column",
    description="Move a task to `targetPosition` in the column given by `scopeId`.",
    responses={
        400: {"description": "Target position out of range"},
        404: {"description": "Task not found in that column"},
    },
)
async def reorder_task(
    body: ReorderRequest,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> OperationResult:
    task = await task_service.get_task(tenant.db, body.moving_id)
    if task is None or task["column_id"] != body.scope_id:
        raise ItemNotFound(body.moving_id, f"column {body.scope_id}")

    updates = await reorder_scope(
        tenant.db,
        task_scope(body.scope_id),
        body.moving_id,
        body.target_position,
        moving_values={
            "pre_board_id": task["board_id"],
            "pre_column_id": task["column_id"],
        },
    )
    if updates:
        moved = TaskResponse.model_validate(await _get_task_or_404(tenant, body.moving_id))
        await _publish_task(publisher, tenant, "task-updated", moved, principal)
        await _publish_positions(publisher, tenant, moved.board_id, moved.column_id, updates)
    return OperationResult(message="Task reordered successfully", updated=len(updates))


@router.post(
    "/api/tasks/move",
    response_model=TaskResponse,
    summary="Move a task to another column",
    responses={
        400: {"description": "Target position out of range"},
        404: {"description": "Task or target column not found"},
    },
)
async def move_task(
    body: TaskMoveRequest,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> TaskResponse:
    before, updates = await move_task_between_columns(
        tenant.db, body.task_id, body.target_column_id, body.target_position
    )
    task = TaskResponse.model_validate(await _get_task_or_404(tenant, body.task_id))

    await _publish_task(publisher, tenant, "task-updated", task, principal)
    if before["board_id"] == task.board_id:
        await _publish_positions(publisher, tenant, task.board_id, before["column_id"], updates)
    else:
        # Each board room only hears about its own columns
        await _publish_positions(
            publisher, tenant, before["board_id"], before["column_id"],
            [u for u in updates if u.scope_id is None],
        )
        await _publish_positions(
            publisher, tenant, task.board_id, task.column_id,
            [u for u in updates if u.scope_id is not None],
        )
    return task


@router.post(
    "/api/tasks/renumber",
    response_model=OperationResult,
    summary="Renumber tasks of a column",
)
async def renumber_tasks(
    body: RenumberRequest,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> OperationResult:
    updates = await renumber_scope(tenant.db, task_scope(body.scope_id))
    if updates:
        tasks = await task_service.list_tasks(tenant.db, body.scope_id)
        board_id = tasks[0]["board_id"] if tasks else None
        await _publish_positions(publisher, tenant, board_id, body.scope_id, updates)
    return OperationResult(message="Tasks renumbered successfully", updated=len(updates))


@router.post(
    "/api/tasks/batch-update-positions",
    response_model=OperationResult,
    summary="Apply a multi-task drag-and-drop result",
    description=(
        "Place every listed task at its position, optionally in another column. "
        "All affected columns are renumbered in the same transaction."
    ),
    responses={404: {"description": "Task or column not found"}},
)
async def batch_update_positions(
    body: BatchPositionsRequest,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> OperationResult:
    # Later entries for the same task win
    requested = {u.task_id: (u.column_id, u.position) for u in body.updates}
    updates, column_boards = await update_task_positions(tenant.db, requested)

    by_board: dict[str, List[PositionUpdate]] = {}
    for u in updates:
        by_board.setdefault(column_boards[u.scope_id], []).append(u)
    for board_id, board_updates in by_board.items():
        await _publish_positions(publisher, tenant, board_id, None, board_updates)

    return OperationResult(message="Task positions updated successfully", updated=len(updates))
