"""Columns API endpoints.

Columns are ordered per board. Any authenticated user may manage them.
Reorder and delete publish ``column-reordered`` with the full list of
``{id, position}`` pairs of the board so clients can resync in one step.
"""

from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from ..schemas.column import ColumnCreate, ColumnResponse, ColumnUpdate
from ..schemas.ordering import OperationResult, RenumberRequest, ReorderRequest
from ..services import column_service
from ..services.auth_service import Principal, get_current_principal
from ..services.event_publisher import EventPublisher, get_event_publisher
from ..services.ordering_service import column_scope, renumber_scope, reorder_scope
from ..services.tenant_service import TenantContext, get_tenant

router = APIRouter(tags=["Columns"])


async def _get_column_or_404(tenant: TenantContext, column_id: str) -> dict:
    column = await column_service.get_column(tenant.db, column_id)
    if column is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Column with ID {column_id} not found",
        )
    return column


async def _publish_column_order(
    publisher: EventPublisher,
    tenant: TenantContext,
    board_id: str,
    principal: Principal,
    column_id: Optional[str] = None,
    new_position: Optional[int] = None,
) -> None:
    await publisher.publish(
        "column-reordered",
        {
            "boardId": board_id,
            "columnId": column_id,
            "newPosition": new_position,
            "columns": await column_service.column_positions(tenant.db, board_id),
            "updatedBy": principal.user_id,
        },
        tenant.tenant_id,
    )


@router.get(
    "/api/boards/{board_id}/columns",
    response_model=List[ColumnResponse],
    summary="List columns of a board",
)
async def list_columns(
    board_id: str,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
) -> List[ColumnResponse]:
    rows = await column_service.list_columns(tenant.db, board_id)
    return [ColumnResponse.model_validate(row) for row in rows]


@router.post(
    "/api/columns",
    response_model=ColumnResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a column",
    responses={
        400: {"description": "Position out of range"},
        404: {"description": "Board not found"},
    },
)
async def create_column(
    body: ColumnCreate,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> ColumnResponse:
    row, shifted = await column_service.create_column(
        tenant.db,
        board_id=body.board_id,
        title=body.title,
        column_id=body.id,
        position=body.position,
        is_finished=body.is_finished,
        is_archived=body.is_archived,
    )
    column = ColumnResponse.model_validate(row)

    await publisher.publish(
        "column-created",
        {
            "boardId": column.board_id,
            "column": column.model_dump(mode="json"),
            "updatedBy": principal.user_id,
        },
        tenant.tenant_id,
    )
    if shifted:
        await _publish_column_order(
            publisher, tenant, column.board_id, principal, column.id, column.position
        )
    return column


@router.put(
    "/api/columns/{column_id}",
    response_model=ColumnResponse,
    summary="Update a column",
    responses={404: {"description": "Column not found"}},
)
async def update_column(
    column_id: str,
    body: ColumnUpdate,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> ColumnResponse:
    row = await column_service.update_column(
        tenant.db, column_id, body.model_dump(exclude_unset=True)
    )
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Column with ID {column_id} not found",
        )
    column = ColumnResponse.model_validate(row)
    await publisher.publish(
        "column-updated",
        {
            "boardId": column.board_id,
            "column": column.model_dump(mode="json"),
            "updatedBy": principal.user_id,
        },
        tenant.tenant_id,
    )
    return column


@router.delete(
    "/api/columns/{column_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a column",
    description="Delete a column and its tasks; later columns move left.",
    responses={404: {"description": "Column not found"}},
)
async def delete_column(
    column_id: str,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> None:
    column = await _get_column_or_404(tenant, column_id)
    updates = await column_service.delete_column(tenant.db, column)

    await publisher.publish(
        "column-deleted",
        {"boardId": column["board_id"], "columnId": column_id, "updatedBy": principal.user_id},
        tenant.tenant_id,
    )
    if updates:
        await _publish_column_order(publisher, tenant, column["board_id"], principal)


# ============================================================================
# Ordering
# ============================================================================


@router.post(
    "/api/columns/reorder",
    response_model=OperationResult,
    summary="Reorder a column",
    description="Move a column to `targetPosition` on the board given by `scopeId`.",
    responses={
        400: {"description": "Target position out of range"},
        404: {"description": "Column not found on that board"},
    },
)
async def reorder_column(
    body: ReorderRequest,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> OperationResult:
    updates = await reorder_scope(
        tenant.db, column_scope(body.scope_id), body.moving_id, body.target_position
    )
    if updates:
        await _publish_column_order(
            publisher, tenant, body.scope_id, principal, body.moving_id, body.target_position
        )
    return OperationResult(message="Column reordered successfully", updated=len(updates))


@router.post(
    "/api/columns/renumber",
    response_model=OperationResult,
    summary="Renumber columns of a board",
)
async def renumber_columns(
    body: RenumberRequest,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> OperationResult:
    updates = await renumber_scope(tenant.db, column_scope(body.scope_id))
    if updates:
        await _publish_column_order(publisher, tenant, body.scope_id, principal)
    return OperationResult(message="Columns renumbered successfully", updated=len(updates))
