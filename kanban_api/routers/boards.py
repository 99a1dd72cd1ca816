"""Boards API endpoints.

Boards form one ordered list per tenant. Reading requires authentication;
creating, editing, deleting and reordering boards requires the admin role.
Every mutation publishes a ``board-*`` event on the tenant channel.
"""

from typing import Annotated, List

from fastapi import APIRouter, Depends, HTTPException, status

from ..schemas.board import BoardCreate, BoardResponse, BoardUpdate
from ..schemas.ordering import OperationResult, ReorderRequest
from ..services import board_service
from ..services.auth_service import Principal, get_current_principal, require_admin
from ..services.event_publisher import EventPublisher, get_event_publisher
from ..services.ordering_service import board_scope, renumber_scope, reorder_scope
from ..services.tenant_service import TenantContext, get_tenant

router = APIRouter(tags=["Boards"])


async def _board_positions(tenant: TenantContext) -> list[dict]:
    boards = await board_service.list_boards(tenant.db)
    return [{"id": b["id"], "position": b["position"]} for b in boards]


# ============================================================================
# CRUD
# ============================================================================


@router.get(
    "/api/boards",
    response_model=List[BoardResponse],
    summary="List boards",
    description="Get every board of the tenant in display order.",
)
async def list_boards(
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(get_current_principal)],
) -> List[BoardResponse]:
    rows = await board_service.list_boards(tenant.db)
    return [BoardResponse.model_validate(row) for row in rows]


@router.post(
    "/api/boards",
    response_model=BoardResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a board",
    responses={
        201: {"description": "Board created successfully"},
        400: {"description": "Position out of range"},
        403: {"description": "Admin role required"},
    },
)
async def create_board(
    body: BoardCreate,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(require_admin)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> BoardResponse:
    row, shifted = await board_service.create_board(
        tenant.db,
        title=body.title,
        project=body.project,
        board_id=body.id,
        position=body.position,
    )
    board = BoardResponse.model_validate(row)

    await publisher.publish(
        "board-created",
        {"boardId": board.id, "board": board.model_dump(mode="json"), "updatedBy": principal.user_id},
        tenant.tenant_id,
    )
    if shifted:
        await publisher.publish(
            "board-reordered",
            {"boardId": board.id, "newPosition": board.position, "boards": await _board_positions(tenant)},
            tenant.tenant_id,
        )
    return board


@router.put(
    "/api/boards/{board_id}",
    response_model=BoardResponse,
    summary="Update a board",
    responses={
        403: {"description": "Admin role required"},
        404: {"description": "Board not found"},
    },
)
async def update_board(
    board_id: str,
    body: BoardUpdate,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(require_admin)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> BoardResponse:
    row = await board_service.update_board(
        tenant.db, board_id, body.model_dump(exclude_unset=True)
    )
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Board with ID {board_id} not found",
        )
    board = BoardResponse.model_validate(row)
    await publisher.publish(
        "board-updated",
        {"boardId": board.id, "board": board.model_dump(mode="json"), "updatedBy": principal.user_id},
        tenant.tenant_id,
    )
    return board


@router.delete(
    "/api/boards/{board_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a board",
    description="Delete a board with its columns and tasks; later boards move up.",
    responses={
        403: {"description": "Admin role required"},
        404: {"description": "Board not found"},
    },
)
async def delete_board(
    board_id: str,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(require_admin)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> None:
    updates = await board_service.delete_board(tenant.db, board_id)

    await publisher.publish(
        "board-deleted",
        {"boardId": board_id, "updatedBy": principal.user_id},
        tenant.tenant_id,
    )
    if updates:
        await publisher.publish(
            "board-reordered",
            {"boards": await _board_positions(tenant)},
            tenant.tenant_id,
        )


# ============================================================================
# Ordering
# ============================================================================


@router.post(
    "/api/boards/reorder",
    response_model=OperationResult,
    summary="Reorder a board",
    responses={
        400: {"description": "Target position out of range"},
        403: {"description": "Admin role required"},
        404: {"description": "Board not found"},
    },
)
async def reorder_board(
    body: ReorderRequest,
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(require_admin)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> OperationResult:
    updates = await reorder_scope(
        tenant.db, board_scope(), body.moving_id, body.target_position
    )
    if updates:
        await publisher.publish(
            "board-reordered",
            {
                "boardId": body.moving_id,
                "newPosition": body.target_position,
                "boards": await _board_positions(tenant),
                "updatedBy": principal.user_id,
            },
            tenant.tenant_id,
        )
    return OperationResult(message="Board reordered successfully", updated=len(updates))


@router.post(
    "/api/boards/renumber",
    response_model=OperationResult,
    summary="Renumber boards",
    description="Repair board positions to a dense 0..N-1 sequence.",
)
async def renumber_boards(
    tenant: Annotated[TenantContext, Depends(get_tenant)],
    principal: Annotated[Principal, Depends(require_admin)],
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> OperationResult:
    updates = await renumber_scope(tenant.db, board_scope())
    if updates:
        await publisher.publish(
            "board-reordered",
            {"boards": await _board_positions(tenant), "updatedBy": principal.user_id},
            tenant.tenant_id,
        )
    return OperationResult(message="Boards renumbered successfully", updated=len(updates))
