"""Request schemas for reorder, renumber and move operations."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReorderRequest(BaseModel):
    """
    Move one item to a new position inside its scope.

    ``scopeId`` is the parent of the item: the board ID for columns, the
    column ID for tasks. Boards share one scope per tenant, so board reorders
    accept any value.
    """

    model_config = ConfigDict(populate_by_name=True)

    moving_id: str = Field(..., alias="movingId", min_length=1)
    target_position: int = Field(..., alias="targetPosition", ge=0)
    scope_id: str = Field(..., alias="scopeId")


class RenumberRequest(BaseModel):
    """Repair positions of a whole scope."""

    model_config = ConfigDict(populate_by_name=True)

    scope_id: str = Field(..., alias="scopeId", min_length=1)


class TaskMoveRequest(BaseModel):
    """Move a task into another column (possibly on another board)."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(..., alias="taskId", min_length=1)
    target_column_id: str = Field(..., alias="targetColumnId", min_length=1)
    target_position: int = Field(..., alias="targetPosition", ge=0)


class OperationResult(BaseModel):
    """Acknowledgement of a position change."""

    message: str
    updated: int = Field(0, description="Number of rows whose position changed")


class TaskPositionUpdate(BaseModel):
    """Desired position of one task; ``columnId`` omitted keeps its column."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(..., alias="taskId", min_length=1)
    position: int = Field(..., ge=0)
    column_id: Optional[str] = Field(None, alias="columnId", min_length=1)


class BatchPositionsRequest(BaseModel):
    """Several task placements applied as one drag-and-drop result."""

    updates: List[TaskPositionUpdate] = Field(..., min_length=1)
