"""Pydantic schemas for tasks."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TaskBase(BaseModel):
    """Base schema with common task fields."""

    title: str = Field(
        ...,
        min_length=1,
        max_length=500,
        description="Task title",
        examples=["Fix login redirect"],
    )
    description: Optional[str] = Field(None, description="Task description")
    ticket: Optional[str] = Field(None, max_length=50, examples=["TASK-00042"])
    member_id: Optional[str] = Field(None, description="Assigned member")


class TaskCreate(TaskBase):
    """Schema for creating a task. ``board_id`` is taken from the column."""

    column_id: str = Field(..., description="ID of the column")
    id: Optional[str] = Field(None, max_length=36)
    position: Optional[int] = Field(None, ge=0)


class TaskUpdate(BaseModel):
    """Schema for updating task fields. Moves go through reorder/move."""

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    ticket: Optional[str] = Field(None, max_length=50)
    member_id: Optional[str] = None


class TaskResponse(TaskBase):
    """Schema for task response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    board_id: str
    column_id: str
    position: int
    pre_board_id: Optional[str] = None
    pre_column_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
