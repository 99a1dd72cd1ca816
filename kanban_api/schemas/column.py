"""Pydantic schemas for board columns."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ColumnCreate(BaseModel):
    """Schema for creating a column on a board."""

    board_id: str = Field(..., description="ID of the owning board")
    title: str = Field(..., min_length=1, max_length=255, examples=["To Do", "Done"])
    id: Optional[str] = Field(None, max_length=36)
    position: Optional[int] = Field(None, ge=0)
    is_finished: bool = False
    is_archived: bool = False


class ColumnUpdate(BaseModel):
    """Schema for updating a column. Position changes go through reorder."""

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    is_finished: Optional[bool] = None
    is_archived: Optional[bool] = None


class ColumnResponse(BaseModel):
    """Schema for column response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    board_id: str
    title: str
    position: int
    is_finished: bool
    is_archived: bool
    created_at: datetime
    updated_at: datetime
