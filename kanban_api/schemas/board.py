"""Pydantic schemas for boards."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class BoardBase(BaseModel):
    """Base schema with common board fields."""

    title: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Board title",
        examples=["Sprint 42", "Marketing"],
    )
    project: Optional[str] = Field(
        None,
        max_length=255,
        description="Optional project label",
    )


class BoardCreate(BoardBase):
    """Schema for creating a board. Appended at the end unless ``position`` is set."""

    id: Optional[str] = Field(
        None,
        max_length=36,
        description="Client-generated ID (UUID string); generated when omitted",
    )
    position: Optional[int] = Field(
        None,
        ge=0,
        description="Insert position; later boards shift up",
    )


class BoardUpdate(BaseModel):
    """Schema for updating a board."""

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    project: Optional[str] = Field(None, max_length=255)


class BoardResponse(BoardBase):
    """Schema for board response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    position: int
    created_at: datetime
    updated_at: datetime
