"""Pydantic schemas package for request/response validation."""

from .admin_portal import InstanceInfo, SettingEntry, SettingValue
from .board import BoardCreate, BoardResponse, BoardUpdate
from .column import ColumnCreate, ColumnResponse, ColumnUpdate
from .ordering import (
    BatchPositionsRequest,
    OperationResult,
    RenumberRequest,
    ReorderRequest,
    TaskMoveRequest,
    TaskPositionUpdate,
)
from .task import TaskCreate, TaskResponse, TaskUpdate

__all__ = [
    "BatchPositionsRequest",
    "BoardCreate",
    "BoardResponse",
    "BoardUpdate",
    "ColumnCreate",
    "ColumnResponse",
    "ColumnUpdate",
    "InstanceInfo",
    "OperationResult",
    "RenumberRequest",
    "ReorderRequest",
    "SettingEntry",
    "SettingValue",
    "TaskCreate",
    "TaskMoveRequest",
    "TaskPositionUpdate",
    "TaskResponse",
    "TaskUpdate",
]
