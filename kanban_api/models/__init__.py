"""SQLAlchemy ORM models package."""

from .board import Board
from .column import BoardColumn
from .setting import Setting
from .task import Task

__all__ = [
    "Board",
    "BoardColumn",
    "Setting",
    "Task",
]
