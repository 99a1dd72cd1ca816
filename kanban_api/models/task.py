"""Task SQLAlchemy model."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text

from ..database import Base


class Task(Base):
    """
    Task card. Positions are dense per ``column_id``.

    ``pre_board_id`` / ``pre_column_id`` remember where the task was before
    its last move so clients can animate the transition.
    """

    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_column_position", "column_id", "position"),
    )

    id = Column(String(36), primary_key=True)
    board_id = Column(
        String(36),
        ForeignKey("boards.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    column_id = Column(
        String(36),
        ForeignKey("columns.id", ondelete="CASCADE"),
        nullable=False,
    )

    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    ticket = Column(String(50), nullable=True)
    member_id = Column(String(36), nullable=True)
    position = Column(Integer, nullable=False, default=0)

    # Previous location, set on every reorder/move
    pre_board_id = Column(String(36), nullable=True)
    pre_column_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Task(id={self.id}, column_id={self.column_id}, position={self.position})>"
