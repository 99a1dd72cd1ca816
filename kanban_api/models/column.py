"""Board column SQLAlchemy model."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String

from ..database import Base


class BoardColumn(Base):
    """
    Column of a board. Positions are dense per ``board_id``.

    Attributes:
        id: Opaque string identifier (UUID string)
        board_id: FK to the owning board
        title: Column title
        position: Dense zero-based position inside the board
        is_finished: Tasks in this column count as done
        is_archived: Hidden from the board view
    """

    __tablename__ = "columns"

    id = Column(String(36), primary_key=True)
    board_id = Column(
        String(36),
        ForeignKey("boards.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = Column(String(255), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    is_finished = Column(Boolean, nullable=False, default=False)
    is_archived = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<BoardColumn(id={self.id}, board_id={self.board_id}, position={self.position})>"
