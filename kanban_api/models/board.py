"""Board SQLAlchemy model."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String

from ..database import Base


class Board(Base):
    """
    Board model. Boards are ordered globally inside a tenant.

    Attributes:
        id: Opaque string identifier (UUID string)
        title: Board title
        project: Optional project label
        position: Dense zero-based position among all boards
        created_at: Creation time, used as renumber tie-break
        updated_at: Last modification time
    """

    __tablename__ = "boards"

    id = Column(String(36), primary_key=True)
    title = Column(String(255), nullable=False)
    project = Column(String(255), nullable=True)
    position = Column(Integer, nullable=False, default=0, index=True)

    # Timestamps
    created_at = Column(
        DateTime,
        default=datetime.utcnow,
        nullable=False,
    )
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Board(id={self.id}, position={self.position})>"
