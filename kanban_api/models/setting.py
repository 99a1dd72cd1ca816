"""Per-tenant key/value settings model."""

from datetime import datetime

from sqlalchemy import Column, DateTime, String, Text

from ..database import Base


class Setting(Base):
    """Instance-level setting such as INSTANCE_STATUS or ADMIN_PORTAL_URL."""

    __tablename__ = "settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )
