"""Notification model for the user inbox."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text

from database import Base


class Notification(Base):
    """Inbox entry generated by a domain event."""

    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False)  # response, comment, points, like
    title = Column(String, nullable=False)
    message = Column(Text, nullable=True)
    reference_id = Column(String, nullable=True, index=True)
    actor_id = Column(String, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
