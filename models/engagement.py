"""Like and SavedRequest membership models."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class Like(Base):
    __tablename__ = "likes"
    __table_args__ = (UniqueConstraint("user_id", "request_id", name="uq_likes_user_request"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    request_id = Column(String, ForeignKey("document_requests.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SavedRequest(Base):
    __tablename__ = "saved_requests"
    __table_args__ = (UniqueConstraint("user_id", "request_id", name="uq_saved_requests_user_request"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    request_id = Column(String, ForeignKey("document_requests.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
