"""DocumentRequest model: a points-backed ask for a document."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from database import Base


class DocumentRequest(Base):
    """Standing offer of points in exchange for a paper or book."""

    __tablename__ = "document_requests"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=False, index=True)
    doi = Column(String, nullable=True)
    is_urgent = Column(Boolean, nullable=False, default=False)
    points_offered = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="active", index=True)  # active, completed, closed_incorrect, expired
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    owner = relationship("User", back_populates="requests")
    responses = relationship("Response", back_populates="request")
    comments = relationship("Comment", back_populates="request")
