"""Response model: a file or link contributed toward a request."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from database import Base


class Response(Base):
    """Contribution toward a DocumentRequest; rated at most once by the owner."""

    __tablename__ = "responses"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id = Column(String, ForeignKey("document_requests.id"), nullable=False, index=True)
    contributor_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(String, nullable=False)  # file, link
    file_path = Column(String, nullable=True)
    file_name = Column(String, nullable=True)
    file_size = Column(Integer, nullable=True)
    link_url = Column(String, nullable=True)
    message = Column(Text, nullable=True)
    rating = Column(String, nullable=True)  # best_answer, incorrect
    points_earned = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    rated_at = Column(DateTime(timezone=True), nullable=True)

    request = relationship("DocumentRequest", back_populates="responses")
