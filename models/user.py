"""User model: public profile plus points economy state."""

from sqlalchemy import CheckConstraint, Column, String, Text, DateTime, Integer
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Registered member of the platform."""

    __tablename__ = "users"
    __table_args__ = (CheckConstraint("points >= 0", name="ck_users_points_non_negative"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    full_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    country = Column(String, nullable=True)
    institution = Column(String, nullable=True)
    specialty = Column(String, nullable=True)
    bio = Column(Text, nullable=True)
    website = Column(String, nullable=True)
    points = Column(Integer, nullable=False, default=0)
    last_checkin_at = Column(DateTime(timezone=True), nullable=True)
    role = Column(String, nullable=False, default="user")  # user, moderator, admin
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    requests = relationship("DocumentRequest", back_populates="owner")
    ledger_entries = relationship("PointsLedger", back_populates="user")
