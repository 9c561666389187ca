"""User model for authentication."""
from uuid import uuid4

from sqlalchemy import Column, String, DateTime, Boolean, Uuid

from .threads import Base, utcnow


class User(Base):
    """
    SQLAlchemy model for users.

    Stores user authentication and profile information.
    """
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    username = Column(String, unique=True, nullable=False, index=True)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
