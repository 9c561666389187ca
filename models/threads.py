"""Thread model for conversation management."""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Uuid
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Thread(Base):
    """
    SQLAlchemy model for conversation threads.

    A thread is either a root conversation or a branch of another thread.
    Branches point at their parent thread, at the anchor message inside it,
    and carry the highlighted text that motivated them.
    """
    __tablename__ = "threads"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String(255), nullable=False, default="New Chat")
    parent_thread_id = Column(
        Uuid, ForeignKey("threads.id", ondelete="CASCADE"), nullable=True, index=True
    )
    # Checked against the parent's messages on creation, see ThreadService
    parent_message_id = Column(Uuid, nullable=True)
    selected_context = Column(Text, nullable=True)  # Set once, never updated
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
