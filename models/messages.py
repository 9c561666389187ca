"""Message model for thread contents."""
from uuid import uuid4

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Uuid

from .threads import Base, utcnow


class Message(Base):
    """
    SQLAlchemy model for a single conversation turn.

    The id may be generated by the client so that locally held messages and
    stored rows share the same identity.
    """
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    thread_id = Column(Uuid, ForeignKey("threads.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(16), nullable=False)  # user | assistant
    content = Column(Text, nullable=False, default="")
    selected_text = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
