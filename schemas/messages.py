"""Pydantic schemas for message requests and responses."""
from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from .base import CamelModel

Role = Literal["user", "assistant"]


class MessageCreate(CamelModel):
    """Schema for storing a conversation turn."""
    thread_id: UUID
    role: Role
    content: str
    selected_text: Optional[str] = None
    # Client-generated id, keeps local and stored messages in sync
    id: Optional[UUID] = None


class MessageResponse(CamelModel):
    id: UUID
    thread_id: UUID
    role: Role
    content: str
    selected_text: Optional[str] = None
    created_at: datetime
