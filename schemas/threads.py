"""Pydantic schemas for thread-related requests and responses."""
from datetime import datetime
from typing import Optional, List
from uuid import UUID

from pydantic import Field, model_validator

from .base import CamelModel
from .messages import MessageResponse


class ThreadCreate(CamelModel):
    """Schema for creating a thread, either a root or a branch."""
    title: Optional[str] = Field(default="New Chat", max_length=255)
    selected_context: Optional[str] = None
    parent_thread_id: Optional[UUID] = None
    parent_message_id: Optional[UUID] = None

    @model_validator(mode="after")
    def anchor_requires_parent(self) -> "ThreadCreate":
        if self.parent_message_id is not None and self.parent_thread_id is None:
            raise ValueError("parentMessageId requires parentThreadId")
        return self


class ThreadUpdate(CamelModel):
    """Schema for renaming a thread."""
    title: str = Field(..., min_length=1, max_length=255)


class ThreadResponse(CamelModel):
    """Schema for thread responses."""
    id: UUID
    user_id: str
    title: str
    parent_thread_id: Optional[UUID] = None
    parent_message_id: Optional[UUID] = None
    selected_context: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ThreadSummary(CamelModel):
    """Root thread entry for the sidebar listing."""
    id: UUID
    title: str
    updated_at: datetime
    child_count: int = 0


class ChildThreadResponse(CamelModel):
    """Direct child of a thread, with its own child count."""
    id: UUID
    title: str
    selected_context: Optional[str] = None
    parent_message_id: Optional[UUID] = None
    created_at: datetime
    child_count: int = 0


class Breadcrumb(CamelModel):
    id: UUID
    title: str
    selected_context: Optional[str] = None


class ThreadDetailResponse(ThreadResponse):
    """A thread with its messages, direct branches and ancestor path."""
    messages: List[MessageResponse] = Field(default_factory=list)
    child_threads: List[ChildThreadResponse] = Field(default_factory=list)
    breadcrumbs: List[Breadcrumb] = Field(default_factory=list)


class BranchCreate(CamelModel):
    """Schema for branching a thread from a highlighted span."""
    selected_text: str = Field(..., min_length=1)
    parent_message_id: Optional[UUID] = None
    # Without an explicit anchor, hang the branch off the latest assistant message
    anchor_to_latest: bool = True


class BranchResponse(ThreadResponse):
    child_count: int = 0
