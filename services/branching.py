"""Turns a highlighted span of a conversation into a new branch thread."""
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from config import BRANCH_TITLE_LENGTH
from models.threads import Thread
from schemas.threads import ThreadCreate
from services.messages import MessageService
from services.threads import ThreadService

logger = logging.getLogger(__name__)


def branch_title(selected_text: str, length: int = BRANCH_TITLE_LENGTH) -> str:
    """Title for a branch: a fixed-length prefix of the highlighted span."""
    prefix = selected_text[:length]
    suffix = "..." if len(selected_text) > length else ""
    return f"Branch: {prefix}{suffix}"


@dataclass
class BranchResult:
    thread: Thread
    child_count: int = 0


class BranchService:
    """Service class for the selection-to-branch workflow."""

    @staticmethod
    def create_branch(
        db: Session,
        user_id: str,
        thread_id: UUID,
        selected_text: str,
        parent_message_id: Optional[UUID] = None,
        anchor_to_latest: bool = True,
    ) -> BranchResult:
        """
        Create a branch of an owned thread anchored to a highlighted span.

        Without an explicit anchor the branch hangs off the most recent
        assistant message of the thread (or no message at all when the thread
        has no assistant turn yet). With ``anchor_to_latest`` off it is left
        unanchored instead. The span itself becomes the branch's
        durable context.

        Raises:
            ValueError: the span is empty
            ThreadNotFoundError / MessageNotFoundError: see ThreadService.create_thread
        """
        if not selected_text or not selected_text.strip():
            raise ValueError("Selected text must not be empty")

        ThreadService.require_thread(db, thread_id, user_id)

        if parent_message_id is None and anchor_to_latest:
            anchor = MessageService.get_last_assistant_message(db, thread_id)
            parent_message_id = anchor.id if anchor is not None else None

        thread = ThreadService.create_thread(
            db=db,
            user_id=user_id,
            thread_data=ThreadCreate(
                title=branch_title(selected_text),
                selected_context=selected_text,
                parent_thread_id=thread_id,
                parent_message_id=parent_message_id,
            ),
        )

        logger.info(f"Branched thread {thread_id} into {thread.id}")
        return BranchResult(thread=thread, child_count=0)
