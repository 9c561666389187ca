"""Message service for storing conversation turns."""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from exceptions import ThreadNotFoundError
from models.messages import Message
from schemas.messages import MessageCreate
from services.threads import ThreadService

logger = logging.getLogger(__name__)


class MessageService:
    """Service class for message operations."""

    @staticmethod
    def create_message(db: Session, user_id: str, message_data: MessageCreate) -> Message:
        """
        Append a message to an owned thread and bump the thread's updated_at.

        Raises:
            ThreadNotFoundError: thread missing or owned by someone else
            ValueError: a message with the supplied id already exists
        """
        thread = ThreadService.get_thread(db, message_data.thread_id, user_id)
        if thread is None:
            raise ThreadNotFoundError(message_data.thread_id)

        if message_data.id is not None and db.get(Message, message_data.id) is not None:
            raise ValueError(f"Message {message_data.id} already exists")

        db_message = Message(
            thread_id=thread.id,
            role=message_data.role,
            content=message_data.content,
            selected_text=message_data.selected_text,
        )
        if message_data.id is not None:
            db_message.id = message_data.id

        db.add(db_message)
        ThreadService.touch_thread(thread)
        db.commit()
        db.refresh(db_message)

        logger.debug(f"Stored {db_message.role} message {db_message.id} in thread {thread.id}")
        return db_message

    @staticmethod
    def get_last_assistant_message(db: Session, thread_id: UUID) -> Optional[Message]:
        """Most recent assistant message of a thread, if any."""
        return db.query(Message).filter(
            Message.thread_id == thread_id,
            Message.role == "assistant"
        ).order_by(
            Message.created_at.desc()
        ).first()
