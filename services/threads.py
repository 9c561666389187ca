"""Thread service: tree lifecycle, breadcrumbs and cascading deletes."""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import desc, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from exceptions import MessageNotFoundError, ThreadNotFoundError
from models.messages import Message
from models.threads import Thread, utcnow
from schemas.threads import ThreadCreate

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"


@dataclass
class ThreadDetail:
    """A thread together with everything the conversation view needs."""
    thread: Thread
    messages: List[Message] = field(default_factory=list)
    children: List[Tuple[Thread, int]] = field(default_factory=list)
    breadcrumbs: List[Thread] = field(default_factory=list)


class ThreadService:
    """Service class for thread tree operations."""

    @staticmethod
    def get_thread(db: Session, thread_id: UUID, user_id: Optional[str] = None) -> Optional[Thread]:
        """Retrieve a thread by ID."""
        query = db.query(Thread).filter(Thread.id == thread_id)

        if user_id:
            query = query.filter(Thread.user_id == user_id)

        return query.first()

    @staticmethod
    def require_thread(db: Session, thread_id: UUID, user_id: str) -> Thread:
        """Retrieve an owned thread or raise ThreadNotFoundError."""
        thread = ThreadService.get_thread(db, thread_id, user_id)
        if thread is None:
            raise ThreadNotFoundError(thread_id)
        return thread

    @staticmethod
    def create_thread(db: Session, user_id: str, thread_data: ThreadCreate) -> Thread:
        """
        Create a new, empty thread for a user.

        When a parent thread is given it must belong to the same user, and the
        anchor message (if any) must be one of the parent's messages. Parents
        always exist before their children and are never reassigned, so the
        parent links can never form a cycle.

        Raises:
            ThreadNotFoundError: parent thread missing or owned by someone else
            MessageNotFoundError: anchor message is not in the parent thread
        """
        parent = None
        if thread_data.parent_thread_id is not None:
            parent = ThreadService.get_thread(db, thread_data.parent_thread_id, user_id)
            if parent is None:
                raise ThreadNotFoundError(thread_data.parent_thread_id)

        if thread_data.parent_message_id is not None:
            anchor = db.query(Message).filter(
                Message.id == thread_data.parent_message_id,
                Message.thread_id == (parent.id if parent is not None else None),
            ).first()
            if anchor is None:
                raise MessageNotFoundError(thread_data.parent_message_id)

        title = (thread_data.title or "").strip() or DEFAULT_TITLE

        db_thread = Thread(
            user_id=user_id,
            title=title,
            parent_thread_id=parent.id if parent is not None else None,
            parent_message_id=thread_data.parent_message_id,
            selected_context=thread_data.selected_context,
        )

        db.add(db_thread)
        db.commit()
        db.refresh(db_thread)

        logger.info(f"Created thread {db_thread.id} (parent={db_thread.parent_thread_id})")
        return db_thread

    @staticmethod
    def count_children(db: Session, thread_ids: Iterable[UUID]) -> Dict[UUID, int]:
        """Count direct children for each of the given threads."""
        thread_ids = list(thread_ids)
        counts = {thread_id: 0 for thread_id in thread_ids}
        if not thread_ids:
            return counts

        rows = db.query(
            Thread.parent_thread_id, func.count(Thread.id)
        ).filter(
            Thread.parent_thread_id.in_(thread_ids)
        ).group_by(
            Thread.parent_thread_id
        ).all()

        for parent_id, count in rows:
            counts[parent_id] = count
        return counts

    @staticmethod
    def get_children(db: Session, thread: Thread) -> List[Tuple[Thread, int]]:
        """Direct children of a thread, newest first, with their own child counts."""
        children = db.query(Thread).filter(
            Thread.parent_thread_id == thread.id,
            Thread.user_id == thread.user_id
        ).order_by(
            desc(Thread.created_at)
        ).all()

        counts = ThreadService.count_children(db, [child.id for child in children])
        return [(child, counts[child.id]) for child in children]

    @staticmethod
    def list_root_threads(
        db: Session, user_id: str, skip: int = 0, limit: Optional[int] = None
    ) -> List[Tuple[Thread, int]]:
        """Root threads of a user, most recently updated first, with child counts."""
        query = db.query(Thread).filter(
            Thread.user_id == user_id,
            Thread.parent_thread_id.is_(None)
        ).order_by(
            desc(Thread.updated_at)
        ).offset(skip)

        if limit is not None:
            query = query.limit(limit)

        threads = query.all()
        counts = ThreadService.count_children(db, [thread.id for thread in threads])
        return [(thread, counts[thread.id]) for thread in threads]

    @staticmethod
    def get_breadcrumbs(db: Session, thread_id: UUID, user_id: str) -> List[Thread]:
        """
        Ancestors of a thread, root first, excluding the thread itself.

        Walks the parent links one lookup at a time so that every hop is
        checked against the owner. A missing or foreign link ends the walk
        and the path is returned as far as it got; this never raises.
        """
        thread = ThreadService.get_thread(db, thread_id, user_id)
        if thread is None:
            return []

        breadcrumbs: List[Thread] = []
        seen = {thread.id}
        current_id = thread.parent_thread_id

        while current_id is not None and current_id not in seen:
            parent = ThreadService.get_thread(db, current_id, user_id)
            if parent is None:
                logger.warning(f"Breadcrumb chain of thread {thread_id} broken at {current_id}")
                break

            breadcrumbs.insert(0, parent)
            seen.add(parent.id)
            current_id = parent.parent_thread_id

        return breadcrumbs

    @staticmethod
    def get_thread_detail(db: Session, thread_id: UUID, user_id: str) -> ThreadDetail:
        """Load a thread with its ordered messages, direct children and breadcrumbs."""
        thread = ThreadService.require_thread(db, thread_id, user_id)

        messages = db.query(Message).filter(
            Message.thread_id == thread.id
        ).order_by(
            Message.created_at
        ).all()

        return ThreadDetail(
            thread=thread,
            messages=messages,
            children=ThreadService.get_children(db, thread),
            breadcrumbs=ThreadService.get_breadcrumbs(db, thread.id, user_id),
        )

    @staticmethod
    def rename_thread(db: Session, thread_id: UUID, user_id: str, title: str) -> Thread:
        """Update a thread's title."""
        thread = ThreadService.require_thread(db, thread_id, user_id)

        thread.title = title
        ThreadService.touch_thread(thread)

        db.commit()
        db.refresh(thread)

        return thread

    @staticmethod
    def touch_thread(thread: Thread) -> None:
        """Mark a thread as updated. The caller commits."""
        thread.updated_at = utcnow()

    @staticmethod
    def collect_subtree(db: Session, thread: Thread) -> List[List[UUID]]:
        """Thread ids of a subtree grouped by depth, the thread itself first."""
        levels = [[thread.id]]
        frontier = [thread.id]

        while frontier:
            children = [
                row.id for row in db.query(Thread.id).filter(Thread.parent_thread_id.in_(frontier))
            ]
            if not children:
                break
            levels.append(children)
            frontier = children

        return levels

    @staticmethod
    def delete_thread(db: Session, thread_id: UUID, user_id: str) -> int:
        """
        Delete a thread, all of its descendants and all of their messages.

        Messages go first, then threads from the deepest level up, all in one
        transaction, so an interrupted delete never leaves orphans behind.

        Returns:
            Number of threads removed.
        """
        thread = ThreadService.require_thread(db, thread_id, user_id)
        levels = ThreadService.collect_subtree(db, thread)
        all_ids = [tid for level in levels for tid in level]

        try:
            db.query(Message).filter(
                Message.thread_id.in_(all_ids)
            ).delete(synchronize_session=False)

            for level in reversed(levels):
                db.query(Thread).filter(
                    Thread.id.in_(level)
                ).delete(synchronize_session=False)

            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to delete thread {thread_id}: {e}")
            raise

        logger.info(f"Deleted thread {thread_id} and {len(all_ids) - 1} descendant(s)")
        return len(all_ids)
