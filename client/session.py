"""Client-side orchestration of one active conversation thread."""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Set
from uuid import UUID, uuid4

from client.api import ChatClient
from config import FAILURE_MESSAGE, KEEP_PARTIAL_ON_FAILURE, TITLE_MAX_LENGTH
from exceptions import BranchChatError, PersistenceFailure
from models.threads import utcnow
from schemas import Breadcrumb, ChildThreadResponse, ModelInfo, ThreadDetailResponse
from services.relay import RelayState, StreamHandle, StreamRelay

logger = logging.getLogger(__name__)


def quote_context(context: str, text: str) -> str:
    """Prefix a question with an explicit reference to the highlighted span."""
    return f'Regarding this text: "{context}"\n\n{text}'


def first_message_title(text: str, limit: int = TITLE_MAX_LENGTH) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


@dataclass
class SessionMessage:
    """A message as held in memory by the session."""
    id: UUID
    role: str
    content: str
    selected_text: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    persisted: bool = False


class ConversationSession:
    """
    Holds the in-memory state of one thread and reacts to user actions.

    The message list is a read-through cache of the stored thread: it is
    seeded by ``load()``, grows locally on every send and is written back
    with fire-and-forget requests. Writes keep their order, failures are
    logged and collected in ``persistence_failures`` but never raised.
    Only one generation may be live at a time; ``send`` while streaming is
    ignored.
    """

    def __init__(
        self,
        client: ChatClient,
        thread_id: UUID,
        model: Optional[str] = None,
        relay: Optional[StreamRelay] = None,
        keep_partial_on_failure: bool = KEEP_PARTIAL_ON_FAILURE,
        failure_message: str = FAILURE_MESSAGE,
        title_max_length: int = TITLE_MAX_LENGTH,
    ):
        self.client = client
        self.thread_id = thread_id
        self.model = model
        self.relay = relay or StreamRelay(client)
        self.keep_partial_on_failure = keep_partial_on_failure
        self.failure_message = failure_message
        self.title_max_length = title_max_length

        self.title = "New Chat"
        self.selected_context: Optional[str] = None
        self.messages: List[SessionMessage] = []
        self.breadcrumbs: List[Breadcrumb] = []
        self.branches: List[ChildThreadResponse] = []
        self.pending_context: Optional[str] = None
        self.handle: Optional[StreamHandle] = None
        self.persistence_failures: List[PersistenceFailure] = []

        self._pending: Set[asyncio.Task] = set()
        self._last_write: Optional[asyncio.Task] = None

    @property
    def is_streaming(self) -> bool:
        return self.handle is not None and not self.handle.finished

    async def load(self) -> ThreadDetailResponse:
        """Seed the session from the stored thread."""
        detail = await self.client.get_thread(self.thread_id)

        self.title = detail.title
        self.selected_context = detail.selected_context
        self.messages = [
            SessionMessage(
                id=message.id,
                role=message.role,
                content=message.content,
                selected_text=message.selected_text,
                created_at=message.created_at,
                persisted=True,
            )
            for message in detail.messages
        ]
        self.breadcrumbs = list(detail.breadcrumbs)
        self.branches = list(detail.child_threads)

        logger.info(f"Loaded thread {self.thread_id} with {len(self.messages)} message(s)")
        return detail

    async def load_models(self) -> List[ModelInfo]:
        models = await self.client.list_models()
        if self.model is None and models:
            self.model = models[0].id
        return models

    def select_model(self, model: str) -> None:
        self.model = model

    def attach_context(self, span: str) -> None:
        """Quote a highlighted span in the next message of this thread."""
        if span and span.strip():
            self.pending_context = span

    def clear_context(self) -> None:
        self.pending_context = None

    async def send(self, text: str) -> Optional[SessionMessage]:
        """
        Send a user message and stream the assistant's answer into the list.

        Returns:
            The assistant message, or None when the send was ignored (a
            stream is live, the text is blank or no model is selected).
        """
        if self.is_streaming:
            logger.debug("Ignoring send while a stream is live")
            return None
        if not text or not text.strip() or not self.model:
            return None

        content = text
        selected_text = None
        if self.pending_context:
            selected_text = self.pending_context
            content = quote_context(selected_text, text)
            self.pending_context = None

        is_first = not self.messages

        user_message = SessionMessage(id=uuid4(), role="user", content=content, selected_text=selected_text)
        self.messages.append(user_message)
        self._persist(user_message)

        if is_first:
            self.title = first_message_title(text, self.title_max_length)
            self._spawn(self._write_title(self.title))

        assistant = SessionMessage(id=uuid4(), role="assistant", content="")
        self.messages.append(assistant)

        history = [{"role": m.role, "content": m.content} for m in self.messages if m is not assistant]
        handle = self.relay.begin(history, self.model)
        self.handle = handle

        async for _ in handle:
            assistant.content = handle.text

        if handle.state is RelayState.COMPLETED:
            self._persist(assistant)
        elif handle.state is RelayState.FAILED:
            logger.error(f"Generation failed in thread {self.thread_id}: {handle.error}")
            if not (self.keep_partial_on_failure and handle.text):
                assistant.content = self.failure_message

        return assistant

    def cancel(self) -> bool:
        """Abort the live generation, keeping whatever text already arrived."""
        if self.handle is None:
            return False
        return self.handle.cancel()

    async def branch_from_selection(self, span: str) -> ChildThreadResponse:
        """
        Create a branch of this thread carrying the highlighted span.

        The branch is anchored to the latest assistant message once its write
        has landed. When that message is not stored (its write failed, or the
        turn failed or was aborted) the branch is left unanchored. The new
        branch is put at the front of the local branch list without
        re-fetching the thread.
        """
        if not span or not span.strip():
            raise ValueError("Selected text must not be empty")

        await self.flush()

        anchor_id = None
        anchor = next((m for m in reversed(self.messages) if m.role == "assistant"), None)
        if anchor is not None:
            if anchor.persisted:
                anchor_id = anchor.id
            else:
                logger.warning(f"Message {anchor.id} is not stored, branching without an anchor")

        # The server must not fall back to an older answer than the one shown
        branch = await self.client.create_branch(
            self.thread_id, span, parent_message_id=anchor_id, anchor_to_latest=False
        )

        summary = ChildThreadResponse(
            id=branch.id,
            title=branch.title,
            selected_context=branch.selected_context,
            parent_message_id=branch.parent_message_id,
            created_at=branch.created_at,
            child_count=branch.child_count,
        )
        self.branches.insert(0, summary)
        return summary

    async def rename(self, title: str) -> None:
        thread = await self.client.rename_thread(self.thread_id, title)
        self.title = thread.title

    async def delete(self) -> None:
        """Delete the thread with all of its branches and clear local state."""
        self.cancel()
        await self.flush()
        await self.client.delete_thread(self.thread_id)

        self.messages = []
        self.branches = []
        self.breadcrumbs = []

    async def flush(self) -> None:
        """Wait for all outstanding fire-and-forget writes."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def _persist(self, message: SessionMessage) -> None:
        # Writes are chained so the server sees them in creation order
        self._last_write = self._spawn(
            self._write_message(message, message.content, self._last_write)
        )

    def _record_failure(self, what: str, error: Exception) -> None:
        failure = PersistenceFailure(f"Could not store {what}: {error}")
        self.persistence_failures.append(failure)
        logger.error(str(failure))

    async def _write_message(
        self, message: SessionMessage, content: str, previous: Optional[asyncio.Task]
    ) -> None:
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)

        try:
            await self.client.create_message(
                thread_id=self.thread_id,
                role=message.role,
                content=content,
                selected_text=message.selected_text,
                message_id=message.id,
            )
            message.persisted = True
        except BranchChatError as e:
            self._record_failure(f"message {message.id}", e)

    async def _write_title(self, title: str) -> None:
        try:
            await self.client.rename_thread(self.thread_id, title)
        except BranchChatError as e:
            self._record_failure(f"title of thread {self.thread_id}", e)
