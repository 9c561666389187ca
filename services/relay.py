"""Streaming relay: drives one model generation and hands out its text increments."""
import asyncio
import enum
import logging
from typing import AsyncIterator, Iterable, List, Mapping, Optional, Protocol

from config import STREAM_BUFFER_SIZE, STREAM_TIMEOUT_SECONDS
from exceptions import UpstreamUnavailableError

logger = logging.getLogger(__name__)


class RelayState(str, enum.Enum):
    """Lifecycle of a single generation."""
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


FINAL_STATES = frozenset({RelayState.COMPLETED, RelayState.ABORTED, RelayState.FAILED})


class TokenSource(Protocol):
    """Anything that turns a role-tagged conversation into a stream of text."""

    def stream(self, messages: List[dict], model: Optional[str] = None) -> AsyncIterator[str]:
        ...


class _Finished:
    """Queue marker put by the pump once the upstream is done."""

    def __init__(self, outcome: RelayState, error: Optional[str] = None):
        self.outcome = outcome
        self.error = error


class StreamHandle:
    """
    One in-flight generation.

    The handle is lazy and single-use: the upstream request is only opened
    when the first increment is requested and the increments come out in
    arrival order. ``text`` is the running concatenation of everything handed
    out so far and ``increments`` keeps the same pieces as a replayable log
    for observers that did not drive the iteration.

    ``cancel()`` tears the upstream down and leaves the partial text as-is.
    It is idempotent and a no-op once the stream is finished. Breaking out of
    the consumer loop, ``aclose()`` and leaving ``async with`` all cancel the
    same way.

    At most ``buffer_size`` increments are held ahead of the consumer; past
    that the upstream is paused until the consumer catches up.
    """

    def __init__(
        self,
        source: AsyncIterator[str],
        timeout: Optional[float] = None,
        buffer_size: int = STREAM_BUFFER_SIZE,
    ):
        self._source = source
        self._timeout = timeout
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self._task: Optional[asyncio.Task] = None
        self._consumed = False
        self.state = RelayState.IDLE
        self.error: Optional[str] = None
        self.text = ""
        self.increments: List[str] = []

    @property
    def finished(self) -> bool:
        return self.state in FINAL_STATES

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("A stream can only be consumed once")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        # Closed by the event loop when the consumer breaks out of its loop
        try:
            while True:
                piece = await self._next()
                if piece is None:
                    return
                yield piece
        finally:
            self.cancel()

    async def _next(self) -> Optional[str]:
        if self.finished:
            return None

        if self._task is None:
            self._task = asyncio.create_task(self._pump())

        item = await self._queue.get()

        if isinstance(item, _Finished):
            if not self.finished:
                self.state = item.outcome
                self.error = item.error
                logger.info(f"Stream finished: {self.state.value} ({len(self.text)} chars)")
            return None

        # Anything still queued after a cancel is dropped
        if self.finished:
            return None

        self.text += item
        self.increments.append(item)
        return item

    async def __aenter__(self) -> "StreamHandle":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cancel()

    async def aclose(self) -> None:
        self.cancel()

    def cancel(self) -> bool:
        """Abort the generation. Returns False when there was nothing to abort."""
        if self.finished:
            return False

        self.state = RelayState.ABORTED
        if self._task is not None and not self._task.done():
            self._task.cancel()
        # A consumer blocked on the queue only waits while it is empty
        if self._queue.empty():
            self._queue.put_nowait(_Finished(RelayState.ABORTED))

        logger.info(f"Stream cancelled after {len(self.text)} chars")
        return True

    async def wait(self) -> str:
        """Drain the stream and return the accumulated text."""
        async for _ in self:
            pass
        return self.text

    async def _drain(self) -> None:
        async for piece in self._source:
            if piece:
                await self._queue.put(piece)

    async def _pump(self) -> None:
        outcome, error = RelayState.COMPLETED, None
        try:
            if self._timeout is None:
                await self._drain()
            else:
                await asyncio.wait_for(self._drain(), self._timeout)
        except asyncio.CancelledError:
            outcome = RelayState.ABORTED
            raise
        except asyncio.TimeoutError:
            outcome, error = RelayState.FAILED, f"Generation exceeded {self._timeout} seconds"
            logger.warning(error)
        except UpstreamUnavailableError as e:
            outcome, error = RelayState.FAILED, str(e)
            logger.error(f"Upstream failed mid-stream: {e}")
        except Exception as e:
            outcome, error = RelayState.FAILED, f"{type(e).__name__}: {e}"
            logger.error(f"Unexpected stream error: {e}")
        finally:
            await self._close_source()
            if outcome is not RelayState.ABORTED:
                await self._queue.put(_Finished(outcome, error))

    async def _close_source(self) -> None:
        aclose = getattr(self._source, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug(f"Error while closing upstream stream: {e}")


class StreamRelay:
    """Starts generations against a token source, one handle per request."""

    def __init__(
        self,
        upstream: TokenSource,
        timeout: Optional[float] = STREAM_TIMEOUT_SECONDS,
        buffer_size: int = STREAM_BUFFER_SIZE,
    ):
        self.upstream = upstream
        self.timeout = timeout
        self.buffer_size = buffer_size

    def begin(self, conversation: Iterable[Mapping[str, str]], model: Optional[str] = None) -> StreamHandle:
        """
        Open a generation for the full ordered turn history.

        Args:
            conversation: ``{role, content}`` turns, the new user turn included
            model: model identifier, the upstream default when None

        Returns:
            StreamHandle in the STREAMING state
        """
        turns = [{"role": turn["role"], "content": turn["content"]} for turn in conversation]
        handle = StreamHandle(
            self.upstream.stream(turns, model), timeout=self.timeout, buffer_size=self.buffer_size
        )
        handle.state = RelayState.STREAMING

        logger.info(f"Stream started: model={model}, turns={len(turns)}")
        return handle
