"""Async HTTP client for the branch chat API."""
import logging
from typing import AsyncIterator, List, Optional
from uuid import UUID

import httpx

from config import UPSTREAM_TIMEOUT
from exceptions import BranchChatError, NotFoundError, UnauthorizedError, UpstreamUnavailableError
from schemas import (
    BranchCreate, BranchResponse, MessageCreate, MessageResponse, ModelInfo,
    ThreadCreate, ThreadDetailResponse, ThreadResponse, ThreadSummary, ThreadUpdate,
)

logger = logging.getLogger(__name__)


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", response.text))
    except (ValueError, AttributeError):
        return response.text


class ChatClient:
    """
    Thin async wrapper around the REST surface.

    HTTP failures come back as the same domain errors the services raise:
    401 as UnauthorizedError, 404 as NotFoundError, anything else as
    BranchChatError. The client also acts as a token source for
    StreamRelay through ``stream``.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = UPSTREAM_TIMEOUT,
    ):
        self._http = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        if token:
            self._http.headers["Authorization"] = f"Bearer {token}"

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        detail = _detail(response)
        if response.status_code == 401:
            raise UnauthorizedError(detail)
        if response.status_code == 404:
            raise NotFoundError(detail)
        raise BranchChatError(f"{response.status_code}: {detail}")

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise BranchChatError(f"{method} {url} failed: {e}") from e
        self._raise_for_status(response)
        return response

    # Threads
    async def list_threads(self) -> List[ThreadSummary]:
        response = await self._request("GET", "/threads")
        return [ThreadSummary.model_validate(item) for item in response.json()]

    async def create_thread(
        self,
        title: Optional[str] = None,
        selected_context: Optional[str] = None,
        parent_thread_id: Optional[UUID] = None,
        parent_message_id: Optional[UUID] = None,
    ) -> ThreadResponse:
        payload = ThreadCreate(
            title=title,
            selected_context=selected_context,
            parent_thread_id=parent_thread_id,
            parent_message_id=parent_message_id,
        )
        response = await self._request(
            "POST", "/threads", json=payload.model_dump(mode="json", by_alias=True, exclude_none=True)
        )
        return ThreadResponse.model_validate(response.json())

    async def get_thread(self, thread_id: UUID) -> ThreadDetailResponse:
        response = await self._request("GET", f"/threads/{thread_id}")
        return ThreadDetailResponse.model_validate(response.json())

    async def rename_thread(self, thread_id: UUID, title: str) -> ThreadResponse:
        payload = ThreadUpdate(title=title)
        response = await self._request(
            "PATCH", f"/threads/{thread_id}", json=payload.model_dump(mode="json", by_alias=True)
        )
        return ThreadResponse.model_validate(response.json())

    async def delete_thread(self, thread_id: UUID) -> None:
        await self._request("DELETE", f"/threads/{thread_id}")

    async def create_branch(
        self,
        thread_id: UUID,
        selected_text: str,
        parent_message_id: Optional[UUID] = None,
        anchor_to_latest: bool = True,
    ) -> BranchResponse:
        payload = BranchCreate(
            selected_text=selected_text,
            parent_message_id=parent_message_id,
            anchor_to_latest=anchor_to_latest,
        )
        response = await self._request(
            "POST",
            f"/threads/{thread_id}/branches",
            json=payload.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        return BranchResponse.model_validate(response.json())

    # Messages
    async def create_message(
        self,
        thread_id: UUID,
        role: str,
        content: str,
        selected_text: Optional[str] = None,
        message_id: Optional[UUID] = None,
    ) -> MessageResponse:
        payload = MessageCreate(
            thread_id=thread_id,
            role=role,
            content=content,
            selected_text=selected_text,
            id=message_id,
        )
        response = await self._request(
            "POST", "/messages", json=payload.model_dump(mode="json", by_alias=True, exclude_none=True)
        )
        return MessageResponse.model_validate(response.json())

    # Models and generation
    async def list_models(self) -> List[ModelInfo]:
        response = await self._request("GET", "/models")
        return [ModelInfo.model_validate(item) for item in response.json()]

    async def stream(self, messages: List[dict], model: Optional[str] = None) -> AsyncIterator[str]:
        """Yield the text chunks of a ``/chat`` response as they arrive."""
        payload = {"messages": messages}
        if model:
            payload["model"] = model

        try:
            async with self._http.stream("POST", "/chat", json=payload) as response:
                if not response.is_success:
                    await response.aread()
                    if response.status_code == 401:
                        raise UnauthorizedError(_detail(response))
                    raise UpstreamUnavailableError(
                        f"Chat request failed with {response.status_code}: {_detail(response)}"
                    )

                async for text in response.aiter_text():
                    if text:
                        yield text
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"Chat stream interrupted: {e}") from e
