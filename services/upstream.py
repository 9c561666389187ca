"""Model backends that turn a role-tagged conversation into a text stream."""
import json
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator, Callable, List, Optional, Protocol

import httpx
from langchain.chat_models import init_chat_model
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from config import (
    ANTHROPIC_API_KEY, ANTHROPIC_BASE_URL, ANTHROPIC_VERSION, CHAT_BACKEND,
    DEFAULT_MODEL, DEFAULT_MODEL_NAME, MAX_TOKENS, SYSTEM_PROMPT, UPSTREAM_TIMEOUT,
)
from exceptions import MalformedUpstreamFrame, UpstreamUnavailableError
from schemas.chat import ModelInfo

logger = logging.getLogger(__name__)


def default_models() -> List[ModelInfo]:
    """The hard-coded catalog used whenever the real one is unavailable."""
    return [ModelInfo(id=DEFAULT_MODEL, name=DEFAULT_MODEL_NAME)]


class ChatUpstream(Protocol):
    def stream(self, messages: List[dict], model: Optional[str] = None) -> AsyncIterator[str]:
        ...

    async def list_models(self) -> List[ModelInfo]:
        ...


def parse_sse_line(line: str) -> Optional[str]:
    """
    Extract generated text from one line of an Anthropic event stream.

    Returns None for lines that carry no text (comments, event names, other
    event types, the ``[DONE]`` marker).

    Raises:
        MalformedUpstreamFrame: the data payload is not a JSON object
        UpstreamUnavailableError: the upstream sent an explicit error event
    """
    if not line.startswith("data:"):
        return None

    data = line[5:]
    if data.startswith(" "):
        data = data[1:]
    if data == "[DONE]":
        return None

    try:
        event = json.loads(data)
    except ValueError as e:
        raise MalformedUpstreamFrame(f"Undecodable frame: {data[:80]!r}") from e
    if not isinstance(event, dict):
        raise MalformedUpstreamFrame(f"Unexpected frame: {data[:80]!r}")

    event_type = event.get("type")
    if event_type == "error":
        error = event.get("error") or {}
        raise UpstreamUnavailableError(f"Upstream error: {error.get('message', 'unknown error')}")

    if event_type == "content_block_delta":
        text = (event.get("delta") or {}).get("text")
        if isinstance(text, str):
            return text

    return None


class AnthropicUpstream:
    """Streams completions from the Anthropic Messages API."""

    def __init__(
        self,
        api_key: Optional[str] = ANTHROPIC_API_KEY,
        base_url: str = ANTHROPIC_BASE_URL,
        default_model: str = DEFAULT_MODEL,
        max_tokens: int = MAX_TOKENS,
        system_prompt: str = SYSTEM_PROMPT,
        timeout: float = UPSTREAM_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.default_model = default_model
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt
        self.timeout = timeout
        self._client = client

    def _headers(self) -> dict:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    @asynccontextmanager
    async def _session(self):
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
                yield client

    async def stream(self, messages: List[dict], model: Optional[str] = None) -> AsyncIterator[str]:
        """Yield text increments for the given conversation."""
        if not self.api_key:
            raise UpstreamUnavailableError("Anthropic API key not configured")

        payload = {
            "model": model or self.default_model,
            "max_tokens": self.max_tokens,
            "stream": True,
            "system": self.system_prompt,
            "messages": [
                {"role": "user" if m["role"] == "user" else "assistant", "content": m["content"]}
                for m in messages
            ],
        }

        try:
            async with self._session() as client:
                async with client.stream("POST", "/v1/messages", json=payload, headers=self._headers()) as response:
                    if not response.is_success:
                        body = await response.aread()
                        logger.error(f"Anthropic API error {response.status_code}: {body[:500]!r}")
                        raise UpstreamUnavailableError(f"Upstream returned {response.status_code}")

                    async for line in response.aiter_lines():
                        try:
                            text = parse_sse_line(line)
                        except MalformedUpstreamFrame as e:
                            logger.debug(f"Skipping frame: {e}")
                            continue
                        if text:
                            yield text
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"Upstream transport error: {e}") from e

    async def list_models(self) -> List[ModelInfo]:
        """Available models, or the default catalog when the upstream cannot be asked."""
        if not self.api_key:
            return default_models()

        try:
            async with self._session() as client:
                response = await client.get("/v1/models", headers=self._headers())

            if not response.is_success:
                logger.warning(f"Model catalog returned {response.status_code}, using default")
                return default_models()

            models = [
                ModelInfo(id=entry["id"], name=entry.get("display_name") or entry["id"])
                for entry in response.json().get("data", [])
                if entry.get("type") == "model"
            ]
            return models or default_models()
        except (httpx.HTTPError, ValueError, KeyError, AttributeError) as e:
            logger.error(f"Failed to fetch models: {e}")
            return default_models()


def default_model_factory(model: str) -> BaseChatModel:
    """Build a chat model from a provider-qualified or inferable model name."""
    return init_chat_model(model, max_tokens=MAX_TOKENS, timeout=UPSTREAM_TIMEOUT)


class LangChainUpstream:
    """Streams completions from any LangChain chat model."""

    def __init__(
        self,
        model_factory: Optional[Callable[[str], BaseChatModel]] = None,
        default_model: str = DEFAULT_MODEL,
        system_prompt: str = SYSTEM_PROMPT,
        models: Optional[List[ModelInfo]] = None,
    ):
        self.model_factory = model_factory or default_model_factory
        self.default_model = default_model
        self.system_prompt = system_prompt
        self.models = models

    def _to_langchain(self, messages: List[dict]) -> List[BaseMessage]:
        converted: List[BaseMessage] = []
        if self.system_prompt:
            converted.append(SystemMessage(content=self.system_prompt))
        for m in messages:
            if m["role"] == "user":
                converted.append(HumanMessage(content=m["content"]))
            else:
                converted.append(AIMessage(content=m["content"]))
        return converted

    @staticmethod
    def _chunk_text(content) -> str:
        if isinstance(content, str):
            return content
        # Some providers stream a list of content blocks
        return "".join(
            block.get("text", "") for block in content
            if isinstance(block, dict) and block.get("type", "text") == "text"
        )

    async def stream(self, messages: List[dict], model: Optional[str] = None) -> AsyncIterator[str]:
        """Yield text increments for the given conversation."""
        try:
            chat_model = self.model_factory(model or self.default_model)
            async for chunk in chat_model.astream(self._to_langchain(messages)):
                text = self._chunk_text(chunk.content)
                if text:
                    yield text
        except UpstreamUnavailableError:
            raise
        except Exception as e:
            logger.error(f"LangChain model failed: {e}")
            raise UpstreamUnavailableError(str(e)) from e

    async def list_models(self) -> List[ModelInfo]:
        return list(self.models) if self.models else default_models()


@lru_cache
def get_upstream() -> ChatUpstream:
    """The configured model backend."""
    if CHAT_BACKEND == "anthropic":
        logger.info("Using raw Anthropic streaming backend")
        return AnthropicUpstream()
    logger.info("Using LangChain chat backend")
    return LangChainUpstream()
