"""Async model client built around OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

import inspect
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Protocol, Sequence, cast

import httpx
import tiktoken
from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, NotFoundError
from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import ModelNotFoundError, is_model_not_found_error
from .streaming.chunks import StreamChunk, classify_chunk
from .types import ConversationMessage

__all__ = [
    "TokenCounterProtocol",
    "ApproxByteCounter",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "ModelClient",
    "ClientSettings",
    "AIClient",
]

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4


# -----------------------------------------------------------------------------
# Token counting
# -----------------------------------------------------------------------------


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


class ApproxByteCounter:
    """Deterministic counter that estimates tokens via byte length."""

    def __init__(
        self,
        *,
        model_name: str | None = None,
        charset: str = "utf-8",
        bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN,
    ) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter:
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding_name = encoding_name
        self._encoding: tiktoken.Encoding | None = None
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        if self._encoding is None:
            # Encodings are fetched on first use
            self._encoding = self._load_encoding(self.model_name, self._encoding_name)
        return len(self._encoding.encode(text, disallowed_special=()))

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _load_encoding(model_name: str, encoding_name: str | None) -> tiktoken.Encoding:
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to cl100k_base encoding for model %s", model_name)
            return tiktoken.get_encoding("cl100k_base")


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> TokenCounterRegistry:
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        return self.get(model_name).count(text)

    def count_messages(self, model_name: str | None, messages: Iterable[ConversationMessage]) -> int:
        counter = self.get(model_name)
        return sum(counter.count(message.content) for message in messages)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------


class ModelClient(Protocol):
    """Model-with-tools capability consumed by the agent loop and the fallback path."""

    def stream_chat(
        self,
        messages: Sequence[ConversationMessage | Mapping[str, Any]],
        tools: Iterable[ChatCompletionToolParam | Mapping[str, Any]] | None = None,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[Any]:
        """Return an async iterator of raw or normalized stream chunks."""
        ...


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class AIClient:
    """Model-with-tools capability over an OpenAI-compatible endpoint.

    ``stream_chat`` yields normalized :class:`StreamChunk` objects so that the
    decoder sees reasoning side channels (``reasoning_content``,
    ``reasoning``) that providers attach to the raw chunk deltas.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()
        self._register_default_token_counter()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def model(self) -> str:
        return self._settings.model

    @property
    def token_registry(self) -> TokenCounterRegistry:
        return self._token_registry

    async def stream_chat(
        self,
        messages: Sequence[ConversationMessage | Mapping[str, Any]],
        tools: Iterable[ChatCompletionToolParam | Mapping[str, Any]] | None = None,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[StreamChunk]:
        """Stream one chat completion as normalized chunks.

        Connection failures before the first chunk are retried; anything
        raised once chunks are flowing propagates to the caller.
        """

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
            extra_params=extra_params,
        )
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        try:
            stream = None
            async for attempt in self._retrying():
                with attempt:
                    stream = await self._client.chat.completions.create(**payload)
        except NotFoundError as exc:
            if is_model_not_found_error(exc):
                raise ModelNotFoundError(model=self._settings.model) from exc
            raise
        if stream is None:
            raise RuntimeError("Chat completion request returned no stream")

        try:
            async for raw in stream:
                yield classify_chunk(raw)
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                result = close()
                if inspect.isawaitable(result):
                    await result

    def count_tokens(self, text: str, *, model: str | None = None) -> int:
        if not text:
            return 0
        return self._token_registry.get(model or self._settings.model).count(text)

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _register_default_token_counter(self) -> None:
        model_name = (self._settings.model or "").strip()
        if not model_name or self._token_registry.has(model_name):
            return
        self._token_registry.register(model_name, TiktokenCounter(model_name))

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (APIConnectionError, APITimeoutError, httpx.TimeoutException)
            ),
        )

    @staticmethod
    def _coerce_messages(
        messages: Sequence[ConversationMessage | Mapping[str, Any]],
    ) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            if isinstance(message, ConversationMessage):
                normalized.append(message.to_chat_param())
            else:
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        tools: Iterable[ChatCompletionToolParam | Mapping[str, Any]] | None,
        temperature: float | None,
        max_tokens: int | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        tool_list = [dict(tool) for tool in tools] if tools else []
        if tool_list:
            payload["tools"] = tool_list
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if extra_params:
            payload.update(extra_params)
        return payload

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result
