"""Non-agentic answer path used when the tool loop fails.

One retrieval, one completion, no tools. The transcript is rebuilt from the
caller's history rather than reusing anything from the failed run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol, Sequence, runtime_checkable

from ..citations import format_source_catalog, get_citation_instructions, sanitize_content_for_citations
from ..client import ModelClient
from ..streaming import StreamingDecoder
from ..types import AgentRunResult, ConversationMessage
from .cancellation import CancellationSignal
from .search import (
    MAX_LOCAL_SEARCH_CONTEXT_CHARS,
    build_context_first_message,
    deduplicate_sources,
    extract_sources,
    format_search_results_for_llm,
)

__all__ = ["Retriever", "FallbackConfig", "SimpleAnswerRunner"]

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class Retriever(Protocol):
    """Returns candidate documents for a query (title, path, content, score...)."""

    async def retrieve(self, query: str) -> Sequence[Mapping[str, Any]]:  # pragma: no cover - protocol stub
        ...


@dataclass(slots=True, frozen=True)
class FallbackConfig:
    enable_inline_citations: bool = True
    exclude_thinking: bool = False
    temperature: float | None = None
    max_tokens: int | None = None
    max_context_chars: int = MAX_LOCAL_SEARCH_CONTEXT_CHARS


class SimpleAnswerRunner:
    """Answers a question with a single retrieval and a single completion."""

    def __init__(
        self,
        client: ModelClient,
        *,
        retriever: Retriever | None = None,
        config: FallbackConfig | None = None,
    ) -> None:
        self._client = client
        self._retriever = retriever
        self._config = config or FallbackConfig()

    async def run(
        self,
        question: str,
        *,
        system_prompt: str = "",
        history: Sequence[ConversationMessage] = (),
        signal: CancellationSignal | None = None,
        on_update: Callable[[str], None] | None = None,
    ) -> AgentRunResult:
        documents: list[Mapping[str, Any]] = []
        if self._retriever is not None:
            documents = [
                doc for doc in await self._retriever.retrieve(question) if isinstance(doc, Mapping)
            ]
        sources = tuple(deduplicate_sources(extract_sources(documents)))
        LOGGER.info("Fallback answer path retrieved %d document(s)", len(documents))

        prompt = system_prompt
        user_content = question
        if documents:
            cleaned = [
                {**doc, "content": sanitize_content_for_citations(str(doc.get("content") or ""))}
                for doc in documents
            ]
            context = format_search_results_for_llm(cleaned)[: self._config.max_context_chars]
            user_content = build_context_first_message(f"<localSearch>\n{context}\n</localSearch>", question)
            prompt += get_citation_instructions(
                self._config.enable_inline_citations,
                format_source_catalog(sources),
            )

        messages: list[ConversationMessage] = []
        if prompt:
            messages.append(ConversationMessage.system(prompt))
        messages.extend(history)
        messages.append(ConversationMessage.user(user_content))

        decoder = StreamingDecoder(on_update, exclude_thinking=self._config.exclude_thinking)
        try:
            async for chunk in self._client.stream_chat(
                messages,
                None,
                temperature=self._config.temperature,
                max_tokens=self._config.max_tokens,
            ):
                if signal is not None and signal.aborted:
                    break
                decoder.process_chunk(chunk)
        finally:
            decoded = decoder.close()

        status = "aborted" if signal is not None and signal.aborted else "final"
        return AgentRunResult(
            text=decoded.content,
            was_truncated=decoded.was_truncated,
            token_usage=decoded.token_usage,
            sources=sources,
            status=status,
            iterations=1,
            fallback_used=True,
        )
