"""Post-processing of local-search tool results.

The retrieval capability itself is an ordinary tool. Its JSON result (a list
of documents) is reshaped here into an XML-ish block for the model, reduced
to a source list for citations, and paired with the restated user question
so that retrieved context always precedes the question.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Protocol, Sequence, runtime_checkable

from ..types import SourceEntry, ToolExecutionResult
from .summaries import LocalSearchSummary, QueryExpansion

__all__ = [
    "MAX_LOCAL_SEARCH_CONTEXT_CHARS",
    "SEARCH_FAILED_TEXT",
    "INVALID_RESULTS_TEXT",
    "NO_DOCUMENTS_TEXT",
    "LocalSearchOutcome",
    "QueryExpander",
    "format_search_results_for_llm",
    "extract_sources",
    "deduplicate_sources",
    "process_local_search_result",
    "build_context_first_message",
    "ensure_context_before_question",
]

LOGGER = logging.getLogger(__name__)

MAX_LOCAL_SEARCH_CONTEXT_CHARS = 400_000
SEARCH_FAILED_TEXT = "Search failed."
INVALID_RESULTS_TEXT = "Invalid search results format."
NO_DOCUMENTS_TEXT = "No relevant documents found."
QUESTION_LABEL = "Question:"
_CITATION_REMINDER = (
    "(Cite sources inline with [^n] footnotes and end with a '#### Sources' section.)"
)


@runtime_checkable
class QueryExpander(Protocol):
    """Computes recall terms for a local-search query ahead of dispatch."""

    async def expand(self, query: str) -> QueryExpansion:  # pragma: no cover - protocol stub
        ...


@dataclass(slots=True, frozen=True)
class LocalSearchOutcome:
    """Everything derived from one local-search result."""

    formatted_for_llm: str
    sources: tuple[SourceEntry, ...] = ()
    display_result: str | None = None

    def summary(self, expansion: QueryExpansion | None = None) -> LocalSearchSummary:
        return LocalSearchSummary(
            titles=tuple(source.title for source in self.sources),
            count=len(self.sources),
            expansion=expansion,
        )


# -----------------------------------------------------------------------------
# Formatting
# -----------------------------------------------------------------------------


def _included(doc: Mapping[str, Any]) -> bool:
    return doc.get("includeInContext", doc.get("include_in_context", True)) is not False


def _modified_iso(value: Any) -> str | None:
    if isinstance(value, bool) or value in (None, ""):
        return None
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()
        if isinstance(value, str):
            return datetime.fromisoformat(value.replace("Z", "+00:00")).isoformat()
    except (ValueError, OverflowError, OSError):
        return None
    return None


def format_search_results_for_llm(documents: Sequence[Mapping[str, Any]]) -> str:
    """Render documents as ``<document>`` blocks, skipping excluded ones."""

    included = [doc for doc in documents if isinstance(doc, Mapping) and _included(doc)]
    if not included:
        return NO_DOCUMENTS_TEXT

    blocks: list[str] = []
    for position, doc in enumerate(included, start=1):
        title = doc.get("title") or "Untitled"
        path = doc.get("path") or ""
        source_id = doc.get("source_id") or doc.get("__sourceId") or position
        lines = ["<document>", f"<id>{source_id}</id>", f"<title>{title}</title>"]
        if path and path != title:
            lines.append(f"<path>{path}</path>")
        modified = _modified_iso(doc.get("mtime"))
        if modified:
            lines.append(f"<modified>{modified}</modified>")
        lines.extend(["<content>", str(doc.get("content") or ""), "</content>", "</document>"])
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def _fit_to_budget(documents: list[Mapping[str, Any]], max_chars: int) -> list[Mapping[str, Any]]:
    total = sum(len(str(doc.get("content") or "")) for doc in documents)
    if total <= max_chars or total == 0:
        return documents
    ratio = max_chars / total
    LOGGER.info("Truncating local search content to fit context (ratio %.3f)", ratio)
    fitted: list[Mapping[str, Any]] = []
    for doc in documents:
        content = str(doc.get("content") or "")
        trimmed = dict(doc)
        trimmed["content"] = content[: int(len(content) * ratio)]
        fitted.append(trimmed)
    return fitted


def _wrap(body: str, time_range: str | None) -> str:
    if time_range:
        return f'<localSearch timeRange="{time_range}">\n{body}\n</localSearch>'
    return f"<localSearch>\n{body}\n</localSearch>"


# -----------------------------------------------------------------------------
# Sources
# -----------------------------------------------------------------------------


def _score(doc: Mapping[str, Any]) -> float:
    for key in ("rerank_score", "score"):
        value = doc.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value:
            return float(value)
    return 0.0


def extract_sources(documents: Iterable[Mapping[str, Any]]) -> list[SourceEntry]:
    sources: list[SourceEntry] = []
    for doc in documents:
        if not isinstance(doc, Mapping):
            continue
        title = doc.get("title") or doc.get("path") or "Untitled"
        sources.append(
            SourceEntry(
                title=str(title),
                path=str(doc.get("path") or doc.get("title") or ""),
                score=_score(doc),
                explanation=doc.get("explanation"),
            )
        )
    return sources


def deduplicate_sources(sources: Iterable[SourceEntry]) -> list[SourceEntry]:
    """Keep the highest-scoring entry per path (or title), best first."""

    unique: dict[str, SourceEntry] = {}
    for source in sources:
        existing = unique.get(source.key)
        if existing is None or source.score > existing.score:
            unique[source.key] = source
    return sorted(unique.values(), key=lambda entry: entry.score, reverse=True)


# -----------------------------------------------------------------------------
# Tool result processing
# -----------------------------------------------------------------------------


def process_local_search_result(
    result: ToolExecutionResult,
    *,
    time_range: str | None = None,
    max_chars: int = MAX_LOCAL_SEARCH_CONTEXT_CHARS,
) -> LocalSearchOutcome:
    """Turn a raw local-search tool result into model text plus sources."""

    if not result.success:
        return LocalSearchOutcome(formatted_for_llm=_wrap(SEARCH_FAILED_TEXT, time_range))

    try:
        documents = json.loads(result.result)
    except (TypeError, ValueError):
        LOGGER.warning("Local search returned non-JSON output; passing it through as text")
        return LocalSearchOutcome(formatted_for_llm=_wrap(result.result, time_range))

    if not isinstance(documents, list):
        return LocalSearchOutcome(formatted_for_llm=_wrap(INVALID_RESULTS_TEXT, time_range))

    sources = tuple(extract_sources(documents))
    included = [doc for doc in documents if isinstance(doc, Mapping) and _included(doc)]
    body = format_search_results_for_llm(_fit_to_budget(included, max_chars))
    LOGGER.debug("Local search returned %d document(s), %d in context", len(documents), len(included))
    display = f"Found {len(sources)} document(s)" if sources else "No matching documents"
    return LocalSearchOutcome(
        formatted_for_llm=_wrap(body, time_range),
        sources=sources,
        display_result=display,
    )


# -----------------------------------------------------------------------------
# Context-before-question ordering
# -----------------------------------------------------------------------------


def build_context_first_message(context: str, question: str) -> str:
    """Place the context block first, then the labelled question."""

    if not question.strip():
        return context
    if not context.strip():
        return f"{QUESTION_LABEL} {question}"
    return f"{context}\n\n{QUESTION_LABEL} {question}"


def ensure_context_before_question(
    payload: str,
    question: str,
    *,
    citation_reminder: bool = False,
) -> str:
    """Append the restated question after a local-search payload.

    The question is not appended twice when the payload already ends with it.
    """

    if not question.strip():
        return payload
    restated = f"{question} {_CITATION_REMINDER}" if citation_reminder else question
    if payload.rstrip().endswith(f"{QUESTION_LABEL} {restated}"):
        return payload
    return build_context_first_message(payload, restated)
