"""Citation guidance for prompts and helpers for answers that lack citations."""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Sequence

from ..types import SourceCatalogEntry, SourceEntry

__all__ = [
    "CITATION_RULES",
    "MAX_FALLBACK_SOURCES",
    "get_vault_citation_guidance",
    "get_qa_citation_instructions",
    "get_citation_instructions",
    "get_qa_citation_instructions_if_enabled",
    "format_source_catalog",
    "sanitize_content_for_citations",
    "has_existing_citations",
    "add_fallback_sources",
]

CITATION_RULES = """CITATION RULES:
1. START with [^1] and increment sequentially ([^1], [^2], [^3], etc.) with NO gaps
2. BE SELECTIVE: ONLY cite when introducing NEW factual claims, specific data, or direct quotes from sources
3. IMPORTANT: Do NOT cite every sentence or bullet point. This creates clutter and poor readability.
4. DO NOT cite for:
   - General knowledge or common facts
   - Your own analysis or synthesis
   - Transitional or concluding statements
   - Every single sentence (AVOID CITATION CLUTTER - aim for 1-3 citations per paragraph maximum)
5. Citations are for SOURCE ATTRIBUTION, not for proving every statement
6. GOOD: One citation per key concept. BAD: Citation after every sentence.
7. Place citations immediately after the specific claim: "The study found X [^1]" not "The study found X. [^1]"
8. Do not reuse any bracketed numbers that appear inside the source content itself
9. If multiple source chunks come from the same document, cite each relevant chunk separately (e.g., [^1] and [^2] can both be from the same document title)
10. End with '#### Sources' section containing: [^n]: [[Title]] (one per line, matching citation order)"""

MAX_FALLBACK_SOURCES = 20

_FOOTNOTE_REF_RE = re.compile(r"\[\^\d+\]")
_NUMERIC_REF_RE = re.compile(r"\[(\d+(?:\s*,\s*\d+)*)\](?!\()")
_FOOTNOTE_DEF_LINE_RE = re.compile(r"^\s*\[\^\d+\]:.*$", re.MULTILINE)
_SOURCES_HEADING_RE = re.compile(
    r"(?:^|\n)[ \t]*(?:#{1,6}[ \t]*)?(?:\*\*)?Sources(?:\*\*)?[ \t]*[:\-]?[ \t]*(?:\n|$)",
    re.IGNORECASE,
)
_SOURCES_SUMMARY_RE = re.compile(r"<summary[^>]*>\s*Sources", re.IGNORECASE)
_FOOTNOTE_DEF_RE = re.compile(r"(?:^|\n)[ \t]*\[\^\d+\]:")


# -----------------------------------------------------------------------------
# Guidance
# -----------------------------------------------------------------------------


def get_vault_citation_guidance(source_catalog: Sequence[str]) -> str:
    catalog = "\n".join(source_catalog)
    return (
        f"\n\n<guidance>\n{CITATION_RULES}\n\n"
        f"Source Catalog (for reference only):\n{catalog}\n</guidance>"
    )


def get_qa_citation_instructions(source_catalog: str) -> str:
    return f"\n\n{CITATION_RULES}\n\nSource Catalog (for reference only):\n{source_catalog}"


def get_citation_instructions(enable_inline_citations: bool, source_catalog: Sequence[str]) -> str:
    """Vault guidance block, or ``""`` when inline citations are disabled."""

    if not enable_inline_citations:
        return ""
    return get_vault_citation_guidance(source_catalog)


def get_qa_citation_instructions_if_enabled(enable_inline_citations: bool, source_catalog: str) -> str:
    if not enable_inline_citations:
        return ""
    return get_qa_citation_instructions(source_catalog)


def _entry_field(entry: Any, name: str) -> str:
    if isinstance(entry, Mapping):
        value = entry.get(name)
    else:
        value = getattr(entry, name, None)
    return value if isinstance(value, str) else ""


def format_source_catalog(
    sources: Iterable[SourceCatalogEntry | SourceEntry | Mapping[str, Any]],
) -> list[str]:
    """Render catalog entries as ``- [[title]] (path)`` lines."""

    lines: list[str] = []
    for source in sources:
        title = _entry_field(source, "title") or _entry_field(source, "path") or "Untitled"
        path = _entry_field(source, "path") or title
        lines.append(f"- [[{title}]] ({path})")
    return lines


# -----------------------------------------------------------------------------
# Answer-side helpers
# -----------------------------------------------------------------------------


def sanitize_content_for_citations(text: str | None) -> str:
    """Strip citation markers already present in retrieved content.

    Markdown links such as ``[1](https://...)`` are left alone.
    """

    if not text:
        return ""
    # Definition lines go first; once their markers are stripped they no longer match.
    out = _FOOTNOTE_DEF_LINE_RE.sub("", text)
    out = _FOOTNOTE_REF_RE.sub("", out)
    return _NUMERIC_REF_RE.sub("", out)


def has_existing_citations(response: str | None) -> bool:
    """Whether ``response`` already carries a sources section or footnote definitions.

    Inline references alone do not count.
    """

    if not response:
        return False
    return bool(
        _SOURCES_HEADING_RE.search(response)
        or _SOURCES_SUMMARY_RE.search(response)
        or _FOOTNOTE_DEF_RE.search(response)
    )


def add_fallback_sources(
    response: str | None,
    sources: Sequence[SourceEntry | Mapping[str, Any]] | None,
    enable_inline_citations: bool,
) -> str:
    """Append a footnote source list when the answer cited nothing itself."""

    if not enable_inline_citations or not sources or not response:
        return response or ""
    if has_existing_citations(response):
        return response

    lines = []
    for index, source in enumerate(list(sources)[:MAX_FALLBACK_SOURCES], start=1):
        title = _entry_field(source, "title") or _entry_field(source, "path") or "Untitled"
        lines.append(f"[^{index}]: [[{title}]]")
    return f"{response}\n\n#### Sources:\n\n" + "\n".join(lines)
