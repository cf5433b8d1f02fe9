"""Renumbering of footnote-style citations in a finished answer.

The model is asked to cite with ``[^n]`` footnotes and to close with a
``#### Sources`` section of ``[^n]: [[Title]]`` lines. Models number those
footnotes inconsistently, so the answer is rewritten so that:

* citations are numbered by first mention in the body, contiguously from 1,
  and sources the body never cites are dropped;
* inline markers render as plain ``[n]`` (groups as ``[1, 3]``, sorted);
* sources sharing a title collapse into a single entry;
* the trailing section becomes a collapsible, indexed list.

Duplicate detection compares titles case-insensitively. Two distinct notes
with the same title are therefore merged; this is a known approximation.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from html import escape

__all__ = [
    "SourcesSection",
    "extract_sources_section",
    "normalize_sources_block",
    "parse_footnote_definitions",
    "build_citation_map",
    "normalize_citations",
    "convert_footnote_definitions",
    "consolidate_duplicate_sources",
    "update_citations_for_consolidation",
    "render_sources_list",
    "process_inline_citations",
]

LOGGER = logging.getLogger(__name__)

_SOURCES_SPLIT_RE = re.compile(
    r"([\s\S]*?)\n+[ \t]*(?:#{1,6}[ \t]*)?(?:\*\*)?Sources(?:\*\*)?[ \t]*[:\-]?[ \t]*\n+([\s\S]*)$",
    re.IGNORECASE,
)
_FOOTNOTE_DEF_RE = re.compile(r"^\[\^(\d+)\]:\s*(.*)$")
# [^3] or [^2, ^4]; a leading "[" (wikilink) or trailing "(" (markdown link) disqualifies
_FOOTNOTE_GROUP_RE = re.compile(r"(?<!\[)\[\^(\d+(?:\s*,\s*\^?\d+)*)\](?!\()(\.)?")
_NUMERIC_GROUP_RE = re.compile(r"(?<!\[)\[(\d+(?:\s*,\s*\d+)*)\](?![(\]])(\.)?")
_WIKILINK_RE = re.compile(r"\[\[(.*?)\]\]")
_TITLED_URL_RE = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)")
_TRAILING_PAREN_RE = re.compile(r"\s*\([^)]*\)\s*$")
_BULLET_WIKILINK_RE = re.compile(r"^[-*]\s+\[\[(.*?)\]\]")
_MAX_PASSES = 8

_SUMMARY_CLASS = "wayfinder-sources__summary"
_LIST_CLASS = "wayfinder-sources__list"
_ITEM_CLASS = "wayfinder-sources__item"
_INDEX_CLASS = "wayfinder-sources__index"
_TEXT_CLASS = "wayfinder-sources__text"


@dataclass(slots=True, frozen=True)
class SourcesSection:
    main_content: str
    sources_block: str


# -----------------------------------------------------------------------------
# Parsing
# -----------------------------------------------------------------------------


def extract_sources_section(content: str) -> SourcesSection | None:
    """Split ``content`` at its trailing sources heading, if it has one."""

    match = _SOURCES_SPLIT_RE.match(content or "")
    if match is None:
        return None
    return SourcesSection(main_content=match.group(1), sources_block=(match.group(2) or "").strip())


def normalize_sources_block(sources_block: str) -> str:
    """Break a single-line sources block into one entry per line."""

    if "\n" in sources_block:
        return sources_block
    block = re.sub(r"\s+(?=\[\^\d+\]:)", "\n", sources_block)
    block = re.sub(r"\s*\[(\d+)\]\s*", r"\n[\1] ", block)
    block = re.sub(r"\s+(\d+)\.\s", r"\n\1. ", block)
    return block.strip()


def parse_footnote_definitions(sources_block: str) -> list[str]:
    return [
        line.strip()
        for line in sources_block.split("\n")
        if _FOOTNOTE_DEF_RE.match(line.strip())
    ]


def build_citation_map(main_content: str, footnote_lines: list[str]) -> dict[int, int]:
    """Map original footnote numbers to their first-mention position.

    Only footnotes that have a definition are numbered, and definitions the
    body never cites are left out. When the body cites no defined footnote,
    definition order is used instead.
    """

    defined: list[int] = []
    for line in footnote_lines:
        match = _FOOTNOTE_DEF_RE.match(line)
        if match is not None and int(match.group(1)) not in defined:
            defined.append(int(match.group(1)))

    mapping: dict[int, int] = {}
    for match in _FOOTNOTE_GROUP_RE.finditer(main_content):
        for number in _numbers(match.group(1)):
            if number in defined and number not in mapping:
                mapping[number] = len(mapping) + 1
    if mapping:
        return mapping
    return {number: position for position, number in enumerate(defined, start=1)}


# -----------------------------------------------------------------------------
# Rewriting
# -----------------------------------------------------------------------------


def _numbers(group: str) -> list[int]:
    return [int(part.strip().lstrip("^")) for part in group.split(",") if part.strip()]


def _render_group(numbers: list[int]) -> str:
    return "[" + ", ".join(str(number) for number in sorted(set(numbers))) + "]"


def normalize_citations(content: str, mapping: dict[int, int]) -> str:
    """Rewrite inline markers through ``mapping``.

    Footnote markers become ``[n]``; footnotes missing from ``mapping`` are
    dropped, and a marker left with no footnotes is removed. Plain numeric
    markers are remapped as well. A period directly after a kept marker is
    dropped so that a marker at the start of a line is not read as an
    ordered-list item.
    """

    def footnote(match: re.Match[str]) -> str:
        numbers = [mapping[number] for number in _numbers(match.group(1)) if number in mapping]
        if not numbers:
            return match.group(2) or ""
        return _render_group(numbers)

    def numeric(match: re.Match[str]) -> str:
        return _render_group([mapping.get(number, number) for number in _numbers(match.group(1))])

    # Numeric markers first so freshly rewritten footnotes are not remapped twice.
    content = _NUMERIC_GROUP_RE.sub(numeric, content)
    for _ in range(_MAX_PASSES):
        rewritten = _FOOTNOTE_GROUP_RE.sub(footnote, content)
        if rewritten == content:
            break
        content = rewritten
    return content


def _display_form(definition: str) -> str:
    titled = _TITLED_URL_RE.search(definition)
    if titled is not None:
        return f"[{titled.group(1)}]({titled.group(2)})"
    wikilink = _WIKILINK_RE.search(definition)
    if wikilink is not None:
        return f"[[{wikilink.group(1)}]]"
    return _TRAILING_PAREN_RE.sub("", definition).strip()


def convert_footnote_definitions(sources_block: str, mapping: dict[int, int]) -> list[str | None]:
    """Turn definition lines into display items positioned by new number.

    Definitions without an entry in ``mapping`` are skipped.
    """

    items: list[str | None] = []
    for line in sources_block.split("\n"):
        match = _FOOTNOTE_DEF_RE.match(line.strip())
        if match is None:
            continue
        number = int(match.group(1))
        position = mapping.get(number)
        if position is None:
            continue
        while len(items) < position:
            items.append(None)
        items[position - 1] = _display_form(match.group(2))
    return items


def _title_key(item: str) -> str:
    wikilink = _WIKILINK_RE.search(item)
    if wikilink is not None:
        return wikilink.group(1).lower()
    titled = _TITLED_URL_RE.search(item)
    if titled is not None:
        return titled.group(1).lower()
    return item.lower()


def consolidate_duplicate_sources(items: list[str | None]) -> tuple[list[str], dict[int, int]]:
    """Collapse items with the same title.

    Returns the unique items and a map from 1-based item positions to their
    position among the unique items.
    """

    unique: list[str] = []
    first_seen: dict[str, int] = {}
    consolidation: dict[int, int] = {}
    for index, item in enumerate(items, start=1):
        if not item:
            continue
        key = _title_key(item)
        if key in first_seen:
            consolidation[index] = first_seen[key]
            continue
        unique.append(item)
        first_seen[key] = len(unique)
        consolidation[index] = len(unique)
    return unique, consolidation


def update_citations_for_consolidation(content: str, consolidation: dict[int, int]) -> str:
    if not consolidation:
        return content

    def remap(match: re.Match[str]) -> str:
        return _render_group([consolidation.get(number, number) for number in _numbers(match.group(1))])

    return _NUMERIC_GROUP_RE.sub(remap, content)


# -----------------------------------------------------------------------------
# Rendering
# -----------------------------------------------------------------------------


def render_sources_list(items: list[str]) -> str:
    rows = "\n".join(
        f'<div class="{_ITEM_CLASS}"><span class="{_INDEX_CLASS}">[{index}]</span>'
        f'<span class="{_TEXT_CLASS}">{escape(item, quote=False)}</span></div>'
        for index, item in enumerate(items, start=1)
    )
    return (
        f'\n\n<br/>\n<details><summary class="{_SUMMARY_CLASS}">Sources</summary>\n'
        f'<div class="{_LIST_CLASS}">\n{rows}\n</div>\n</details>'
    )


def _simple_items(sources_block: str) -> list[str]:
    items: list[str] = []
    for line in sources_block.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue
        bullet = _BULLET_WIKILINK_RE.match(stripped)
        items.append(f"[[{bullet.group(1)}]]" if bullet else stripped)
    return items


def process_inline_citations(content: str, enable_inline_citations: bool = True) -> str:
    """Normalize citations in a finished answer.

    Returns ``content`` unchanged when citations are disabled or when it has
    no sources section.
    """

    if not enable_inline_citations or not content:
        return content
    section = extract_sources_section(content)
    if section is None:
        return content

    main_content = section.main_content
    sources_block = normalize_sources_block(section.sources_block)
    footnote_lines = parse_footnote_definitions(sources_block)
    if not footnote_lines:
        items = _simple_items(sources_block)
        if not items:
            return main_content
        return main_content + render_sources_list(items)

    mapping = build_citation_map(main_content, footnote_lines)
    main_content = normalize_citations(main_content, mapping)
    converted = convert_footnote_definitions(sources_block, mapping)
    unique, consolidation = consolidate_duplicate_sources(converted)
    main_content = update_citations_for_consolidation(main_content, consolidation)
    if len(unique) < len([item for item in converted if item]):
        LOGGER.debug("Consolidated %d duplicate source(s)", len(converted) - len(unique))
    return main_content + render_sources_list(unique)
