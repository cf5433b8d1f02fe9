"""Human-readable one-line summaries of tool activity for the reasoning trace."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

__all__ = [
    "LOCAL_SEARCH_TOOL",
    "WEB_SEARCH_TOOL",
    "READ_NOTE_TOOL",
    "QueryExpansion",
    "LocalSearchSummary",
    "tool_display_name",
    "tool_emoji",
    "summarize_tool_call",
    "summarize_tool_result",
]

LOCAL_SEARCH_TOOL = "localSearch"
WEB_SEARCH_TOOL = "webSearch"
READ_NOTE_TOOL = "readNote"

_MAX_RECALL_TERMS = 6
_MAX_LOCAL_QUERY = 50
_MAX_WEB_QUERY = 30
_MAX_LISTED_TITLES = 3

_DISPLAY_NAMES: dict[str, str] = {
    "localSearch": "vault search",
    "webSearch": "web search",
    "getFileTree": "file tree",
    "getCurrentTime": "current time",
    "getTimeRangeMs": "time range",
    "getTimeInfoByEpoch": "time info",
    "convertTimeBetweenTimezones": "timezone converter",
    "youtubeTranscription": "YouTube transcription",
    "indexVault": "vault indexing",
    "writeToFile": "file editor",
    "replaceInFile": "file editor",
}

_EMOJI: dict[str, str] = {
    "localSearch": "🔍",
    "webSearch": "🌐",
    "getFileTree": "📁",
    "getCurrentTime": "🕒",
    "getTimeRangeMs": "📅",
    "getTimeInfoByEpoch": "🕰️",
    "convertTimeBetweenTimezones": "🌍",
    "youtubeTranscription": "📺",
    "indexVault": "📚",
    "writeToFile": "✏️",
    "replaceInFile": "🔄",
}

_CALL_PHRASES: dict[str, str] = {
    "getTimeRangeMs": "Calculating time range",
    "createNote": "Creating new note",
    "appendToNote": "Appending to note",
    "editNote": "Editing note",
    "deleteNote": "Deleting note",
    "youtubeTranscription": "Fetching video transcript",
    "fetchUrl": "Fetching URL content",
}

_RESULT_PHRASES: dict[str, str] = {
    "webSearch": "Retrieved web search results",
    "getTimeRangeMs": "Calculated time range",
    "readFile": "Read file content",
    "createNote": "Created new note",
    "appendToNote": "Appended to note",
    "editNote": "Edited note",
    "deleteNote": "Deleted note",
    "youtubeTranscription": "Fetched video transcript",
    "fetchUrl": "Fetched URL content",
}


@dataclass(slots=True, frozen=True)
class QueryExpansion:
    """Pre-computed expansion of a local-search query."""

    original_query: str
    salient_terms: tuple[str, ...] = ()
    expanded_queries: tuple[str, ...] = ()
    expanded_terms: tuple[str, ...] = ()

    @property
    def recall_terms(self) -> tuple[str, ...]:
        """All distinct terms used for recall, in first-seen order."""
        seen: dict[str, None] = {}
        for term in (*self.salient_terms, *self.expanded_queries, *self.expanded_terms):
            cleaned = term.strip() if isinstance(term, str) else ""
            if cleaned and cleaned not in seen:
                seen[cleaned] = None
        return tuple(seen)


@dataclass(slots=True, frozen=True)
class LocalSearchSummary:
    titles: tuple[str, ...] = ()
    count: int = 0
    expansion: QueryExpansion | None = None


def tool_display_name(tool_name: str) -> str:
    return _DISPLAY_NAMES.get(tool_name, tool_name)


def tool_emoji(tool_name: str) -> str:
    return _EMOJI.get(tool_name, "🔧")


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _note_title(note_path: str) -> str:
    name = note_path.rsplit("/", 1)[-1] or note_path
    if name.lower().endswith(".md"):
        name = name[:-3]
    return name or note_path


def _string_arg(args: Mapping[str, Any] | None, key: str) -> str | None:
    if not args:
        return None
    value = args.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return None


def summarize_tool_call(
    tool_name: str,
    args: Mapping[str, Any] | None = None,
    expansion: QueryExpansion | None = None,
) -> str:
    """Summary shown when a tool call is issued."""

    if tool_name == LOCAL_SEARCH_TOOL:
        terms: Sequence[str] = expansion.recall_terms if expansion else ()
        if terms:
            shown = ", ".join(f'"{term}"' for term in terms[:_MAX_RECALL_TERMS])
            more = len(terms) - _MAX_RECALL_TERMS
            suffix = f" +{more} more" if more > 0 else ""
            return f"Searching notes for {shown}{suffix}"
        query = _string_arg(args, "query")
        if query:
            return f'Searching notes for "{_truncate(query, _MAX_LOCAL_QUERY)}"'
        return "Searching notes"
    if tool_name == WEB_SEARCH_TOOL:
        query = _string_arg(args, "query")
        if query:
            return f'Searching web for "{_truncate(query, _MAX_WEB_QUERY)}"'
        return "Searching the web"
    if tool_name == "readFile":
        path = _string_arg(args, "path")
        if path:
            return f'Reading "{path.rsplit("/", 1)[-1] or path}"'
        return "Reading file"
    if tool_name == READ_NOTE_TOOL:
        note_path = _string_arg(args, "notePath")
        if note_path:
            return f'Reading "{_note_title(note_path)}"'
        return "Reading note"
    return _CALL_PHRASES.get(tool_name, f"Calling {tool_display_name(tool_name)}")


def summarize_tool_result(
    tool_name: str,
    success: bool,
    *,
    search: LocalSearchSummary | None = None,
    args: Mapping[str, Any] | None = None,
) -> str:
    """Summary shown once a tool call has completed."""

    if not success:
        return f"{tool_display_name(tool_name)} failed"
    if tool_name == LOCAL_SEARCH_TOOL:
        if search is not None and search.count > 0:
            titles = list(search.titles[:_MAX_LISTED_TITLES])
            noun = "note" if search.count == 1 else "notes"
            summary = f"Found {search.count} {noun}: {', '.join(titles)}"
            remaining = search.count - len(titles)
            if remaining > 0:
                summary += f" +{remaining} more"
            return summary
        return "No matching notes found"
    if tool_name == READ_NOTE_TOOL:
        note_path = _string_arg(args, "notePath")
        if note_path:
            return f'Read "{_note_title(note_path)}"'
        return "Read note content"
    return _RESULT_PHRASES.get(tool_name, f"Completed {tool_display_name(tool_name)}")
