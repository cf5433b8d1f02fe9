"""Citation guidance and post-processing of cited answers."""

from .normalizer import (
    SourcesSection,
    build_citation_map,
    consolidate_duplicate_sources,
    convert_footnote_definitions,
    extract_sources_section,
    normalize_citations,
    normalize_sources_block,
    parse_footnote_definitions,
    process_inline_citations,
    render_sources_list,
    update_citations_for_consolidation,
)
from .rules import (
    CITATION_RULES,
    MAX_FALLBACK_SOURCES,
    add_fallback_sources,
    format_source_catalog,
    get_citation_instructions,
    get_qa_citation_instructions,
    get_qa_citation_instructions_if_enabled,
    get_vault_citation_guidance,
    has_existing_citations,
    sanitize_content_for_citations,
)

__all__ = [
    # Guidance
    "CITATION_RULES",
    "MAX_FALLBACK_SOURCES",
    "get_vault_citation_guidance",
    "get_qa_citation_instructions",
    "get_citation_instructions",
    "get_qa_citation_instructions_if_enabled",
    "format_source_catalog",
    # Answer helpers
    "sanitize_content_for_citations",
    "has_existing_citations",
    "add_fallback_sources",
    # Normalization
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
