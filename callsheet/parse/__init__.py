"""
Text preprocessing and chunking package.

This package normalizes decoded call sheet text, scores how tabular its
layout is, and splits it into section-aligned chunks for LLM extraction.
"""

from .models import (
    DocumentType,
    RawDocument,
    StructureAnalysis,
    TextChunk,
    ChunkPlan,
)

from .preprocessor import (
    estimate_tokens,
    normalize_text,
    analyze_structure,
    is_section_header,
    find_section_boundaries,
    classify_document,
    preprocess,
)

from .chunker import (
    ChunkingConfig,
    TextChunker,
    plan_chunks,
)

__all__ = [
    "DocumentType",
    "RawDocument",
    "StructureAnalysis",
    "TextChunk",
    "ChunkPlan",
    "estimate_tokens",
    "normalize_text",
    "analyze_structure",
    "is_section_header",
    "find_section_boundaries",
    "classify_document",
    "preprocess",
    "ChunkingConfig",
    "TextChunker",
    "plan_chunks",
]
