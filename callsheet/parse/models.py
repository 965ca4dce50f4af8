"""
Data models for call sheet text preprocessing.

Defines:
- RawDocument: immutable decoded text handed over by upstream parsers
- DocumentType: keyword-based classification of the whole document
- StructureAnalysis: layout statistics used by strategy selection
- TextChunk / ChunkPlan: bounded slices of text sent to the LLM
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class DocumentType(str, Enum):
    """Kind of production document, used to tailor the extraction prompt."""
    CALL_SHEET = "call_sheet"
    CONTACT_LIST = "contact_list"
    PRODUCTION_SCHEDULE = "production_schedule"
    CREW_LIST = "crew_list"
    TALENT_SHEET = "talent_sheet"
    UNKNOWN = "unknown"


class RawDocument(BaseModel):
    """Decoded document text plus optional upstream hints."""

    model_config = ConfigDict(frozen=True)

    text: str
    length_chars: int = 0
    mime_hint: Optional[str] = None
    file_name_hint: Optional[str] = None

    @classmethod
    def from_text(
        cls,
        text: str,
        mime_hint: Optional[str] = None,
        file_name_hint: Optional[str] = None,
    ) -> "RawDocument":
        """Build a document, filling in the character length."""
        return cls(
            text=text,
            length_chars=len(text),
            mime_hint=mime_hint,
            file_name_hint=file_name_hint,
        )


class StructureAnalysis(BaseModel):
    """Layout statistics for a normalized document."""

    model_config = ConfigDict(frozen=True)

    is_tabular: bool = False
    structure_score: float = Field(default=0.0, ge=0.0, le=1.0)
    section_boundaries: tuple[int, ...] = Field(
        default=(),
        description="Character offsets of detected section/role header lines",
    )
    separator_ratio: float = 0.0  # best ratio over | tab / :
    tabular_ratio: float = 0.0  # ratio of lines holding | or tab
    line_length_consistency: float = 0.0
    role_header_ratio: float = 0.0
    line_count: int = 0
    document_type: DocumentType = DocumentType.UNKNOWN
    document_type_confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class TextChunk(BaseModel):
    """One contiguous span of the normalized text."""

    index: int
    content: str
    char_start: int
    char_end: int
    section_title: Optional[str] = None  # first header inside the span
    context_section: Optional[str] = None  # trailing section of previous chunk
    estimated_tokens: int = 0


class ChunkPlan(BaseModel):
    """All chunks for a document plus truncation bookkeeping."""

    chunks: list[TextChunk] = Field(default_factory=list)
    total_chunks: int = 0  # before the max_chunks cap
    truncated: bool = False
    dropped_chars: int = 0

    @property
    def processed_count(self) -> int:
        return len(self.chunks)
