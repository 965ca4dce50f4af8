"""
Section-aware chunking for LLM extraction.

Splits call sheet text into contiguous spans no longer than the configured
character budget while preferring department/role header boundaries.
Chunks never overlap: concatenating every chunk's content in order gives
back the input text. Context is carried forward as the name of the section
the previous chunk ended in, not as repeated text.

Split points in priority order:
1. Section headers (detected by the preprocessor)
2. Line breaks
3. Hard character cut (last resort, for single huge lines)
"""

import bisect
import logging
from typing import Iterator, Optional

from .models import ChunkPlan, TextChunk
from .preprocessor import estimate_tokens, find_section_boundaries, header_title

logger = logging.getLogger(__name__)


class ChunkingConfig:
    """Configuration for chunking behavior."""

    def __init__(
        self,
        chunk_size_chars: int = 4000,
        max_chunks: int = 20,
    ):
        """
        Initialize chunking configuration.

        Args:
            chunk_size_chars: Maximum characters per chunk
            max_chunks: Chunks beyond this count are dropped from the plan
        """
        if chunk_size_chars <= 0:
            raise ValueError(f"chunk_size_chars must be positive, got {chunk_size_chars}")
        if max_chunks <= 0:
            raise ValueError(f"max_chunks must be positive, got {max_chunks}")
        self.chunk_size_chars = chunk_size_chars
        self.max_chunks = max_chunks


class TextChunker:
    """Chunks normalized call sheet text into bounded spans."""

    def __init__(self, config: Optional[ChunkingConfig] = None):
        self.config = config or ChunkingConfig()

    def single_chunk(self, text: str) -> ChunkPlan:
        """Wrap the whole text as one chunk (single-call extraction)."""
        boundaries = find_section_boundaries(text)
        chunk = TextChunk(
            index=0,
            content=text,
            char_start=0,
            char_end=len(text),
            section_title=self._first_header(text, boundaries, 0, len(text)),
            estimated_tokens=estimate_tokens(text),
        )
        return ChunkPlan(chunks=[chunk], total_chunks=1)

    def chunk_text(self, text: str, boundaries: Optional[list[int]] = None) -> ChunkPlan:
        """
        Split text into section-aligned chunks.

        Args:
            text: Normalized document text
            boundaries: Header line offsets; detected when not supplied

        Returns:
            ChunkPlan holding at most max_chunks chunks
        """
        if not text:
            return ChunkPlan()

        if boundaries is None:
            boundaries = find_section_boundaries(text)
        boundaries = sorted(set(boundaries))

        spans = list(self._pack(self._pieces(text, boundaries)))

        chunks = []
        previous_section: Optional[str] = None
        for index, (start, end) in enumerate(spans):
            chunks.append(TextChunk(
                index=index,
                content=text[start:end],
                char_start=start,
                char_end=end,
                section_title=self._first_header(text, boundaries, start, end),
                context_section=previous_section,
                estimated_tokens=estimate_tokens(text[start:end]),
            ))
            previous_section = self._trailing_section(text, boundaries, end) or previous_section

        total = len(chunks)
        if total > self.config.max_chunks:
            kept = chunks[: self.config.max_chunks]
            dropped = len(text) - kept[-1].char_end
            logger.warning(
                f"Chunk plan truncated: {total} chunks exceed max_chunks="
                f"{self.config.max_chunks}, dropping {dropped} chars"
            )
            return ChunkPlan(chunks=kept, total_chunks=total, truncated=True, dropped_chars=dropped)

        logger.info(f"Split {len(text)} chars into {total} chunks")
        return ChunkPlan(chunks=chunks, total_chunks=total)

    # ------------------------------------------------------------------

    def _pieces(self, text: str, boundaries: list[int]) -> Iterator[tuple[int, int]]:
        """Yield atomic spans: whole sections, or lines of oversize sections."""
        size = self.config.chunk_size_chars
        cuts = sorted(set([0, len(text)] + [b for b in boundaries if 0 < b < len(text)]))
        for start, end in zip(cuts, cuts[1:]):
            if end - start <= size:
                yield start, end
                continue
            line_start = start
            while line_start < end:
                newline = text.find("\n", line_start, end)
                line_end = end if newline == -1 else newline + 1
                while line_end - line_start > size:
                    yield line_start, line_start + size
                    line_start += size
                if line_end > line_start:
                    yield line_start, line_end
                line_start = line_end

    def _pack(self, pieces: Iterator[tuple[int, int]]) -> Iterator[tuple[int, int]]:
        """Greedily merge adjacent pieces while they fit the budget."""
        size = self.config.chunk_size_chars
        current: Optional[tuple[int, int]] = None
        for start, end in pieces:
            if current is None:
                current = (start, end)
            elif end - current[0] <= size:
                current = (current[0], end)
            else:
                yield current
                current = (start, end)
        if current is not None:
            yield current

    @staticmethod
    def _line_at(text: str, offset: int) -> str:
        newline = text.find("\n", offset)
        return text[offset:] if newline == -1 else text[offset:newline]

    def _first_header(self, text: str, boundaries: list[int], start: int, end: int) -> Optional[str]:
        i = bisect.bisect_left(boundaries, start)
        if i < len(boundaries) and boundaries[i] < end:
            return header_title(self._line_at(text, boundaries[i]))
        return None

    def _trailing_section(self, text: str, boundaries: list[int], end: int) -> Optional[str]:
        i = bisect.bisect_left(boundaries, end)
        if i == 0:
            return None
        return header_title(self._line_at(text, boundaries[i - 1]))


def plan_chunks(
    text: str,
    chunk_size_chars: int = 4000,
    max_chunks: int = 20,
    boundaries: Optional[list[int]] = None,
) -> ChunkPlan:
    """Convenience wrapper: chunk text with a one-off TextChunker."""
    chunker = TextChunker(ChunkingConfig(chunk_size_chars=chunk_size_chars, max_chunks=max_chunks))
    return chunker.chunk_text(text, boundaries=boundaries)
