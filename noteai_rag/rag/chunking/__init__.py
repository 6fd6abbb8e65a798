"""Text chunking with overlap and boundary preservation.

Splits content into overlapping, boundary-aware chunks suitable for
embedding and retrieval.
"""

import logging
import re
from dataclasses import dataclass, replace
from uuid import NAMESPACE_DNS, uuid4, uuid5

from noteai_rag.core.config import get_settings
from noteai_rag.core.errors import ConfigurationError
from noteai_rag.rag.models import ContentChunk
from noteai_rag.rag.tokens import SENTENCE_TERMINATOR

logger = logging.getLogger(__name__)

PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n")
MARKDOWN_HEADER = re.compile(r"^#{1,6}\s", re.MULTILINE)


@dataclass
class ChunkOptions:
    """Chunking parameters. Sizes are in characters."""

    max_size: int = 1000
    overlap: int = 200
    min_chunk_size: int = 100
    preserve_sentence_boundaries: bool = True
    preserve_paragraph_boundaries: bool = True
    split_on_headers: bool = False

    def validate(self) -> None:
        """Raise ConfigurationError for parameters that cannot produce chunks."""
        if self.max_size <= 0:
            raise ConfigurationError(f"max_size must be positive, got {self.max_size}")
        if self.overlap < 0:
            raise ConfigurationError(f"overlap must not be negative, got {self.overlap}")
        if self.overlap >= self.max_size:
            raise ConfigurationError(
                f"overlap ({self.overlap}) must be smaller than max_size ({self.max_size})"
            )
        if self.min_chunk_size < 0:
            raise ConfigurationError(
                f"min_chunk_size must not be negative, got {self.min_chunk_size}"
            )
        if self.min_chunk_size > self.max_size:
            raise ConfigurationError(
                f"min_chunk_size ({self.min_chunk_size}) exceeds max_size ({self.max_size})"
            )

    @property
    def step(self) -> int:
        return self.max_size - self.overlap


class TextChunker:
    """Sliding-window chunker.

    Window i nominally covers ``[i * step, i * step + max_size)``. With boundary
    preservation the end of a window moves back to the last paragraph break or
    sentence terminator inside the region it shares with the next window, and
    the next window starts right after the first one. Ends only move inward,
    so no chunk is longer than ``max_size`` and consecutive chunks never share
    more than ``overlap`` characters.

    Stateless: every call is independent.
    """

    def __init__(self, options: ChunkOptions | None = None):
        self.options = options or ChunkOptions()
        self.options.validate()

    def chunk(
        self,
        text: str,
        max_size: int | None = None,
        overlap: int | None = None,
        options: ChunkOptions | None = None,
        content_id: str | None = None,
    ) -> list[ContentChunk]:
        """Split text into ordered chunks.

        Args:
            text: Source text
            max_size: Overrides the window size of ``options``
            overlap: Overrides the overlap of ``options``
            options: Per-call options (defaults to the chunker's options)
            content_id: Parent content id; makes chunk ids deterministic

        Returns:
            Chunks in source order with offsets into ``text``
        """
        opts = options or self.options
        if max_size is not None or overlap is not None:
            opts = replace(
                opts,
                max_size=opts.max_size if max_size is None else max_size,
                overlap=opts.overlap if overlap is None else overlap,
            )
        opts.validate()

        if not text or not text.strip():
            return []

        spans: list[tuple[int, int]] = []
        for section_start, section_end in self._sections(text, opts):
            spans.extend(self._window_spans(text, section_start, section_end, opts))

        total = len(spans)
        chunks = [
            ContentChunk(
                id=self._chunk_id(content_id, position),
                text=text[start:end],
                start_index=start,
                end_index=end,
                position=position,
                total_chunks=total,
            )
            for position, (start, end) in enumerate(spans)
        ]

        logger.debug(
            f"[Chunker] {len(text)} chars -> {total} chunks "
            f"(max_size={opts.max_size}, overlap={opts.overlap})"
        )
        return chunks

    def _sections(self, text: str, opts: ChunkOptions) -> list[tuple[int, int]]:
        if not opts.split_on_headers:
            return [(0, len(text))]
        cuts = [m.start() for m in MARKDOWN_HEADER.finditer(text) if m.start() > 0]
        bounds = [0, *cuts, len(text)]
        return [(bounds[i], bounds[i + 1]) for i in range(len(bounds) - 1)]

    def _window_spans(
        self, text: str, section_start: int, section_end: int, opts: ChunkOptions
    ) -> list[tuple[int, int]]:
        windows: list[list[int]] = []
        start = section_start
        while True:
            end = min(start + opts.max_size, section_end)
            windows.append([start, end])
            if end >= section_end:
                break
            start += opts.step

        if opts.overlap and (opts.preserve_sentence_boundaries or opts.preserve_paragraph_boundaries):
            for current, following in zip(windows, windows[1:], strict=False):
                # Shared region: [following's nominal start, current's nominal end)
                boundaries = self._boundaries(text, following[0], current[1], opts)
                if not boundaries:
                    continue
                new_end = boundaries[-1][0]
                new_start = boundaries[0][1]
                if new_end <= current[0] or new_start >= following[1]:
                    continue
                current[1] = new_end
                following[0] = new_start

        spans = []
        for start, end in windows:
            segment = text[start:end]
            stripped_left = segment.lstrip()
            start += len(segment) - len(stripped_left)
            end = start + len(stripped_left.rstrip())
            if end <= start or end - start < opts.min_chunk_size:
                continue
            spans.append((start, end))
        return spans

    def _boundaries(
        self, text: str, region_start: int, region_end: int, opts: ChunkOptions
    ) -> list[tuple[int, int]]:
        """Candidate cuts inside a region as (end of this chunk, start of next)."""
        region = text[region_start:region_end]
        if opts.preserve_paragraph_boundaries:
            found = [
                (region_start + m.start(), region_start + m.end())
                for m in PARAGRAPH_BREAK.finditer(region)
            ]
            if found:
                return found
        if opts.preserve_sentence_boundaries:
            return [
                (region_start + m.end(), region_start + m.end())
                for m in SENTENCE_TERMINATOR.finditer(region)
            ]
        return []

    @staticmethod
    def _chunk_id(content_id: str | None, position: int) -> str:
        # Deterministic ids keep re-indexing idempotent
        if content_id is None:
            return str(uuid4())
        return str(uuid5(NAMESPACE_DNS, f"{content_id}:{position}"))


def get_chunker() -> TextChunker:
    """Build a chunker from the configured defaults."""
    settings = get_settings()
    return TextChunker(
        ChunkOptions(
            max_size=settings.chunk_size,
            overlap=settings.chunk_overlap,
            min_chunk_size=settings.chunk_min_size,
            preserve_sentence_boundaries=settings.chunk_preserve_sentences,
            preserve_paragraph_boundaries=settings.chunk_preserve_paragraphs,
            split_on_headers=settings.chunk_split_on_headers,
        )
    )


__all__ = [
    "ChunkOptions",
    "TextChunker",
    "get_chunker",
]
