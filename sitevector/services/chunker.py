"""Text chunking service.

Splits clean page text into token-bounded passages that never break a
sentence, then adds overlapping context between neighbouring passages.
"""

import logging
import re
import statistics
from dataclasses import dataclass, field

from sitevector.config import Settings
from sitevector.services.extractor import estimate_tokens

logger = logging.getLogger(__name__)

SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+(?=[A-Z])")
MARKDOWN_HEADING = re.compile(r"^(#{1,6})\s+(.*)$")
LIST_ITEM = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+", re.MULTILINE)
LINK_PATTERN = re.compile(r"https?://\S+|\[[^\]]+\]\([^)]+\)")


@dataclass
class ChunkingOptions:
    min_tokens: int = 300
    max_tokens: int = 400
    overlap_percent: float = 17.5

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChunkingOptions":
        return cls(
            min_tokens=settings.chunk_min_tokens,
            max_tokens=settings.chunk_max_tokens,
            overlap_percent=settings.chunk_overlap_percent,
        )

    @property
    def overlap_tokens(self) -> int:
        return round(self.max_tokens * self.overlap_percent / 100)


@dataclass
class Boundary:
    """One sentence (or heading line) of the source text."""
    text: str
    start: int
    end: int
    tokens: int
    is_heading: bool = False
    heading_level: int | None = None
    is_paragraph_end: bool = False


@dataclass
class TextChunk:
    """A passage ready for embedding."""
    index: int
    content: str
    token_count: int
    core_token_count: int
    start_position: int
    end_position: int
    sentence_count: int
    paragraph_count: int
    heading_text: str | None = None
    heading_level: int | None = None
    contains_lists: bool = False
    contains_links: bool = False
    overlap_start: int = 0  # tokens borrowed from the previous chunk
    overlap_end: int = 0  # tokens borrowed from the next chunk
    quality_score: int = 0
    completeness: int = 0
    coherence: int = 0
    split_reason: str = "end_of_content"  # paragraph, sentence, token_limit, end_of_content

    @property
    def has_overlap(self) -> bool:
        return self.overlap_start > 0 or self.overlap_end > 0


@dataclass
class ChunkingResult:
    success: bool
    chunks: list[TextChunk] = field(default_factory=list)
    total_tokens: int = 0
    average_quality: float = 0.0
    consistency: float = 0.0
    overlap_effectiveness: float = 0.0
    error: str | None = None


class TextChunker:
    """Split text into overlapping, sentence-aligned chunks."""

    def __init__(self, options: ChunkingOptions | None = None):
        self.options = options or ChunkingOptions()

    def chunk(self, content: str, options: ChunkingOptions | None = None) -> ChunkingResult:
        """Chunk ``content``; deterministic for identical input and options."""
        options = options or self.options
        if not content or not content.strip():
            return ChunkingResult(success=False, error="Content is empty")

        text = self.normalize(content)
        boundaries = self._boundaries(text)
        if not boundaries:
            return ChunkingResult(success=False, error="Content is empty")

        groups = self._group(boundaries, options)
        chunks = [self._build_chunk(i, group, reason) for i, (group, reason) in enumerate(groups)]
        self._apply_overlap(chunks, groups, options)
        for chunk in chunks:
            self._score(chunk, groups[chunk.index][0])

        result = ChunkingResult(success=True, chunks=chunks)
        self._aggregate(result)
        logger.debug(
            f"Chunked {len(text)} chars into {len(chunks)} chunks "
            f"(avg quality {result.average_quality:.1f})"
        )
        return result

    @staticmethod
    def normalize(content: str) -> str:
        text = content.replace("\r\n", "\n").replace("\r", "\n")
        text = re.sub(r"[ \t\f\v]+", " ", text)
        text = re.sub(r" *\n *", "\n", text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()

    def _boundaries(self, text: str) -> list[Boundary]:
        boundaries: list[Boundary] = []
        offset = 0
        lines = text.split("\n")

        for line_number, line in enumerate(lines):
            line_start = offset
            offset += len(line) + 1
            stripped = line.strip()
            if not stripped:
                if boundaries:
                    boundaries[-1].is_paragraph_end = True
                continue

            next_blank = line_number + 1 >= len(lines) or not lines[line_number + 1].strip()
            heading_level = self._heading_level(stripped)
            if heading_level:
                boundaries.append(
                    Boundary(
                        text=stripped,
                        start=line_start,
                        end=line_start + len(line),
                        tokens=estimate_tokens(stripped),
                        is_heading=True,
                        heading_level=heading_level,
                        is_paragraph_end=next_blank,
                    )
                )
                continue

            cursor = line_start
            for sentence in SENTENCE_SPLIT.split(line):
                sentence = sentence.strip()
                if not sentence:
                    continue
                start = text.index(sentence, cursor)
                cursor = start + len(sentence)
                boundaries.append(
                    Boundary(
                        text=sentence,
                        start=start,
                        end=cursor,
                        tokens=estimate_tokens(sentence),
                    )
                )
            if next_blank and boundaries:
                boundaries[-1].is_paragraph_end = True

        return boundaries

    @staticmethod
    def _heading_level(line: str) -> int | None:
        match = MARKDOWN_HEADING.match(line)
        if match:
            return len(match.group(1))

        if len(line) >= 100 or line.endswith(".") or "," in line:
            return None
        words = line.split()
        if not words or len(words) > 12:
            return None
        capitalized = sum(1 for word in words if word[0].isupper())
        if capitalized / len(words) > 0.7:
            return 2
        return None

    def _group(
        self,
        boundaries: list[Boundary],
        options: ChunkingOptions,
    ) -> list[tuple[list[Boundary], str]]:
        """Greedily pack boundaries; a chunk closes only once it meets the minimum."""
        groups: list[tuple[list[Boundary], str]] = []
        current: list[Boundary] = []
        tokens = 0

        for boundary in boundaries:
            if current and tokens + boundary.tokens > options.max_tokens and tokens >= options.min_tokens:
                last = current[-1]
                if last.is_paragraph_end:
                    reason = "paragraph"
                elif boundary.is_heading:
                    reason = "sentence"
                else:
                    reason = "token_limit"
                groups.append((current, reason))
                current, tokens = [], 0
            current.append(boundary)
            tokens += boundary.tokens

        if current:
            groups.append((current, "end_of_content"))
        return groups

    def _build_chunk(self, index: int, group: list[Boundary], reason: str) -> TextChunk:
        content = self._join(group)
        heading = next((b for b in group if b.is_heading), None)
        tokens = estimate_tokens(content)
        return TextChunk(
            index=index,
            content=content,
            token_count=tokens,
            core_token_count=tokens,
            start_position=group[0].start,
            end_position=group[-1].end,
            sentence_count=sum(1 for b in group if not b.is_heading),
            paragraph_count=max(1, sum(1 for b in group if b.is_paragraph_end)),
            heading_text=self._heading_text(heading) if heading else None,
            heading_level=heading.heading_level if heading else None,
            contains_lists=bool(LIST_ITEM.search(content)),
            contains_links=bool(LINK_PATTERN.search(content)),
            split_reason=reason,
        )

    @staticmethod
    def _heading_text(boundary: Boundary) -> str:
        return MARKDOWN_HEADING.sub(r"\2", boundary.text).strip()[:512]

    @staticmethod
    def _join(group: list[Boundary]) -> str:
        parts: list[str] = []
        for i, boundary in enumerate(group):
            parts.append(boundary.text)
            if i < len(group) - 1:
                parts.append("\n\n" if boundary.is_paragraph_end or boundary.is_heading else " ")
        return "".join(parts)

    def _apply_overlap(
        self,
        chunks: list[TextChunk],
        groups: list[tuple[list[Boundary], str]],
        options: ChunkingOptions,
    ) -> None:
        budget = options.overlap_tokens
        if budget <= 0 or len(chunks) < 2:
            return

        for chunk in chunks:
            prefix: list[Boundary] = []
            suffix: list[Boundary] = []

            if chunk.index > 0:
                used = 0
                for boundary in reversed(groups[chunk.index - 1][0]):
                    if used + boundary.tokens > budget:
                        break
                    prefix.insert(0, boundary)
                    used += boundary.tokens

            if chunk.index < len(chunks) - 1:
                used = 0
                for boundary in groups[chunk.index + 1][0]:
                    if used + boundary.tokens > budget:
                        break
                    suffix.append(boundary)
                    used += boundary.tokens

            if not prefix and not suffix:
                continue

            core = groups[chunk.index][0]
            chunk.overlap_start = sum(b.tokens for b in prefix)
            chunk.overlap_end = sum(b.tokens for b in suffix)
            chunk.content = self._join(prefix + core + suffix)
            chunk.token_count = estimate_tokens(chunk.content)

    def _score(self, chunk: TextChunk, core: list[Boundary]) -> None:
        score = 70
        ends_paragraph = core[-1].is_paragraph_end

        if chunk.heading_text:
            score += 15
        if ends_paragraph:
            score += 10

        coherent = 2 <= chunk.sentence_count <= 8
        if coherent:
            score += 10
        elif chunk.sentence_count > 15:
            score -= 10

        tokens = chunk.core_token_count
        if 300 <= tokens <= 400:
            score += 10
        elif tokens < 200:
            score -= 15
        elif tokens > 500:
            score -= 10

        chunk.quality_score = max(0, min(100, score))
        chunk.completeness = 90 if ends_paragraph else 70
        chunk.coherence = 85 if coherent else 60

    @staticmethod
    def _aggregate(result: ChunkingResult) -> None:
        chunks = result.chunks
        result.total_tokens = sum(c.token_count for c in chunks)
        result.average_quality = sum(c.quality_score for c in chunks) / len(chunks)

        sizes = [c.core_token_count for c in chunks]
        mean = statistics.fmean(sizes)
        if len(sizes) > 1 and mean > 0:
            cv = statistics.pstdev(sizes) / mean
            result.consistency = max(0.0, 100 - cv * 100)
        else:
            result.consistency = 100.0

        if len(chunks) == 1:
            result.overlap_effectiveness = 100.0
        else:
            with_overlap = sum(1 for c in chunks if c.has_overlap)
            result.overlap_effectiveness = with_overlap / len(chunks) * 100
