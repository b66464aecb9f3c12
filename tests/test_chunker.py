"""Tests for sentence-aligned chunking with overlap."""

import pytest

from sitevector.services.chunker import SENTENCE_SPLIT, ChunkingOptions, TextChunker


def document(sentences: int = 100, per_paragraph: int = 10) -> str:
    """Plain text of ten-word sentences grouped into paragraphs."""
    lines = [
        f"Sentence {i} describes the product catalog in plain simple words."
        for i in range(1, sentences + 1)
    ]
    paragraphs = [
        " ".join(lines[start:start + per_paragraph])
        for start in range(0, len(lines), per_paragraph)
    ]
    return "\n\n".join(paragraphs)


@pytest.fixture
def chunker():
    return TextChunker(ChunkingOptions(min_tokens=300, max_tokens=400, overlap_percent=17.5))


def test_thousand_words_give_a_few_overlapping_chunks(chunker):
    result = chunker.chunk(document())

    assert result.success
    assert 3 <= len(result.chunks) <= 5
    for left, right in zip(result.chunks, result.chunks[1:]):
        assert left.overlap_end > 0
        assert right.overlap_start > 0
    assert result.chunks[0].overlap_start == 0
    assert result.chunks[-1].overlap_end == 0


def test_core_chunks_stay_within_token_bounds(chunker):
    result = chunker.chunk(document())
    overlap_budget = chunker.options.overlap_tokens

    for chunk in result.chunks:
        assert chunk.core_token_count <= chunker.options.max_tokens
        assert chunk.overlap_start <= overlap_budget
        assert chunk.overlap_end <= overlap_budget
    for chunk in result.chunks[:-1]:
        assert chunk.core_token_count >= 300 * 0.9


def test_chunks_never_split_sentences(chunker):
    text = document()
    sentences = set(SENTENCE_SPLIT.split(text.replace("\n\n", " ")))

    for chunk in chunker.chunk(text).chunks:
        for piece in SENTENCE_SPLIT.split(chunk.content.replace("\n\n", " ")):
            assert piece in sentences


def test_indices_are_contiguous_and_positions_point_into_source(chunker):
    text = document()
    result = chunker.chunk(text)

    assert [c.index for c in result.chunks] == list(range(len(result.chunks)))
    for previous, chunk in zip(result.chunks, result.chunks[1:]):
        assert chunk.start_position >= previous.end_position
    first = result.chunks[0]
    assert text[first.start_position:first.end_position] == first.content[:first.end_position - first.start_position]
    assert text[first.start_position:].startswith("Sentence 1 ")


def test_chunking_is_deterministic(chunker):
    text = document(sentences=73, per_paragraph=7)

    first = chunker.chunk(text)
    second = chunker.chunk(text)

    assert [c.content for c in first.chunks] == [c.content for c in second.chunks]
    assert [c.quality_score for c in first.chunks] == [c.quality_score for c in second.chunks]


def test_short_text_is_a_single_chunk(chunker):
    result = chunker.chunk("Just one short sentence. And another one here.")

    assert len(result.chunks) == 1
    chunk = result.chunks[0]
    assert chunk.split_reason == "end_of_content"
    assert not chunk.has_overlap
    assert chunk.sentence_count == 2
    assert result.overlap_effectiveness == 100.0


def test_headings_are_tracked():
    chunker = TextChunker(ChunkingOptions(min_tokens=20, max_tokens=40, overlap_percent=0))
    text = (
        "## Getting Started\n\n"
        + " ".join(f"Step {i} installs the package and checks the version." for i in range(1, 4))
        + "\n\nConfiguration Options\n\n"
        + " ".join(f"Option {i} controls one behaviour of the crawler." for i in range(1, 4))
    )

    result = chunker.chunk(text)

    assert result.chunks[0].heading_text == "Getting Started"
    assert result.chunks[0].heading_level == 2
    headings = [c.heading_text for c in result.chunks if c.heading_text]
    assert "Configuration Options" in headings
    assert all(not c.has_overlap for c in result.chunks)


def test_lists_and_links_are_flagged(chunker):
    text = "Features include:\n\n- Fast search across pages.\n\n- See https://example.com/docs for more."

    chunk = chunker.chunk(text).chunks[0]

    assert chunk.contains_lists
    assert chunk.contains_links


@pytest.mark.parametrize("content", ["", "   \n\n  "])
def test_empty_content_fails(chunker, content):
    result = chunker.chunk(content)

    assert not result.success
    assert result.error == "Content is empty"
    assert result.chunks == []


def test_quality_aggregates(chunker):
    result = chunker.chunk(document())

    assert 0 <= result.average_quality <= 100
    assert 0 <= result.consistency <= 100
    assert result.overlap_effectiveness == 100.0
    assert result.total_tokens == sum(c.token_count for c in result.chunks)
