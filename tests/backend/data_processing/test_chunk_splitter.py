"""
Unit tests for the chunk splitter.
"""

from clausemap.backend.data_processing.chunk_splitter import (
    body_without_heading, split_words_with_overlap, split_long_chunks
)
from clausemap.backend.data_processing.heading_segmenter import ChunkType, StructuredChunkDraft
from clausemap.backend.data_processing.patterns import StructureConfig


def make_draft(chunk_type: ChunkType, reference: str, heading: str, body: str) -> StructuredChunkDraft:
    return StructuredChunkDraft(
        chunk_type=chunk_type,
        reference=reference,
        ref_path=reference,
        heading=heading,
        text=f"{heading}\n\n{body}",
        page_start=10,
        page_end=12,
    )


def test_body_without_heading():
    """Test that a leading heading copy is dropped and lines are joined."""
    assert body_without_heading("5.2 Heading\n\nfirst\nsecond", "5.2 Heading") == " first second"
    assert body_without_heading("first\nsecond", "5.2 Heading") == "first second"


def test_split_words_with_overlap_limits_chunk_size():
    """Test that every window respects the word limit."""
    text = " ".join(f"w{index}" for index in range(1200))

    segments = split_words_with_overlap(text, 900, 75)

    assert len(segments) == 2
    assert all(len(segment.split()) <= 900 for segment in segments)
    assert segments[1].split()[0] == "w825"
    assert segments[1].split()[-1] == "w1199"


def test_split_words_with_overlap_short_and_empty_text():
    """Test the single-window cases."""
    assert split_words_with_overlap("a  b\nc", 10, 2) == ["a b c"]
    assert split_words_with_overlap("   ", 10, 2) == [""]


def test_split_words_with_overlap_always_advances():
    """Test that an overlap as large as the window cannot stall the loop."""
    segments = split_words_with_overlap("a b c d e", 2, 5)

    assert segments == ["a b", "c d", "e"]


def test_split_long_chunks_preserves_reference_and_heading():
    """Test that split fragments keep the draft's identity."""
    body = " ".join(f"word{index}" for index in range(1200))
    draft = make_draft(ChunkType.CLAUSE, "5.2", "5.2 Software safety", body)

    expanded = split_long_chunks([draft])

    assert len(expanded) >= 2
    assert all(chunk.reference == "5.2" for chunk in expanded)
    assert all(chunk.heading == "5.2 Software safety" for chunk in expanded)
    assert all(chunk.page_start == 10 and chunk.page_end == 12 for chunk in expanded)
    assert all(chunk.text.startswith("5.2 Software safety\n\n") for chunk in expanded)
    assert all(
        len(body_without_heading(chunk.text, chunk.heading).split()) <= 900
        for chunk in expanded
    )


def test_split_long_chunks_leaves_tables_and_short_drafts():
    """Test that tables and bodies within the limit pass through unchanged."""
    long_body = " ".join(f"cell{index}" for index in range(1500))
    table = make_draft(ChunkType.TABLE, "Table 2", "Table 2 — Methods", long_body)
    short = make_draft(ChunkType.ANNEX, "Annex A", "Annex A (informative)", "short body")

    expanded = split_long_chunks([table, short])

    assert expanded == [table, short]


def test_split_long_chunks_window_floor():
    """Test that the window size never drops below the configured floor."""
    config = StructureConfig(chunk_max_words=50, chunk_min_window_words=40, chunk_overlap_words=10)
    heading = "Annex B " + " ".join(["long"] * 20)
    body = " ".join(f"w{index}" for index in range(100))
    draft = make_draft(ChunkType.ANNEX, "Annex B", heading, body)

    expanded = split_long_chunks([draft], config)

    windows = [body_without_heading(chunk.text, chunk.heading).split() for chunk in expanded]
    assert max(len(window) for window in windows) == 40
    assert windows[1][0] == "w30"
