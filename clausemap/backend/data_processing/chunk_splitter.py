"""
Splitting of oversized clause and annex drafts.

Long bodies are cut into overlapping word windows, each re-wrapped with the
original heading so that every window is an independently retrievable chunk.
"""

from dataclasses import replace

from clausemap.backend.data_processing.heading_segmenter import (
    ChunkType, StructuredChunkDraft
)
from clausemap.backend.data_processing.patterns import StructureConfig


SPLITTABLE_TYPES = {ChunkType.CLAUSE, ChunkType.ANNEX}


def body_without_heading(text: str, heading: str) -> str:
    """Join a draft's lines with spaces, dropping a leading copy of the heading."""
    lines = text.splitlines()
    if lines and lines[0].strip() == heading.strip():
        lines = lines[1:]
    return " ".join(lines)


def split_words_with_overlap(text: str, max_words: int, overlap_words: int) -> list[str]:
    """
    Segment text into overlapping windows of whole words.

    Args:
        text: The text to segment.
        max_words: Largest number of words in one window.
        overlap_words: Words repeated at the start of the next window.

    Returns:
        The window texts; a single window when the text fits.
    """
    words = text.split()
    if not words:
        return [""]
    if len(words) <= max_words:
        return [" ".join(words)]

    segments = []
    start = 0
    while start < len(words):
        end = min(start + max_words, len(words))
        segments.append(" ".join(words[start:end]))
        if end == len(words):
            break

        next_start = end - overlap_words
        start = next_start if next_start > start else end

    return segments


def split_long_chunks(
    drafts: list[StructuredChunkDraft],
    config: StructureConfig | None = None,
) -> list[StructuredChunkDraft]:
    """
    Replace every oversized clause/annex draft by overlapping window drafts.

    The window size is the word limit minus the heading's words, never
    below the configured minimum; windows overlap by at most that size minus
    one. Tables pass through unchanged.

    Args:
        drafts: Drafts in document order.
        config: Structure limits, defaults when omitted.

    Returns:
        Drafts in document order, split where needed.
    """
    config = config or StructureConfig()
    expanded: list[StructuredChunkDraft] = []

    for draft in drafts:
        if draft.chunk_type not in SPLITTABLE_TYPES:
            expanded.append(draft)
            continue

        body = body_without_heading(draft.text, draft.heading)
        if len(body.split()) <= config.chunk_max_words:
            expanded.append(draft)
            continue

        heading_words = len(draft.heading.split())
        max_segment_words = max(config.chunk_max_words - heading_words, config.chunk_min_window_words)
        overlap_words = min(config.chunk_overlap_words, max_segment_words - 1)

        for segment in split_words_with_overlap(body, max_segment_words, overlap_words):
            expanded.append(replace(draft, text=f"{draft.heading}\n\n{segment}"))

    return expanded
