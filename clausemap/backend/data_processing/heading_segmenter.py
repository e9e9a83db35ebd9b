"""
Heading segmentation for normalized page text.

This module partitions the pages of one document into an ordered sequence of
structured chunk drafts (clause, table or annex). A draft starts at a heading
line and collects every following body line until the next heading.
"""

from enum import Enum
from dataclasses import dataclass, field

from clausemap.backend.data_processing.patterns import (
    IngestPatterns, StructureConfig, default_patterns
)


class ChunkType(Enum):
    """Kinds of structured chunks recognised from heading lines."""
    CLAUSE = "clause"
    TABLE = "table"
    ANNEX = "annex"


@dataclass
class StructuredChunkDraft:
    """A finalized heading-delimited block of text."""
    chunk_type: ChunkType
    reference: str
    ref_path: str
    heading: str
    text: str
    page_start: int
    page_end: int


@dataclass
class _ActiveDraft:
    chunk_type: ChunkType
    reference: str
    heading: str
    page_start: int
    page_end: int
    body_lines: list[str] = field(default_factory=list)


def derive_ref_path(reference: str, chunk_type: ChunkType) -> str:
    """
    Build the breadcrumb of a reference.

    Clause references become their dotted segments joined by ``" > "``
    (``"8.4.5"`` gives ``"8 > 4 > 5"``); tables and annexes use the reference
    itself.
    """
    if chunk_type != ChunkType.CLAUSE:
        return reference
    return " > ".join(reference.split("."))


def detect_heading(
    line: str,
    patterns: IngestPatterns,
    config: StructureConfig,
) -> tuple[ChunkType, str, str] | None:
    """
    Classify a trimmed line as a heading.

    Args:
        line: A trimmed, non-empty line.
        patterns: Compiled heuristic patterns.
        config: Structure limits.

    Returns:
        ``(chunk_type, reference, heading_line)`` or None if the line is body
        text. Table-of-contents lines are never headings.
    """
    if patterns.toc_line.search(line):
        return None

    match = patterns.table_heading.match(line)
    if match:
        return ChunkType.TABLE, match.group(1).strip(), line

    match = patterns.annex_heading.match(line)
    if match:
        return ChunkType.ANNEX, match.group(1).strip(), line

    match = patterns.clause_heading.match(line)
    if match:
        title = (match.group(2) or "").strip()
        if not title or len(title) > config.clause_title_max_chars:
            return None
        return ChunkType.CLAUSE, match.group(1).strip(), line

    return None


def _finalize(active: _ActiveDraft) -> StructuredChunkDraft:
    body = "\n".join(active.body_lines).strip()
    text = f"{active.heading}\n\n{body}" if body else active.heading

    return StructuredChunkDraft(
        chunk_type=active.chunk_type,
        reference=active.reference,
        ref_path=derive_ref_path(active.reference, active.chunk_type),
        heading=active.heading,
        text=text,
        page_start=active.page_start,
        page_end=active.page_end,
    )


def segment_pages(
    pages: list[str],
    patterns: IngestPatterns | None = None,
    config: StructureConfig | None = None,
) -> list[StructuredChunkDraft]:
    """
    Partition normalized pages into structured chunk drafts.

    Lines before the first heading and table-of-contents lines are dropped.
    Body lines extend the active draft's page end to the current page.

    Args:
        pages: Normalized page texts in PDF order.
        patterns: Compiled heuristic patterns, defaults when omitted.
        config: Structure limits, defaults when omitted.

    Returns:
        Drafts in document order.
    """
    patterns = patterns or default_patterns()
    config = config or StructureConfig()

    drafts: list[StructuredChunkDraft] = []
    active: _ActiveDraft | None = None

    for page_index, page_text in enumerate(pages):
        page_number = page_index + 1
        for raw_line in page_text.splitlines():
            line = raw_line.strip()
            if not line:
                continue

            if patterns.toc_line.search(line):
                continue

            heading = detect_heading(line, patterns, config)
            if heading is not None:
                if active is not None:
                    drafts.append(_finalize(active))

                chunk_type, reference, heading_line = heading
                active = _ActiveDraft(
                    chunk_type=chunk_type,
                    reference=reference,
                    heading=heading_line,
                    page_start=page_number,
                    page_end=page_number,
                )
                continue

            if active is not None:
                active.page_end = page_number
                active.body_lines.append(line)

    if active is not None:
        drafts.append(_finalize(active))

    return drafts
