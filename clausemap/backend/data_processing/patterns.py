"""
Heuristic pattern definitions for the structuring pipeline.

All line-shape heuristics (headings, list and note markers, table cell
separators, normative keywords) are configured here as plain strings and
compiled once per run. A malformed pattern is a configuration bug, so it
aborts before any document is read.
"""

import logging
import re
from dataclasses import dataclass
from pydantic import BaseModel, Field, ConfigDict


logger = logging.getLogger("clausemap.patterns")


class PatternConfigError(ValueError):
    """Raised when a configured heuristic pattern cannot be compiled."""

    def __init__(self, name: str, pattern: str, reason: str):
        super().__init__(f"invalid {name} pattern {pattern!r}: {reason}")
        self.name = name
        self.pattern = pattern


class PatternConfig(BaseModel):
    """Regular expressions used to recognise structure in page text."""
    clause_heading: str = Field(
        default=r"^\s*(\d+(?:\.\d+)+)\s+(.+)$",
        description="Dotted numeric clause reference followed by a title"
    )
    table_heading: str = Field(
        default=r"^\s*(Table\s+\d+)\s*[-:–—]?\s*(.*)$",
        description="Table caption line"
    )
    annex_heading: str = Field(
        default=r"^\s*(Annex\s+[A-Z])(?:\s*\([^)]*\))?\s*[-:–—]?\s*(.*)$",
        description="Annex heading with optional (normative)/(informative) tag"
    )
    toc_line: str = Field(
        default=r"\.{3,}\s*\d+\s*$",
        description="Table-of-contents line with dot leaders and a page number"
    )
    table_cell_split: str = Field(
        default=r"\t+|\s{2,}",
        description="Separator between table cells on one line"
    )
    list_item: str = Field(
        default=r"^(?P<marker>(?:(?:\d+[A-Za-z]?|[A-Za-z])(?:[\.)])?|[-*•—–]))(?:\s+(?P<body>.+))?$",
        description="List item marker with optional body"
    )
    note_item: str = Field(
        default=r"(?i)^(?P<marker>NOTE(?:\s+\d+)?)(?:\s+(?P<body>.+))?$",
        description="NOTE / NOTE <n> marker with optional body"
    )
    requirement_split: str = Field(
        default=r"[.;]\s+",
        description="Sentence boundary used for requirement atoms"
    )
    requirement_keyword: str = Field(
        default=r"(?i)\bshall(?:\s+not)?\b|\bshould\b",
        description="Normative keyword marking a requirement sentence"
    )
    outline_section: str = Field(
        default=r"^\s*(\d+)\s+(.+)$",
        description="Top-level outline entry (<number> <title>)"
    )

    model_config = ConfigDict(frozen=True)


class StructureConfig(BaseModel):
    """Numeric limits of the structuring heuristics."""
    clause_title_max_chars: int = Field(
        default=140, description="Longest title accepted on a clause heading line")
    chunk_max_words: int = Field(
        default=900, description="Body word count above which a chunk is split")
    chunk_min_window_words: int = Field(
        default=300, description="Lower bound of the words per window")
    chunk_overlap_words: int = Field(
        default=75, description="Words shared by consecutive windows")
    repeated_edge_min_pages: int = Field(
        default=3, description="Pages a header/footer line must repeat on")
    repeated_edge_max_chars: int = Field(
        default=120, description="Longest normalized header/footer candidate")


@dataclass(frozen=True)
class IngestPatterns:
    """Compiled heuristic patterns shared by all segmenters."""
    clause_heading: re.Pattern[str]
    table_heading: re.Pattern[str]
    annex_heading: re.Pattern[str]
    toc_line: re.Pattern[str]
    table_cell_split: re.Pattern[str]
    list_item: re.Pattern[str]
    note_item: re.Pattern[str]
    requirement_split: re.Pattern[str]
    requirement_keyword: re.Pattern[str]
    outline_section: re.Pattern[str]


def compile_patterns(config: PatternConfig | None = None) -> IngestPatterns:
    """
    Compile every configured pattern.

    Args:
        config: Pattern definitions, defaults when omitted.

    Returns:
        The compiled pattern bundle.

    Raises:
        PatternConfigError: If any pattern is malformed.
    """
    config = config or PatternConfig()
    compiled: dict[str, re.Pattern[str]] = {}

    for name, pattern in config.model_dump().items():
        try:
            compiled[name] = re.compile(pattern)
        except re.error as e:
            logger.error(f"Pattern {name} failed to compile: {e}")
            raise PatternConfigError(name, pattern, str(e)) from e

    return IngestPatterns(**compiled)


_default_patterns: IngestPatterns | None = None


def default_patterns() -> IngestPatterns:
    """Return the lazily compiled default pattern bundle."""
    global _default_patterns

    if _default_patterns is None:
        _default_patterns = compile_patterns()
    return _default_patterns
