"""
Decomposition of clause and annex bodies.

A body is broken into paragraphs, list items (with nesting depth and marker
style), NOTE items and normative requirement sentences. List and note items
are recognised by one line-driven state machine so that the interleaving
rules between the two marker kinds live in a single transition table.
"""

import logging
import re
from enum import Enum
from dataclasses import dataclass, field

from clausemap.backend.data_processing.anchors import (
    MarkerStyle, classify_marker_style, normalize_marker_label, parse_numeric_alpha_marker
)
from clausemap.backend.data_processing.page_normalizer import is_watermark_noise
from clausemap.backend.data_processing.patterns import IngestPatterns, default_patterns


logger = logging.getLogger("clausemap.body_segmenter")


MAX_LIST_DEPTH = 6
TAB_INDENT_UNITS = 4
INDENT_UNITS_PER_LEVEL = 2

# Marker-style transitions that indicate a sub-list even without indentation.
NESTING_TRANSITIONS = {
    (MarkerStyle.NUMERIC, MarkerStyle.ALPHA),
    (MarkerStyle.NUMERIC, MarkerStyle.ROMAN),
    (MarkerStyle.ALPHA, MarkerStyle.BULLET),
}


class ScanState(Enum):
    """Which kind of item the marker scanner is currently collecting."""
    IDLE = "idle"
    IN_LIST_ITEM = "in_list_item"
    IN_NOTE_ITEM = "in_note_item"


class LineKind(Enum):
    """Classification of one trimmed body line."""
    LIST_MARKER = "list_marker"
    NOTE_MARKER = "note_marker"
    TEXT = "text"


TRANSITIONS: dict[tuple[ScanState, LineKind], ScanState] = {
    (ScanState.IDLE, LineKind.LIST_MARKER): ScanState.IN_LIST_ITEM,
    (ScanState.IDLE, LineKind.NOTE_MARKER): ScanState.IN_NOTE_ITEM,
    (ScanState.IDLE, LineKind.TEXT): ScanState.IDLE,
    (ScanState.IN_LIST_ITEM, LineKind.LIST_MARKER): ScanState.IN_LIST_ITEM,
    (ScanState.IN_LIST_ITEM, LineKind.NOTE_MARKER): ScanState.IN_NOTE_ITEM,
    (ScanState.IN_LIST_ITEM, LineKind.TEXT): ScanState.IN_LIST_ITEM,
    (ScanState.IN_NOTE_ITEM, LineKind.LIST_MARKER): ScanState.IN_LIST_ITEM,
    (ScanState.IN_NOTE_ITEM, LineKind.NOTE_MARKER): ScanState.IN_NOTE_ITEM,
    (ScanState.IN_NOTE_ITEM, LineKind.TEXT): ScanState.IN_NOTE_ITEM,
}


def transition(state: ScanState, kind: LineKind) -> ScanState:
    """Return the scanner state after a line of the given kind."""
    return TRANSITIONS[(state, kind)]


@dataclass
class ListItemDraft:
    """One recovered list item."""
    marker: str
    marker_norm: str
    marker_style: MarkerStyle
    text: str
    depth: int


@dataclass
class NoteItemDraft:
    """One recovered NOTE item."""
    marker: str
    marker_norm: str
    text: str


@dataclass
class MarkerScanResult:
    """Items collected by one pass of the marker scanner."""
    list_items: list[ListItemDraft] = field(default_factory=list)
    note_items: list[NoteItemDraft] = field(default_factory=list)
    list_marker_candidates: int = 0

    @property
    def had_list_candidates(self) -> bool:
        return self.list_marker_candidates > 0

    @property
    def list_fallback(self) -> bool:
        """True when list markers were seen but no list item survived."""
        return self.had_list_candidates and not self.list_items


def extract_body_lines_preserve_blanks(text: str, heading: str) -> list[str]:
    """Return the raw lines of a draft, minus a leading heading line."""
    lines = text.splitlines()
    if lines and lines[0].strip() == heading.strip():
        lines = lines[1:]
    return lines


def infer_list_depth(raw_line: str) -> int:
    """
    Infer nesting depth from leading whitespace.

    A tab counts as four units, anything else as one; every two units is one
    level, starting at depth 1 and capped at depth 6.
    """
    units = 0
    for ch in raw_line:
        if not ch.isspace():
            break
        units += TAB_INDENT_UNITS if ch == "\t" else 1
    return min(units // INDENT_UNITS_PER_LEVEL, MAX_LIST_DEPTH - 1) + 1


def adjust_depth_for_transition(previous: ListItemDraft, style: MarkerStyle, depth: int) -> int:
    if (previous.marker_style, style) in NESTING_TRANSITIONS:
        return min(previous.depth + 1, MAX_LIST_DEPTH)
    return depth


def reorder_list_items(items: list[ListItemDraft]) -> list[ListItemDraft]:
    """
    Restore visual order of markers emitted out of sequence by the extractor.

    Only applies to three or more items whose markers are all single
    lowercase letters (sorted alphabetically) or all ``<number><letter?>``
    (sorted by number, then letter).
    """
    if len(items) < 3:
        return items

    if all(len(item.marker_norm) == 1 and "a" <= item.marker_norm <= "z" for item in items):
        return sorted(items, key=lambda item: item.marker_norm)

    parsed = [parse_numeric_alpha_marker(item.marker_norm) for item in items]
    if all(value is not None for value in parsed):
        return [
            item for _, item in sorted(
                zip(parsed, items),
                key=lambda pair: (pair[0][0], pair[0][1] or "~"),
            )
        ]

    return items


class MarkerScanner:
    """
    Line-driven recogniser for list and NOTE items.

    Feeding a marker line closes whatever item is open (keeping it only if it
    collected text) and opens a new one; a text line extends the open item.
    A list marker therefore closes an open note without the note absorbing
    the list item, and vice versa.
    """

    def __init__(self, patterns: IngestPatterns):
        self.patterns = patterns
        self.state = ScanState.IDLE
        self.result = MarkerScanResult()
        self._active: ListItemDraft | NoteItemDraft | None = None

    def classify(self, line: str) -> tuple[LineKind, re.Match[str] | None]:
        match = self.patterns.list_item.match(line)
        if match:
            return LineKind.LIST_MARKER, match

        match = self.patterns.note_item.match(line)
        if match:
            return LineKind.NOTE_MARKER, match

        return LineKind.TEXT, None

    def _close_active(self) -> None:
        item = self._active
        self._active = None
        if item is None or not item.text.strip():
            return

        if isinstance(item, ListItemDraft):
            self.result.list_items.append(item)
        else:
            self.result.note_items.append(item)

    def _open_list_item(self, raw_line: str, match: re.Match[str]) -> None:
        marker = match.group("marker") or "-"
        marker_norm = normalize_marker_label(marker)
        style = classify_marker_style(marker_norm)

        depth = infer_list_depth(raw_line)
        if depth == 1 and self.result.list_items:
            depth = adjust_depth_for_transition(self.result.list_items[-1], style, depth)

        self._active = ListItemDraft(
            marker=marker,
            marker_norm=marker_norm,
            marker_style=style,
            text=(match.group("body") or "").strip(),
            depth=depth,
        )

    def _open_note_item(self, match: re.Match[str]) -> None:
        marker = match.group("marker") or "NOTE"
        self._active = NoteItemDraft(
            marker=marker,
            marker_norm=normalize_marker_label(marker),
            text=(match.group("body") or "").strip(),
        )

    def feed(self, raw_line: str) -> None:
        if is_watermark_noise(raw_line):
            return

        line = raw_line.strip()
        if not line:
            return

        kind, match = self.classify(line)
        next_state = transition(self.state, kind)

        if kind == LineKind.LIST_MARKER:
            self.result.list_marker_candidates += 1
            self._close_active()
            self._open_list_item(raw_line, match)
        elif kind == LineKind.NOTE_MARKER:
            self._close_active()
            self._open_note_item(match)
        elif self._active is not None:
            self._active.text = f"{self._active.text} {line}" if self._active.text else line

        self.state = next_state

    def finish(self) -> MarkerScanResult:
        self._close_active()
        self.state = ScanState.IDLE
        self.result.list_items = reorder_list_items(self.result.list_items)
        return self.result


def scan_markers(
    text: str,
    heading: str,
    patterns: IngestPatterns | None = None,
) -> MarkerScanResult:
    """
    Recover list and NOTE items from a draft body.

    Args:
        text: Draft text (heading line first).
        heading: Draft heading.
        patterns: Compiled heuristic patterns, defaults when omitted.

    Returns:
        List items, note items and the list-marker candidate count.
    """
    scanner = MarkerScanner(patterns or default_patterns())
    for raw_line in extract_body_lines_preserve_blanks(text, heading):
        scanner.feed(raw_line)
    return scanner.finish()


def parse_list_items(
    text: str,
    heading: str,
    patterns: IngestPatterns | None = None,
) -> tuple[list[ListItemDraft], bool, bool]:
    """
    Recover list items.

    Returns:
        ``(items, used_fallback, had_candidates)`` where ``used_fallback``
        means markers were seen but no item survived.
    """
    result = scan_markers(text, heading, patterns)
    return result.list_items, result.list_fallback, result.had_list_candidates


def parse_note_items(
    text: str,
    heading: str,
    patterns: IngestPatterns | None = None,
) -> list[NoteItemDraft]:
    return scan_markers(text, heading, patterns).note_items


def parse_paragraphs(
    text: str,
    heading: str,
    patterns: IngestPatterns | None = None,
) -> list[str]:
    """
    Split a draft body into paragraphs.

    A paragraph ends at a blank line, before a list/NOTE marker line, or after
    a line ending in ``.``/``;`` when the next line does not start lowercase.
    Continuation lines are joined with a space.

    Args:
        text: Draft text (heading line first).
        heading: Draft heading.
        patterns: Compiled heuristic patterns, defaults when omitted.

    Returns:
        The paragraphs in order.
    """
    patterns = patterns or default_patterns()
    paragraphs: list[str] = []
    current = ""

    for raw_line in extract_body_lines_preserve_blanks(text, heading):
        if is_watermark_noise(raw_line):
            continue

        line = raw_line.strip()
        if not line:
            if current:
                paragraphs.append(current.strip())
                current = ""
            continue

        if not current:
            current = line
            continue

        starts_marker = bool(patterns.list_item.match(line) or patterns.note_item.match(line))
        ends_sentence = current.endswith(".") or current.endswith(";")
        starts_lowercase = line[0].islower()

        if starts_marker or (ends_sentence and not starts_lowercase):
            paragraphs.append(current.strip())
            current = line
            continue

        current = f"{current} {line}"

    if current:
        paragraphs.append(current.strip())

    return paragraphs


def parse_requirement_atoms(
    text: str,
    heading: str,
    patterns: IngestPatterns | None = None,
) -> list[str]:
    """Return the body sentences containing "shall", "shall not" or "should"."""
    patterns = patterns or default_patterns()
    lines = [
        line.strip() for line in extract_body_lines_preserve_blanks(text, heading)
        if line.strip()
    ]
    body = " ".join(lines)

    sentences = (sentence.strip() for sentence in patterns.requirement_split.split(body))
    return [
        sentence for sentence in sentences
        if sentence and patterns.requirement_keyword.search(sentence)
    ]
