"""
Table reconstruction for table drafts.

Two candidate row sets are built from a table's body lines: a naive split on
runs of whitespace, and a marker-sequence reconstruction that follows
``<marker> <description>`` rows. The candidate with better quality counters
is kept and rendered as Markdown and CSV.
"""

import csv
import io
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field

from clausemap.backend.data_processing.anchors import (
    normalize_marker_label, parse_numeric_alpha_marker
)
from clausemap.backend.data_processing.page_normalizer import is_watermark_noise
from clausemap.backend.data_processing.patterns import default_patterns


logger = logging.getLogger("clausemap.table_parser")


MARKER_WITH_BODY_REGEX = re.compile(r"^(?P<marker>\d+[A-Za-z]?)[\.)]?\s+(?P<body>.+)$")
MARKER_ONLY_REGEX = re.compile(r"^(?P<marker>\d+[A-Za-z]?)[\.)]?$")
MARKER_LIST_REGEX = re.compile(r"^(?P<list>(?:\d+[A-Za-z]?\s+){1,}\d+[A-Za-z]?)$")
PLUS_REGEX = re.compile(r"^\+{1,2}$")

RATING_TOKENS = {"+", "++", "-", "--", "+/-", "+/−", "−/+", "o"}
TOKEN_PUNCTUATION = "().:;,"
ASIL_COLUMNS = {"A", "B", "C", "D"}

DENSE_RATING_MIN = 8
RATED_ROW_MAX_CELLS = 6


class TableGrid:
    """
    Row/column cell storage addressed by ``(row, column)``.

    Cells live in one flat mapping keyed by their coordinates, with a width per
    row, so passes can append, truncate and rewrite cells of any row without
    juggling nested lists.
    """

    def __init__(self, rows: list[list[str]] | None = None):
        self._cells: dict[tuple[int, int], str] = {}
        self._widths: list[int] = []
        for row in rows or []:
            self.append_row(row)

    def __len__(self) -> int:
        return len(self._widths)

    def append_row(self, cells: list[str]) -> int:
        row = len(self._widths)
        self._widths.append(0)
        for value in cells:
            self.push(row, value)
        return row

    def width(self, row: int) -> int:
        return self._widths[row]

    def cell(self, row: int, col: int) -> str:
        return self._cells.get((row, col), "")

    def set(self, row: int, col: int, value: str) -> None:
        if col >= self._widths[row]:
            raise IndexError(f"column {col} outside row {row} of width {self._widths[row]}")
        self._cells[(row, col)] = value

    def push(self, row: int, value: str) -> None:
        self._cells[(row, self._widths[row])] = value
        self._widths[row] += 1

    def truncate(self, row: int, width: int) -> None:
        for col in range(width, self._widths[row]):
            del self._cells[(row, col)]
        self._widths[row] = min(self._widths[row], width)

    def row(self, row: int) -> list[str]:
        return [self._cells[(row, col)] for col in range(self._widths[row])]

    def rows(self) -> list[list[str]]:
        return [self.row(index) for index in range(len(self))]

    def is_marker_row(self, row: int) -> bool:
        return self._widths[row] > 0 and parse_table_marker_token(self.cell(row, 0)) is not None

    def looks_structured(self) -> bool:
        return len(self) >= 2 and any(width > 1 for width in self._widths)


@dataclass
class TableQualityCounters:
    """Quality counters of one reconstructed table."""
    sparse_rows_count: int = 0
    overloaded_rows_count: int = 0
    rows_with_markers_count: int = 0
    rows_with_descriptions_count: int = 0
    marker_expected_count: int = 0
    marker_observed_count: int = 0


@dataclass
class ParsedTable:
    """Final rows of a table and their renderings."""
    rows: list[list[str]]
    markdown: str | None
    csv: str | None
    used_fallback: bool
    quality: TableQualityCounters = field(default_factory=TableQualityCounters)


def extract_body_lines(text: str, heading: str) -> list[str]:
    """Return trimmed non-empty lines of a draft, minus a leading heading line."""
    lines = text.splitlines()
    if lines and lines[0].strip() == heading.strip():
        lines = lines[1:]
    return [line.strip() for line in lines if line.strip()]


def strip_token_punctuation(token: str) -> str:
    return token.strip(TOKEN_PUNCTUATION)


def is_rating_token(token: str) -> bool:
    return token in RATING_TOKENS


def parse_table_marker_token(value: str) -> tuple[int, str | None] | None:
    return parse_numeric_alpha_marker(normalize_marker_label(value))


def split_table_cells(line: str, cell_split_regex: re.Pattern[str]) -> list[str]:
    """
    Split one table line into cells.

    Falls back to ``|`` separators when whitespace splitting finds at most one
    cell; a line that yields nothing becomes a single cell.
    """
    cells = [segment.strip() for segment in cell_split_regex.split(line) if segment.strip()]

    if len(cells) <= 1 and "|" in line:
        cells = [segment.strip() for segment in line.split("|") if segment.strip()]

    return cells or [line.strip()]


def merge_single_cell_continuations(grid: TableGrid) -> TableGrid:
    """Fold lone-cell continuation lines into the previous marker row's description."""
    merged = TableGrid()

    for index in range(len(grid)):
        if grid.width(index) == 1:
            content = grid.cell(index, 0).strip()
            previous = len(merged) - 1
            if (
                content
                and parse_table_marker_token(content) is None
                and previous >= 0
                and merged.is_marker_row(previous)
            ):
                if merged.width(previous) < 2:
                    merged.push(previous, content)
                else:
                    description = merged.cell(previous, 1)
                    merged.set(previous, 1, f"{description} {content}" if description else content)
                continue

        merged.append_row(grid.row(index))

    return merged


def split_marker_rows_with_trailing_ratings(grid: TableGrid) -> None:
    """Move two or more rating tokens trailing a marker row's description into cells."""
    for index in range(len(grid)):
        if grid.width(index) != 2 or not grid.is_marker_row(index):
            continue

        tokens = grid.cell(index, 1).split()
        if len(tokens) < 3:
            continue

        trailing_ratings = []
        for token in reversed(tokens):
            normalized = strip_token_punctuation(token)
            if not is_rating_token(normalized):
                break
            trailing_ratings.append(normalized)

        if len(trailing_ratings) < 2:
            continue

        trailing_ratings.reverse()
        description = " ".join(tokens[:len(tokens) - len(trailing_ratings)])
        if not description:
            continue

        grid.set(index, 1, description)
        for rating in trailing_ratings:
            grid.push(index, rating)


def redistribute_dense_marker_ratings(grid: TableGrid) -> None:
    """
    Spread a run of concatenated ratings back over the preceding marker rows.

    A marker row carrying at least eight rating cells is cut back to marker
    and description; its ratings are handed out in order to the contiguous
    block of marker rows ending at it, filling each row's rating columns
    before moving on. Ratings left over return to the dense row.
    """
    for index in range(len(grid)):
        if not grid.is_marker_row(index):
            continue

        rating_pool = [
            strip_token_punctuation(grid.cell(index, col))
            for col in range(2, grid.width(index))
        ]
        rating_pool = [cell for cell in rating_pool if is_rating_token(cell)]
        if len(rating_pool) < DENSE_RATING_MIN:
            continue

        marker_block = [index]
        cursor = index
        while cursor > 0 and grid.is_marker_row(cursor - 1):
            cursor -= 1
            marker_block.append(cursor)
        marker_block.reverse()
        if len(marker_block) < 2:
            continue

        grid.truncate(index, 2)
        assignment = 0
        for rating in rating_pool:
            while assignment < len(marker_block) and grid.width(marker_block[assignment]) >= RATED_ROW_MAX_CELLS:
                assignment += 1

            if assignment >= len(marker_block):
                grid.push(index, rating)
            else:
                grid.push(marker_block[assignment], rating)


def normalize_rows_for_alignment(grid: TableGrid) -> TableGrid:
    grid = merge_single_cell_continuations(grid)
    split_marker_rows_with_trailing_ratings(grid)
    redistribute_dense_marker_ratings(grid)
    return grid


def looks_like_asil_matrix(body_lines: list[str]) -> bool:
    if not any("ASIL" in line.upper() for line in body_lines):
        return False

    columns = {
        line.strip().upper() for line in body_lines
        if len(line.strip()) == 1 and line.strip().isascii()
    }
    return len(columns & ASIL_COLUMNS) == 4


def backfill_asil_marker_row_ratings(grid: TableGrid, body_lines: list[str]) -> None:
    """
    Give marker rows of an ASIL matrix a rating they lost during extraction.

    Ratings harvested from the body are consumed from the end, one per marker
    row that has no rating cell yet.
    """
    if not looks_like_asil_matrix(body_lines):
        return

    rating_pool = [
        strip_token_punctuation(token)
        for line in body_lines
        for token in line.split()
    ]
    rating_pool = [token for token in rating_pool if is_rating_token(token)]

    for index in range(len(grid)):
        if not rating_pool:
            break
        if not grid.is_marker_row(index):
            continue

        has_ratings = any(
            is_rating_token(strip_token_punctuation(token))
            for col in range(2, grid.width(index))
            for token in grid.cell(index, col).split()
        )
        if not has_ratings:
            grid.push(index, rating_pool.pop())


def is_footnote_marker_line(line: str) -> bool:
    trimmed = strip_token_punctuation(line).strip()
    return len(trimmed) == 1 and "a" <= trimmed <= "z"


def reconstruct_rows_from_markers(lines: list[str]) -> TableGrid:
    """
    Rebuild rows by following marker lines through the body.

    ``<marker> <text>`` opens a row; bare markers (alone or as a list on one
    line) are queued and matched one-for-one with following description
    lines; lone lowercase letters after queued markers are footnote markers;
    ``+``/``++`` lines attach to the open row.
    """
    grid = TableGrid()
    current: list[str] | None = None
    pending_markers: list[str] = []

    def flush() -> None:
        nonlocal current
        if current is not None and len(current) > 1:
            grid.append_row(current)
        current = None

    for raw_line in lines:
        line = raw_line.strip()
        if not line or is_watermark_noise(line):
            continue

        match = MARKER_LIST_REGEX.match(line)
        if match:
            flush()
            pending_markers = match.group("list").split()
            continue

        match = MARKER_WITH_BODY_REGEX.match(line)
        if match:
            flush()
            current = [match.group("marker").strip(), match.group("body").strip()]
            continue

        match = MARKER_ONLY_REGEX.match(line)
        if match:
            flush()
            pending_markers.append(match.group("marker").strip())
            continue

        if PLUS_REGEX.match(line):
            if current is not None:
                current.append(line)
            continue

        if pending_markers and is_footnote_marker_line(line):
            continue

        if pending_markers:
            flush()
            current = [pending_markers.pop(0), line]
            continue

        if current is None:
            continue

        if len(current) <= 1:
            current.append(line)
        else:
            current[1] = f"{current[1]} {line}" if current[1] else line

    flush()
    for marker in pending_markers:
        grid.append_row([marker, ""])

    return grid


def has_row_description(row: list[str]) -> bool:
    if len(row) < 2:
        return False
    description = row[1].strip()
    return bool(description) and any(ch.isascii() and ch.isalpha() for ch in description)


def count_row_marker_tokens(row: list[str]) -> int:
    markers = set()
    for cell in row:
        for token in cell.split():
            marker = parse_table_marker_token(strip_token_punctuation(token))
            if marker is not None:
                markers.add(marker)
    return len(markers)


def estimate_expected_marker_count(observed: set[tuple[int, str | None]]) -> int:
    """
    Estimate how many markers a table should have.

    Markers are grouped by number. Groups without letter suffixes count their
    members; groups with suffixes count the span of suffix letters, or the
    number of suffixed markers if that is larger.
    """
    grouped: dict[int, list[str | None]] = defaultdict(list)
    for number, suffix in observed:
        grouped[number].append(suffix)

    expected = 0
    for suffixes in grouped.values():
        with_suffix = [suffix for suffix in suffixes if suffix is not None]
        if not with_suffix:
            expected += max(len(suffixes), 1)
            continue

        indexes = [max(ord(suffix) - ord("a"), 0) for suffix in with_suffix]
        expected += max(max(indexes) - min(indexes) + 1, len(with_suffix))

    return expected


def analyze_table_rows(rows: list[list[str]]) -> TableQualityCounters:
    """Compute quality counters for a candidate row set."""
    counters = TableQualityCounters()
    observed: set[tuple[int, str | None]] = set()

    for row in rows:
        marker = parse_table_marker_token(row[0] if row else "")
        if marker is not None:
            counters.rows_with_markers_count += 1
            observed.add(marker)
            if has_row_description(row):
                counters.rows_with_descriptions_count += 1
            else:
                counters.sparse_rows_count += 1

        if count_row_marker_tokens(row) > 1:
            counters.overloaded_rows_count += 1

    counters.marker_observed_count = len(observed)
    counters.marker_expected_count = estimate_expected_marker_count(observed)
    return counters


def _ratio(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator else 0.0


def prefer_reconstructed_rows(
    original_rows_count: int,
    original: TableQualityCounters,
    reconstructed_rows_count: int,
    reconstructed: TableQualityCounters,
) -> bool:
    """
    Decide whether the marker reconstruction beats the naive split.

    Requires at least two reconstructed rows with at least one marker, then a
    lower sparse-row ratio (by more than 0.05), a better description coverage
    (by more than 0.10), or fewer sparse rows without losing descriptions.
    """
    if reconstructed_rows_count < 2 or reconstructed.rows_with_markers_count == 0:
        return False

    original_sparse_ratio = (
        original.sparse_rows_count / original_rows_count if original_rows_count else 1.0
    )
    reconstructed_sparse_ratio = reconstructed.sparse_rows_count / reconstructed_rows_count

    original_coverage = _ratio(original.rows_with_descriptions_count, original.rows_with_markers_count)
    reconstructed_coverage = _ratio(
        reconstructed.rows_with_descriptions_count, reconstructed.rows_with_markers_count
    )

    return (
        reconstructed_sparse_ratio + 0.05 < original_sparse_ratio
        or reconstructed_coverage > original_coverage + 0.10
        or (
            reconstructed.sparse_rows_count < original.sparse_rows_count
            and reconstructed.rows_with_descriptions_count >= original.rows_with_descriptions_count
        )
    )


def infer_table_header_rows(rows: list[list[str]]) -> int:
    """Return 1 when the first row looks like a column header, else 0."""
    if not rows:
        return 0

    first_row = rows[0]
    if parse_table_marker_token(first_row[0] if first_row else "") is not None:
        return 0

    non_empty = sum(1 for cell in first_row if cell.strip())
    return 1 if non_empty >= 2 else 0


def table_to_markdown(rows: list[list[str]]) -> str:
    col_count = max([len(row) for row in rows] + [1])
    padded = [row + [""] * (col_count - len(row)) for row in rows] or [[""] * col_count]

    lines = [f"| {' | '.join(padded[0])} |"]
    lines.append(f"| {' | '.join(['---'] * col_count)} |")
    for row in padded[1:]:
        lines.append(f"| {' | '.join(row)} |")
    return "\n".join(lines)


def table_to_csv(rows: list[list[str]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerows(rows)
    return buffer.getvalue().rstrip("\n")


def parse_table(
    text: str,
    heading: str,
    cell_split_regex: re.Pattern[str] | None = None,
) -> ParsedTable:
    """
    Reconstruct the rows of one table draft.

    Args:
        text: The draft text (heading line first).
        heading: The draft heading, stripped from the body.
        cell_split_regex: Cell separator, the configured default when omitted.

    Returns:
        The kept rows, their Markdown/CSV renderings, the fallback flag and
        quality counters.
    """
    cell_split_regex = cell_split_regex or default_patterns().table_cell_split
    body_lines = extract_body_lines(text, heading)

    grid = TableGrid([
        split_table_cells(line, cell_split_regex)
        for line in body_lines
        if not is_watermark_noise(line)
    ])
    grid = normalize_rows_for_alignment(grid)
    backfill_asil_marker_row_ratings(grid, body_lines)
    structured = grid.looks_structured()

    reconstructed = reconstruct_rows_from_markers(body_lines)
    if len(reconstructed):
        adopt = prefer_reconstructed_rows(
            len(grid),
            analyze_table_rows(grid.rows()),
            len(reconstructed),
            analyze_table_rows(reconstructed.rows()),
        ) or (not structured and reconstructed.looks_structured())

        if adopt:
            logger.debug(f"Using marker reconstruction for {heading!r}")
            grid = normalize_rows_for_alignment(reconstructed)
            backfill_asil_marker_row_ratings(grid, body_lines)
            structured = grid.looks_structured()

    rows = grid.rows()
    return ParsedTable(
        rows=rows,
        markdown=table_to_markdown(rows) if rows else None,
        csv=table_to_csv(rows) if rows else None,
        used_fallback=not structured,
        quality=analyze_table_rows(rows),
    )
