"""
Page normalization for extracted page text.

Removes license/watermark banners and repeated running headers/footers,
merges hyphenated line wraps and detects the printed page label of each page.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field

from clausemap.backend.data_processing.patterns import StructureConfig


logger = logging.getLogger("clausemap.page_normalizer")


PAGE_LABEL_REGEX = re.compile(r"^page\s+([0-9ivxlcdm]+)$", re.IGNORECASE)
NUMBER_LABEL_REGEX = re.compile(r"^([0-9]{1,4})$")
ROMAN_LABEL_REGEX = re.compile(r"^([ivxlcdm]{1,8})$", re.IGNORECASE)

LABEL_TRAILING_LINES = 5
LABEL_LEADING_LINES = 2


@dataclass
class NormalizedPages:
    """Normalized page texts plus the counters reported per run."""
    pages: list[str]
    header_lines_removed: int = 0
    footer_lines_removed: int = 0
    dehyphenation_merges: int = 0
    empty_page_count: int = 0
    header_candidates: set[str] = field(default_factory=set)
    footer_candidates: set[str] = field(default_factory=set)


def is_watermark_noise(line: str) -> bool:
    """
    Check whether a line is a vendor license or download banner.

    Args:
        line: A single line of page text.

    Returns:
        True if the line should be dropped regardless of its position.
    """
    lower = line.lower()
    has_store_download = "iso store order" in lower and "downloaded:" in lower
    has_single_user_notice = (
        "single user licence only" in lower or "single user license only" in lower
    ) and "networking prohibited" in lower
    has_license_banner = (
        "licensed to" in lower and "license #" in lower and "downloaded:" in lower
    )
    return has_store_download or has_single_user_notice or has_license_banner


def non_whitespace_char_count(text: str) -> int:
    return sum(1 for ch in text if not ch.isspace())


def normalize_edge_line(line: str) -> str:
    return " ".join(line.split()).lower()


def detect_repeated_edge_lines(
    pages: list[str],
    header: bool,
    config: StructureConfig | None = None,
) -> set[str]:
    """
    Find header (or footer) lines repeated across pages.

    The first (or last) non-empty line of each page is normalized and counted;
    candidates seen on enough pages and short enough are returned.
    """
    config = config or StructureConfig()
    counts: Counter[str] = Counter()

    for page in pages:
        lines = [line.strip() for line in page.splitlines()]
        non_empty = [line for line in lines if line]
        if not non_empty:
            continue

        candidate = normalize_edge_line(non_empty[0] if header else non_empty[-1])
        if not candidate or len(candidate) > config.repeated_edge_max_chars:
            continue
        counts[candidate] += 1

    return {
        candidate for candidate, count in counts.items()
        if count >= config.repeated_edge_min_pages
    }


def should_merge_hyphenated_pair(current: str, next_line: str) -> bool:
    left = current.rstrip()
    if not left.endswith("-"):
        return False

    right = next_line.lstrip()
    if not right or not ("a" <= right[0] <= "z"):
        return False

    stem = left.rstrip("-")
    return bool(stem) and stem[-1].isascii() and stem[-1].isalpha()


def merge_hyphenated_lines(lines: list[str]) -> tuple[list[str], int]:
    """
    Join words broken across lines with a trailing hyphen.

    Args:
        lines: Lines of one page.

    Returns:
        The merged lines and the number of merges performed.
    """
    merged: list[str] = []
    merges = 0
    index = 0

    while index < len(lines):
        current = lines[index]
        if index + 1 < len(lines) and should_merge_hyphenated_pair(current, lines[index + 1]):
            merged.append(current.rstrip().rstrip("-") + lines[index + 1].lstrip())
            merges += 1
            index += 2
            continue

        merged.append(current)
        index += 1

    return merged, merges


def _first_non_empty_index(lines: list[str]) -> int | None:
    for index, line in enumerate(lines):
        if line.strip():
            return index
    return None


def _last_non_empty_index(lines: list[str]) -> int | None:
    for index in range(len(lines) - 1, -1, -1):
        if lines[index].strip():
            return index
    return None


def normalize_pages(pages: list[str], config: StructureConfig | None = None) -> NormalizedPages:
    """
    Normalize every page of one document.

    Repeated edge lines are detected on the incoming pages, then each page has
    its watermark lines dropped, its matching header/footer line stripped and
    its hyphenated wraps merged.

    Args:
        pages: Raw page texts in PDF order.
        config: Structure limits, defaults when omitted.

    Returns:
        The normalized pages and counters.
    """
    config = config or StructureConfig()
    header_candidates = detect_repeated_edge_lines(pages, header=True, config=config)
    footer_candidates = detect_repeated_edge_lines(pages, header=False, config=config)

    result = NormalizedPages(
        pages=[],
        header_candidates=header_candidates,
        footer_candidates=footer_candidates,
    )

    for page in pages:
        lines = [line for line in page.splitlines() if not is_watermark_noise(line)]

        index = _first_non_empty_index(lines)
        if index is not None:
            candidate = normalize_edge_line(lines[index])
            if candidate and candidate in header_candidates:
                del lines[index]
                result.header_lines_removed += 1

        index = _last_non_empty_index(lines)
        if index is not None:
            candidate = normalize_edge_line(lines[index])
            if candidate and candidate in footer_candidates:
                del lines[index]
                result.footer_lines_removed += 1

        lines, merges = merge_hyphenated_lines(lines)
        result.dehyphenation_merges += merges
        result.pages.append("\n".join(lines))

    result.empty_page_count = sum(
        1 for page in result.pages if non_whitespace_char_count(page) == 0
    )

    if result.header_lines_removed or result.footer_lines_removed:
        logger.debug(
            f"Removed {result.header_lines_removed} header and "
            f"{result.footer_lines_removed} footer lines across {len(pages)} pages"
        )

    return result


def detect_printed_page_label(page_text: str) -> str | None:
    """
    Detect the page number typeset on a page.

    The last five lines are inspected bottom-up, then the first two lines.
    Accepted shapes are ``page <n>``, a bare 1-4 digit number and a bare
    roman numeral.

    Args:
        page_text: Text of one page.

    Returns:
        The label (roman numerals lower-cased) or None.
    """
    lines = page_text.splitlines()
    candidates = list(reversed(lines))[:LABEL_TRAILING_LINES] + lines[:LABEL_LEADING_LINES]

    for line in candidates:
        normalized = "".join(
            ch for ch in line
            if ch.isascii() and (ch.isalnum() or ch.isspace())
        ).strip()
        if not normalized:
            continue

        match = PAGE_LABEL_REGEX.match(normalized)
        if match:
            return match.group(1).lower()

        match = NUMBER_LABEL_REGEX.match(normalized)
        if match:
            return match.group(1)

        match = ROMAN_LABEL_REGEX.match(normalized)
        if match:
            return match.group(1).lower()

    return None


def detect_printed_page_labels(pages: list[str]) -> list[str | None]:
    return [detect_printed_page_label(page) for page in pages]


def printed_page_label_for(labels: list[str | None], page_pdf: int) -> str | None:
    if page_pdf <= 0 or page_pdf > len(labels):
        return None
    return labels[page_pdf - 1]


def printed_page_labels_for_range(
    labels: list[str | None],
    page_start: int,
    page_end: int,
) -> tuple[str | None, str | None]:
    """
    Return the first and last printed labels detected in a PDF page range.

    Args:
        labels: Printed label per PDF page (index 0 is page 1).
        page_start: First PDF page of the range (1-based, inclusive).
        page_end: Last PDF page of the range (1-based, inclusive).

    Returns:
        ``(first_label, last_label)``; either may be None.
    """
    if not labels or (page_start <= 0 and page_end <= 0):
        return None, None

    start = page_start if page_start > 0 else page_end
    end = page_end if page_end > 0 else page_start
    if start > end:
        start, end = end, start

    first_index = start - 1
    if first_index >= len(labels):
        return None, None
    last_index = min(end - 1, len(labels) - 1)

    first_detected = None
    last_detected = None
    for label in labels[first_index:last_index + 1]:
        if label is None or not label.strip():
            continue
        if first_detected is None:
            first_detected = label.strip()
        last_detected = label.strip()

    return first_detected, last_detected
