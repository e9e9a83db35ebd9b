"""
Unit tests for the page normalizer.
"""

import pytest

from clausemap.backend.data_processing.page_normalizer import (
    is_watermark_noise, detect_repeated_edge_lines, should_merge_hyphenated_pair,
    merge_hyphenated_lines, normalize_pages, detect_printed_page_label,
    detect_printed_page_labels, printed_page_label_for, printed_page_labels_for_range
)
from clausemap.backend.data_processing.patterns import StructureConfig


@pytest.fixture
def pages_with_running_lines():
    """Return three pages sharing a header and a footer line."""
    return [
        "ISO 26262 Part 6\nRequirement intro\nLicensed copy",
        "ISO 26262 Part 6\nAnother requirement\nLicensed copy",
        "ISO  26262 part 6\nFinal requirement\nLicensed copy",
    ]


def test_is_watermark_noise():
    """Test recognition of license and download banners."""
    assert is_watermark_noise("ISO Store Order: OP-1022919 license #1/ Downloaded: 2026-02-14")
    assert is_watermark_noise("Single user licence only, copying and networking prohibited.")
    assert is_watermark_noise("Single user license only, networking prohibited")
    assert is_watermark_noise("Licensed to ACME Corp. License #12 Downloaded: 2026-01-01")
    assert not is_watermark_noise("Functional safety requirement")
    assert not is_watermark_noise("Licensed to ACME Corp.")


def test_detect_repeated_edge_lines(pages_with_running_lines):
    """Test detection of lines repeated on the page edges."""
    headers = detect_repeated_edge_lines(pages_with_running_lines, header=True)
    footers = detect_repeated_edge_lines(pages_with_running_lines, header=False)

    # Whitespace and case differences are normalized away
    assert headers == {"iso 26262 part 6"}
    assert footers == {"licensed copy"}


def test_detect_repeated_edge_lines_thresholds(pages_with_running_lines):
    """Test the page-count and length limits of edge-line detection."""
    assert detect_repeated_edge_lines(pages_with_running_lines[:2], header=True) == set()

    strict = StructureConfig(repeated_edge_max_chars=10)
    assert detect_repeated_edge_lines(pages_with_running_lines, header=True, config=strict) == set()


def test_normalize_pages_strips_repeated_headers_and_footers(pages_with_running_lines):
    """Test that repeated running lines are removed from every page."""
    result = normalize_pages(pages_with_running_lines)

    assert result.header_lines_removed == 3
    assert result.footer_lines_removed == 3
    assert all("26262" not in page for page in result.pages)
    assert all("Licensed copy" not in page for page in result.pages)
    assert result.pages[0] == "Requirement intro"


def test_normalize_pages_merges_hyphenated_line_wraps():
    """Test merging of words broken across lines."""
    result = normalize_pages(["soft-\nware unit"])

    assert result.dehyphenation_merges == 1
    assert result.pages[0] == "software unit"


def test_normalize_pages_removes_watermark_lines():
    """Test that banner lines are dropped wherever they appear."""
    page = (
        "ISO Store Order: OP-1022919 license #1/ Downloaded: 2026-02-14\n"
        "Single user licence only, copying and networking prohibited.\n"
        "Functional safety requirement"
    )

    result = normalize_pages([page])

    assert result.pages[0] == "Functional safety requirement"


def test_normalize_pages_counts_empty_pages():
    """Test the empty page counter after normalization."""
    result = normalize_pages(["Some text", "   \n", ""])

    assert result.empty_page_count == 2
    assert len(result.pages) == 3


def test_should_merge_hyphenated_pair():
    """Test the conditions of the dehyphenation merge."""
    assert should_merge_hyphenated_pair("soft-", "ware")
    assert not should_merge_hyphenated_pair("soft-", "Ware")
    assert not should_merge_hyphenated_pair("12-", "month")
    assert not should_merge_hyphenated_pair("soft", "ware")
    assert not should_merge_hyphenated_pair("soft-", "")


def test_merge_hyphenated_lines_counts_merges():
    """Test merging over several lines."""
    lines, merges = merge_hyphenated_lines(["imple-", "mentation", "veri-", "fication", "done"])

    assert merges == 2
    assert lines == ["implementation", "verification", "done"]


def test_detect_printed_page_label_supports_numeric_and_roman_labels():
    """Test the accepted page label shapes."""
    assert detect_printed_page_label("Some line\nPage 12\n") == "12"
    assert detect_printed_page_label("Some line\nii\n") == "ii"
    assert detect_printed_page_label("Some line\n- 7 -") == "7"
    assert detect_printed_page_label("PAGE IV\nbody text") == "iv"
    assert detect_printed_page_label("Only prose on this page") is None


def test_detect_printed_page_label_prefers_trailing_lines():
    """Test that footer labels win over header labels."""
    page = "3\nheader text\nbody\n\n42"

    assert detect_printed_page_label(page) == "42"


def test_printed_page_label_lookup():
    """Test label lookup by 1-based PDF page."""
    labels = detect_printed_page_labels(["text\n1", "text", "text\n3"])

    assert labels == ["1", None, "3"]
    assert printed_page_label_for(labels, 1) == "1"
    assert printed_page_label_for(labels, 2) is None
    assert printed_page_label_for(labels, 0) is None
    assert printed_page_label_for(labels, 4) is None


def test_printed_page_labels_for_range_uses_detected_labels_inside_range():
    """Test the first and last detected label of a page range."""
    labels = [None, "25", None, "27"]

    assert printed_page_labels_for_range(labels, 1, 4) == ("25", "27")
    assert printed_page_labels_for_range(labels, 1, 3) == ("25", "25")
    assert printed_page_labels_for_range(labels, 3, 3) == (None, None)
    assert printed_page_labels_for_range(labels, 4, 2) == ("25", "27")
    assert printed_page_labels_for_range(labels, 9, 12) == (None, None)
    assert printed_page_labels_for_range([], 1, 2) == (None, None)
