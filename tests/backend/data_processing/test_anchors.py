"""
Unit tests for the identifier and citation-anchor helpers.
"""

import pytest

from clausemap.backend.data_processing.anchors import (
    MarkerStyle, sanitize_ref, normalize_marker_label, parse_numeric_alpha_marker,
    is_roman_marker, classify_marker_style, build_citation_anchor_id
)


def test_sanitize_ref():
    """Test reduction of references to lowercase keys."""
    assert sanitize_ref("8.4.5") == "8_4_5"
    assert sanitize_ref("Table 3") == "table_3"
    assert sanitize_ref("Annex A") == "annex_a"
    assert sanitize_ref("  --NOTE 1--  ") == "note_1"
    assert sanitize_ref("Über") == "ber"
    assert sanitize_ref("...") == ""


def test_normalize_marker_label_common_forms():
    """Test normalization of the usual list and note markers."""
    assert normalize_marker_label("b)") == "b"
    assert normalize_marker_label("NOTE 2") == "NOTE 2"
    assert normalize_marker_label("Note 2") == "NOTE 2"
    assert normalize_marker_label("note") == "NOTE"
    assert normalize_marker_label("—") == "-"
    assert normalize_marker_label("•") == "-"
    assert normalize_marker_label("1a.") == "1a"
    assert normalize_marker_label("IV)") == "iv"
    assert normalize_marker_label("   ") == "-"


@pytest.mark.parametrize("marker", ["b)", "NOTE 2", "—", "3.", "ii)", "1a", "*"])
def test_normalize_marker_label_is_idempotent(marker):
    """Test that normalizing a normalized label changes nothing."""
    once = normalize_marker_label(marker)
    assert normalize_marker_label(once) == once


def test_parse_numeric_alpha_marker():
    """Test parsing of <digits><letter?> markers."""
    assert parse_numeric_alpha_marker("12") == (12, None)
    assert parse_numeric_alpha_marker("1a") == (1, "a")
    assert parse_numeric_alpha_marker("a") is None
    assert parse_numeric_alpha_marker("1ab") is None
    assert parse_numeric_alpha_marker("1A") is None
    assert parse_numeric_alpha_marker("a1") is None
    assert parse_numeric_alpha_marker("") is None


def test_classify_marker_style():
    """Test classification of normalized markers into styles."""
    assert classify_marker_style("-") == MarkerStyle.BULLET
    assert classify_marker_style("3") == MarkerStyle.NUMERIC
    assert classify_marker_style("b") == MarkerStyle.ALPHA
    assert classify_marker_style("iv") == MarkerStyle.ROMAN
    assert classify_marker_style("2c") == MarkerStyle.ALNUM
    assert classify_marker_style("NOTE 1") == MarkerStyle.SYMBOL

    # A single "i" is an alpha marker, not a roman numeral
    assert not is_roman_marker("i")
    assert classify_marker_style("i") == MarkerStyle.ALPHA


def test_build_citation_anchor_id():
    """Test the citation anchor format and its label fallbacks."""
    assert build_citation_anchor_id("ISO26262-6-2018", "8.4.5", "marker", "a", 1) == \
        "ISO26262-6-2018:8_4_5:marker:a"
    assert build_citation_anchor_id("ISO26262-6-2018", "8.4.5", "marker", "NOTE 1", 1) == \
        "ISO26262-6-2018:8_4_5:marker:note_1"

    # Falls back to the sibling order, then to "root"
    assert build_citation_anchor_id("doc", "Table 6", "table_row", "", 3) == "doc:table_6:table_row:3"
    assert build_citation_anchor_id("doc", "Table 6", "table_row", None, 3) == "doc:table_6:table_row:3"
    assert build_citation_anchor_id("doc", "Annex A", "clause", None, None) == "doc:annex_a:clause:root"


def test_build_citation_anchor_id_is_deterministic():
    """Test that equal inputs always give the same anchor."""
    first = build_citation_anchor_id("doc", "9.4.2", "paragraph", "2", 2)
    second = build_citation_anchor_id("doc", "9.4.2", "paragraph", "2", 2)
    assert first == second
