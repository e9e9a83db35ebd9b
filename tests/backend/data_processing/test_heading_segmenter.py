"""
Unit tests for the heading segmenter.
"""

import pytest

from clausemap.backend.data_processing.heading_segmenter import (
    ChunkType, derive_ref_path, detect_heading, segment_pages
)
from clausemap.backend.data_processing.patterns import StructureConfig, default_patterns
from tests.backend.data_processing.test_sample_data import get_sample_pages


@pytest.fixture
def patterns():
    return default_patterns()


def test_derive_ref_path():
    """Test breadcrumbs of clause, table and annex references."""
    assert derive_ref_path("8.4.5", ChunkType.CLAUSE) == "8 > 4 > 5"
    assert derive_ref_path("Table 6", ChunkType.TABLE) == "Table 6"
    assert derive_ref_path("Annex A", ChunkType.ANNEX) == "Annex A"


def test_detect_heading_priority(patterns):
    """Test that tables and annexes win over clauses."""
    config = StructureConfig()

    assert detect_heading("Table 3 — Methods", patterns, config) == (
        ChunkType.TABLE, "Table 3", "Table 3 — Methods"
    )
    assert detect_heading("Annex C (normative) Tool qualification", patterns, config)[:2] == (
        ChunkType.ANNEX, "Annex C"
    )
    assert detect_heading("9.4.2 Verification", patterns, config)[:2] == (ChunkType.CLAUSE, "9.4.2")
    assert detect_heading("The unit shall be verified.", patterns, config) is None


def test_detect_heading_rejects_toc_and_long_titles(patterns):
    """Test that contents lines and over-long titles are body text."""
    config = StructureConfig()

    assert detect_heading("9.4.2 Verification ............ 27", patterns, config) is None
    assert detect_heading("9.4.2 " + "x" * 141, patterns, config) is None
    assert detect_heading("9.4.2 " + "x" * 140, patterns, config) is not None


def test_segment_pages_sample_document(patterns):
    """Test segmentation of the sample document."""
    drafts = segment_pages(get_sample_pages(), patterns)

    assert [(draft.chunk_type, draft.reference) for draft in drafts] == [
        (ChunkType.CLAUSE, "8.4"),
        (ChunkType.CLAUSE, "8.4.5"),
        (ChunkType.TABLE, "Table 6"),
        (ChunkType.ANNEX, "Annex A"),
    ]

    clause = drafts[0]
    assert clause.heading == "8.4 Requirements and recommendations"
    assert clause.ref_path == "8 > 4"
    assert clause.text == (
        "8.4 Requirements and recommendations\n\n"
        "The software unit design shall be described in natural language."
    )
    assert (clause.page_start, clause.page_end) == (2, 2)

    annex = drafts[3]
    assert annex.ref_path == "Annex A"
    assert (annex.page_start, annex.page_end) == (3, 3)


def test_segment_pages_drops_text_before_first_heading(patterns):
    """Test that preamble text never reaches a draft."""
    drafts = segment_pages(["Foreword text\nIntroduction text", "5.1 General\nBody"], patterns)

    assert len(drafts) == 1
    assert "Foreword" not in drafts[0].text


def test_segment_pages_extends_page_end(patterns):
    """Test that body lines on later pages extend the draft's page span."""
    pages = ["6.4.1 Heading\nfirst line", "", "continued on page three"]

    drafts = segment_pages(pages, patterns)

    assert len(drafts) == 1
    assert drafts[0].page_start == 1
    assert drafts[0].page_end == 3
    assert drafts[0].text == "6.4.1 Heading\n\nfirst line\ncontinued on page three"


def test_segment_pages_heading_without_body(patterns):
    """Test that a heading with no body keeps the heading as its text."""
    drafts = segment_pages(["7.1 Objectives\n7.2 General"], patterns)

    assert [draft.text for draft in drafts] == ["7.1 Objectives", "7.2 General"]
