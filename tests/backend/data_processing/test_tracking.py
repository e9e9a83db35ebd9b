"""
Unit tests for the ingest run tracking module.
"""

import json
from datetime import datetime, timezone
from unittest.mock import patch, MagicMock

from clausemap.backend.data_processing.tracking import (
    IngestCounts, IngestRunManifest, PageExtractionProvenance, PageProvenanceManifest,
    ToolVersions, new_run_id, current_memory_usage_mb, write_manifest, command_version,
    collect_tool_versions
)


MODULE = "clausemap.backend.data_processing.tracking"


def test_record_node_counts_by_type():
    """Test the per-type node counters."""
    counts = IngestCounts()

    for node_type in ["document", "section_heading", "clause", "list_item", "list_item", "page"]:
        counts.record_node(node_type)

    assert counts.nodes_total == 6
    assert counts.section_heading_nodes_inserted == 1
    assert counts.clause_nodes_inserted == 1
    assert counts.list_item_nodes_inserted == 2
    assert counts.page_nodes_inserted == 1


def test_merge_counts():
    """Test that merging sums counters and unions processed parts."""
    total = IngestCounts(processed_parts=[2], nodes_total=5, dehyphenation_merges=1)
    other = IngestCounts(processed_parts=[2, 6], nodes_total=7, table_chunks_inserted=3)

    total.merge(other)

    assert total.processed_parts == [2, 6]
    assert total.nodes_total == 12
    assert total.dehyphenation_merges == 1
    assert total.table_chunks_inserted == 3


def test_new_run_id():
    """Test the run id format."""
    now = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    assert new_run_id(now) == "run-20260102T030405Z"
    assert new_run_id().startswith("run-")


def test_current_memory_usage_mb():
    """Test that the resident memory of the test process is reported."""
    assert current_memory_usage_mb() > 0


def test_write_manifest(tmp_path):
    """Test serialization of a run manifest."""
    manifest = IngestRunManifest(
        run_id="run-20260102T030405Z",
        status="completed",
        db_path="data/processed/clausemap.duckdb",
        counts=IngestCounts(processed_pdf_count=1, nodes_total=42),
        warnings=["missing source PDF: data/raw/ISO 26262-9;2018.pdf"],
    )
    path = tmp_path / "manifests" / "ingest_run.json"

    assert write_manifest(manifest, path) == path

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["run_id"] == "run-20260102T030405Z"
    assert data["status"] == "completed"
    assert data["counts"]["nodes_total"] == 42

    restored = IngestRunManifest.model_validate_json(path.read_text(encoding="utf-8"))
    assert restored.counts.processed_pdf_count == 1
    assert restored.warnings == manifest.warnings


def test_page_provenance_manifest_round_trip(tmp_path):
    """Test the per-page provenance manifest."""
    pages = [
        PageExtractionProvenance(doc_id="doc", page_pdf=1, backend="ocr", reason="ocr_auto_low_text",
                                 text_char_count=120, ocr_char_count=120),
        PageExtractionProvenance(doc_id="doc", page_pdf=2, printed_page_label="2",
                                 printed_page_status="detected"),
    ]
    path = write_manifest(PageProvenanceManifest(run_id="run-1", pages=pages), tmp_path / "pages.json")

    restored = PageProvenanceManifest.model_validate_json(path.read_text(encoding="utf-8"))

    assert restored.pages == pages
    assert restored.pages[1].reason == "text_layer_default"


@patch(f"{MODULE}.subprocess.run")
def test_command_version(mock_run):
    """Test version probing of external tools."""
    mock_run.return_value = MagicMock(stdout="", stderr="\npdftotext version 24.02.0\nCopyright\n")
    assert command_version("pdftotext", ["-v"]) == "pdftotext version 24.02.0"

    mock_run.return_value = MagicMock(stdout="tesseract 5.3.4\n leptonica-1.82.0", stderr="")
    assert command_version("tesseract", ["--version"]) == "tesseract 5.3.4"

    mock_run.side_effect = FileNotFoundError("pdftoppm")
    assert command_version("pdftoppm", ["-v"]) is None


@patch(f"{MODULE}.command_version")
def test_collect_tool_versions(mock_version):
    """Test that every tool is probed."""
    mock_version.side_effect = lambda program, args: f"{program} 1.0" if program != "tesseract" else None

    versions = collect_tool_versions()

    assert versions == ToolVersions(
        pdftotext="pdftotext 1.0",
        pdftohtml="pdftohtml 1.0",
        pdftoppm="pdftoppm 1.0",
        tesseract=None,
    )
