"""
Tracking module for ingest runs.

This module provides the run manifest models written after every ingest:
aggregate counters, per-page extraction provenance, tool versions and
warnings, plus helpers to serialize them.
"""

import os
import logging
import subprocess
from typing import Literal
from datetime import datetime, timezone
from pathlib import Path
from pydantic import BaseModel, Field
import psutil


logger = logging.getLogger("clausemap.tracking")


# Type definitions
RunStatus = Literal["running", "completed", "failed"]
ExtractionBackend = Literal["text_layer", "ocr"]
PrintedPageStatus = Literal["detected", "missing", "unknown"]


class PageExtractionProvenance(BaseModel):
    """How the text of one PDF page was obtained."""
    doc_id: str = Field(description="Document the page belongs to")
    page_pdf: int = Field(description="1-based physical page number")
    backend: ExtractionBackend = Field(default="text_layer")
    reason: str = Field(default="text_layer_default", description="Why this backend was used")
    text_char_count: int = Field(default=0, description="Non-whitespace characters kept")
    ocr_char_count: int | None = Field(default=None)
    printed_page_label: str | None = Field(default=None)
    printed_page_status: PrintedPageStatus = Field(default="unknown")


class IngestCounts(BaseModel):
    """Aggregate counters of one ingest run."""
    processed_pdf_count: int = 0
    processed_parts: list[int] = Field(default_factory=list)

    ocr_page_count: int = 0
    text_layer_page_count: int = 0
    ocr_fallback_page_count: int = 0
    empty_page_count: int = 0
    header_lines_removed: int = 0
    footer_lines_removed: int = 0
    dehyphenation_merges: int = 0

    structured_chunks_inserted: int = 0
    clause_chunks_inserted: int = 0
    table_chunks_inserted: int = 0
    annex_chunks_inserted: int = 0
    page_chunks_inserted: int = 0

    nodes_total: int = 0
    section_heading_nodes_inserted: int = 0
    clause_nodes_inserted: int = 0
    subclause_nodes_inserted: int = 0
    annex_nodes_inserted: int = 0
    table_nodes_inserted: int = 0
    table_row_nodes_inserted: int = 0
    table_cell_nodes_inserted: int = 0
    list_nodes_inserted: int = 0
    list_item_nodes_inserted: int = 0
    note_nodes_inserted: int = 0
    note_item_nodes_inserted: int = 0
    paragraph_nodes_inserted: int = 0
    requirement_atom_nodes_inserted: int = 0
    page_nodes_inserted: int = 0

    table_raw_fallback_count: int = 0
    table_sparse_rows_count: int = 0
    table_overloaded_rows_count: int = 0
    table_rows_with_markers_count: int = 0
    table_rows_with_descriptions_count: int = 0
    table_marker_expected_count: int = 0
    table_marker_observed_count: int = 0
    list_parse_candidate_count: int = 0
    list_parse_fallback_count: int = 0

    def record_node(self, node_type: str) -> None:
        """Count an inserted node under its type-specific counter."""
        self.nodes_total += 1
        field_name = f"{node_type}_nodes_inserted"
        if field_name in type(self).model_fields:
            setattr(self, field_name, getattr(self, field_name) + 1)

    def merge(self, other: "IngestCounts") -> None:
        """Add another tally into this one."""
        for name in type(self).model_fields:
            if name == "processed_parts":
                for part in other.processed_parts:
                    if part not in self.processed_parts:
                        self.processed_parts.append(part)
                continue
            setattr(self, name, getattr(self, name) + getattr(other, name))


class ToolVersions(BaseModel):
    """First version line reported by each external tool, None if missing."""
    pdftotext: str | None = None
    pdftohtml: str | None = None
    pdftoppm: str | None = None
    tesseract: str | None = None


class IngestRunManifest(BaseModel):
    """Record of one ingest run."""
    manifest_version: int = Field(default=1)
    run_id: str = Field(description="Unique ID for the run")
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = Field(default=None)
    status: RunStatus = Field(default="running")
    db_path: str = Field(default="")
    db_schema_version: str | None = Field(default=None)
    command: str = Field(default="")
    tool_versions: ToolVersions = Field(default_factory=ToolVersions)
    counts: IngestCounts = Field(default_factory=IngestCounts)
    processed_parts: list[int] = Field(default_factory=list)
    source_hashes: dict[str, str] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    memory_usage_mb: float = Field(default=0.0)


class PageProvenanceManifest(BaseModel):
    """Per-page extraction provenance of one run."""
    run_id: str
    pages: list[PageExtractionProvenance] = Field(default_factory=list)


def new_run_id(now: datetime | None = None) -> str:
    """Build a run id from a compact UTC timestamp."""
    now = now or datetime.now(timezone.utc)
    return f"run-{now.strftime('%Y%m%dT%H%M%SZ')}"


def current_memory_usage_mb() -> float:
    """Resident memory of this process in megabytes."""
    process = psutil.Process(os.getpid())
    return process.memory_info().rss / (1024 * 1024)


def write_manifest(model: BaseModel, path: Path) -> Path:
    """
    Write a pydantic model as pretty-printed JSON.

    Args:
        model: The manifest to serialize.
        path: Destination file; parent directories are created.

    Returns:
        The path written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(model.model_dump_json(indent=2) + "\n", encoding="utf-8")
    logger.info(f"Wrote manifest {path}")
    return path


def command_version(program: str, args: list[str]) -> str | None:
    """Return the first non-empty line a tool prints for its version flag."""
    try:
        result = subprocess.run(
            [program, *args],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return None

    source = result.stdout.strip() or result.stderr.strip()
    for line in source.splitlines():
        if line.strip():
            return line.strip()
    return None


def collect_tool_versions() -> ToolVersions:
    return ToolVersions(
        pdftotext=command_version("pdftotext", ["-v"]),
        pdftohtml=command_version("pdftohtml", ["-v"]),
        pdftoppm=command_version("pdftoppm", ["-v"]),
        tesseract=command_version("tesseract", ["--version"]),
    )
