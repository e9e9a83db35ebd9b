"""
Ingest pipeline for the standard's PDF parts.

This module orchestrates discovery, page extraction, tree building and
storage of every source PDF in one all-or-nothing database transaction, then
refreshes the full-text index and writes the run manifests.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from pydantic import BaseModel, Field

from clausemap.backend.data_processing.database import (
    DbConfig, DocRecord, get_connection, ensure_schema_current, delete_document_rows,
    upsert_doc, set_metadata, get_metadata, rebuild_fts_index
)
from clausemap.backend.data_processing.extraction import (
    ExtractionConfig, ExtractionError, OcrMode, extract_outline_headings,
    extract_pages_with_backend
)
from clausemap.backend.data_processing.inventory import (
    InventoryConfig, SourcePdf, discover_source_pdfs
)
from clausemap.backend.data_processing.patterns import (
    IngestPatterns, PatternConfig, StructureConfig, compile_patterns
)
from clausemap.backend.data_processing.tracking import (
    IngestCounts, IngestRunManifest, PageExtractionProvenance, PageProvenanceManifest,
    RunStatus, collect_tool_versions, current_memory_usage_mb, new_run_id, write_manifest
)
from clausemap.backend.data_processing.tree_builder import DatabaseSink, NodeSink, build_document_tree


logger = logging.getLogger("clausemap.pipeline")


class IngestAbortedError(RuntimeError):
    """Raised after the run transaction was rolled back."""

    def __init__(self, run_id: str, cause: BaseException):
        super().__init__(f"ingest run {run_id} aborted: {cause}")
        self.run_id = run_id
        self.cause = cause


class PipelineConfig(BaseModel):
    """Configuration for the ingest pipeline."""
    db_config: DbConfig = Field(default_factory=DbConfig)
    inventory_config: InventoryConfig = Field(default_factory=InventoryConfig)
    extraction_config: ExtractionConfig = Field(default_factory=ExtractionConfig)
    structure_config: StructureConfig = Field(default_factory=StructureConfig)
    pattern_config: PatternConfig = Field(default_factory=PatternConfig)
    manifest_dir: Path = Field(
        default=Path("data/manifests"),
        description="Directory for run and provenance manifests"
    )
    target_parts: list[int] = Field(
        default_factory=list,
        description="Only ingest these parts; empty means all"
    )
    seed_page_chunks: bool = Field(
        default=False,
        description="Also store one page node and chunk per PDF page"
    )
    rebuild_fts: bool = Field(
        default=True,
        description="Rebuild the full-text index after a successful run"
    )
    write_manifests: bool = Field(
        default=True,
        description="Write run manifests to manifest_dir"
    )
    command: str = Field(default="", description="Command line recorded in the manifest")


class IngestResult(BaseModel):
    """Result of one ingest run."""
    run_id: str
    status: RunStatus
    counts: IngestCounts = Field(default_factory=IngestCounts)
    warnings: list[str] = Field(default_factory=list)
    source_hashes: dict[str, str] = Field(default_factory=dict)
    page_provenance: list[PageExtractionProvenance] = Field(default_factory=list)
    manifest_path: Path | None = Field(default=None)


class _RunAccumulator(BaseModel):
    counts: IngestCounts = Field(default_factory=IngestCounts)
    warnings: list[str] = Field(default_factory=list)
    source_hashes: dict[str, str] = Field(default_factory=dict)
    page_provenance: list[PageExtractionProvenance] = Field(default_factory=list)

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)


def document_heading(config: PipelineConfig, pdf: SourcePdf) -> str:
    return f"{config.inventory_config.standard_name} Part {pdf.part}"


def ingest_document(
    pdf: SourcePdf,
    config: PipelineConfig,
    patterns: IngestPatterns,
    sink: NodeSink,
    run: _RunAccumulator,
) -> None:
    """
    Rebuild the rows of one document inside the open run transaction.

    Missing files and extraction failures are recorded as warnings and skip
    the document without a docs row; in force OCR mode an extraction failure
    propagates. Only documents whose tree was built count as processed.

    Args:
        pdf: The source PDF.
        config: Pipeline configuration.
        patterns: Compiled heuristic patterns.
        sink: Destination of node and chunk rows.
        run: Accumulated counts, warnings and provenance of the run.
    """
    delete_document_rows(pdf.doc_id)

    if not pdf.path.exists():
        run.warn(f"missing source PDF: {pdf.path}")
        return

    try:
        extraction = extract_pages_with_backend(
            pdf.path, pdf.doc_id, config.extraction_config, config.structure_config
        )
    except ExtractionError as e:
        if config.extraction_config.ocr_mode == OcrMode.FORCE:
            raise
        run.warn(f"failed to extract text for {pdf.path}: {e}")
        return

    upsert_doc(DocRecord(
        doc_id=pdf.doc_id,
        filename=pdf.filename,
        sha256=pdf.sha256,
        part=pdf.part,
        year=pdf.year,
        title=pdf.title,
    ))
    run.source_hashes[pdf.doc_id] = pdf.sha256

    counts = run.counts
    counts.ocr_page_count += extraction.ocr_page_count
    counts.text_layer_page_count += extraction.text_layer_page_count
    counts.ocr_fallback_page_count += extraction.ocr_fallback_page_count
    counts.empty_page_count += extraction.empty_page_count
    counts.header_lines_removed += extraction.header_lines_removed
    counts.footer_lines_removed += extraction.footer_lines_removed
    counts.dehyphenation_merges += extraction.dehyphenation_merges
    run.page_provenance.extend(extraction.page_provenance)
    for message in extraction.warnings:
        run.warnings.append(message)

    try:
        section_headings = extract_outline_headings(pdf.path, patterns)
    except ExtractionError as e:
        run.warn(f"failed to extract outline headings for {pdf.path}: {e}")
        section_headings = []

    state = build_document_tree(
        doc_id=pdf.doc_id,
        source_hash=pdf.sha256,
        document_heading=document_heading(config, pdf),
        pages=extraction.pages,
        page_printed_labels=extraction.page_printed_labels,
        section_headings=section_headings,
        sink=sink,
        patterns=patterns,
        structure=config.structure_config,
        seed_page_chunks=config.seed_page_chunks,
    )
    counts.merge(state.counts)
    counts.processed_pdf_count += 1
    if pdf.part not in counts.processed_parts:
        counts.processed_parts.append(pdf.part)


def write_run_manifests(
    config: PipelineConfig,
    manifest: IngestRunManifest,
    page_provenance: list[PageExtractionProvenance],
) -> Path:
    manifest_dir = config.manifest_dir
    run_path = write_manifest(manifest, manifest_dir / f"ingest_run_{manifest.run_id}.json")
    write_manifest(manifest, manifest_dir / "latest_ingest_run.json")
    write_manifest(
        PageProvenanceManifest(run_id=manifest.run_id, pages=page_provenance),
        manifest_dir / f"page_provenance_{manifest.run_id}.json",
    )
    return run_path


def run_ingest(config: PipelineConfig | None = None, sink: NodeSink | None = None) -> IngestResult:
    """
    Run the complete ingest pipeline.

    Every selected document is rebuilt from scratch inside one transaction.
    Any error other than a per-document extraction failure rolls the whole run
    back.

    Args:
        config: Optional pipeline configuration.
        sink: Row destination, the database when omitted.

    Returns:
        IngestResult with counts, warnings and provenance.

    Raises:
        PatternConfigError: If a heuristic pattern is malformed.
        IngestAbortedError: If the run was rolled back.
    """
    if config is None:
        config = PipelineConfig()

    patterns = compile_patterns(config.pattern_config)
    sink = sink or DatabaseSink()

    manifest = IngestRunManifest(
        run_id=new_run_id(),
        db_path=config.db_config.db_path,
        command=config.command,
        tool_versions=collect_tool_versions(),
    )
    logger.info(f"Starting ingest run {manifest.run_id}")

    pdfs = discover_source_pdfs(config.inventory_config)
    if config.target_parts:
        pdfs = [pdf for pdf in pdfs if pdf.part in config.target_parts]

    conn = get_connection(config.db_config)
    ensure_schema_current()

    run = _RunAccumulator()
    conn.execute("BEGIN TRANSACTION")
    logger.info("Started database transaction")

    try:
        for pdf in pdfs:
            logger.info(f"Ingesting {pdf.filename} as {pdf.doc_id}")
            ingest_document(pdf, config, patterns, sink, run)

        conn.execute("COMMIT")
        logger.info("Committed database transaction")
    except Exception as e:
        logger.error(f"Ingest run {manifest.run_id} failed: {e}", exc_info=True)
        conn.execute("ROLLBACK")
        logger.error("Rolled back transaction due to ingest error")

        manifest.status = "failed"
        manifest.completed_at = datetime.now(timezone.utc)
        manifest.warnings = run.warnings + [f"run aborted: {e}"]
        if config.write_manifests:
            write_run_manifests(config, manifest, run.page_provenance)
        raise IngestAbortedError(manifest.run_id, e) from e

    ensure_schema_current()
    set_metadata("last_ingest_run_id", manifest.run_id)
    if config.rebuild_fts:
        rebuild_fts_index()

    manifest.status = "completed"
    manifest.completed_at = datetime.now(timezone.utc)
    manifest.db_schema_version = get_metadata("db_schema_version")
    manifest.counts = run.counts
    manifest.processed_parts = sorted(run.counts.processed_parts)
    manifest.source_hashes = run.source_hashes
    manifest.warnings = run.warnings
    manifest.memory_usage_mb = current_memory_usage_mb()

    manifest_path = None
    if config.write_manifests:
        manifest_path = write_run_manifests(config, manifest, run.page_provenance)

    logger.info(
        f"Ingest run {manifest.run_id} completed: {run.counts.processed_pdf_count} PDFs, "
        f"{run.counts.nodes_total} nodes, {len(run.warnings)} warnings"
    )

    return IngestResult(
        run_id=manifest.run_id,
        status=manifest.status,
        counts=run.counts,
        warnings=run.warnings,
        source_hashes=run.source_hashes,
        page_provenance=run.page_provenance,
        manifest_path=manifest_path,
    )
