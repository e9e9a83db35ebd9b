"""
Page and outline extraction for source PDFs.

This module wraps the external extraction tools (poppler's pdftotext,
pdftohtml and pdftoppm, and tesseract) in blocking subprocess calls and turns
their output into normalized page text, printed page labels, top-level
outline headings and per-page extraction provenance.
"""

import logging
import shutil
import subprocess
import tempfile
from enum import Enum
from dataclasses import dataclass, field
from pathlib import Path
from pydantic import BaseModel, Field
from lxml import etree

from clausemap.backend.data_processing.page_normalizer import (
    detect_printed_page_labels, non_whitespace_char_count, normalize_pages
)
from clausemap.backend.data_processing.patterns import (
    IngestPatterns, StructureConfig, default_patterns
)
from clausemap.backend.data_processing.tracking import PageExtractionProvenance


logger = logging.getLogger("clausemap.extraction")


FORM_FEED = "\x0c"


class ExtractionError(RuntimeError):
    """Raised when an external extraction tool fails or is unavailable."""
    pass


class OcrMode(str, Enum):
    """When to replace the text layer of a page with OCR output."""
    OFF = "off"
    AUTO = "auto"
    FORCE = "force"


class ExtractionConfig(BaseModel):
    """Configuration for page extraction."""
    ocr_mode: OcrMode = Field(default=OcrMode.AUTO, description="OCR policy")
    ocr_lang: str = Field(default="eng", description="Tesseract language code")
    ocr_min_text_chars: int = Field(
        default=120,
        description="Pages with fewer non-whitespace characters are OCR candidates in auto mode"
    )
    max_pages_per_doc: int | None = Field(
        default=None,
        description="Only extract the first N pages of each document"
    )


@dataclass
class SectionHeadingDraft:
    """A top-level outline entry."""
    reference: str
    heading: str
    page_pdf: int


@dataclass
class ExtractedPages:
    """Normalized pages of one document plus extraction counters."""
    pages: list[str] = field(default_factory=list)
    page_printed_labels: list[str | None] = field(default_factory=list)
    ocr_page_count: int = 0
    text_layer_page_count: int = 0
    ocr_fallback_page_count: int = 0
    empty_page_count: int = 0
    header_lines_removed: int = 0
    footer_lines_removed: int = 0
    dehyphenation_merges: int = 0
    page_provenance: list[PageExtractionProvenance] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def run_tool(args: list[str], description: str) -> str:
    """
    Run an external tool and return its standard output.

    Args:
        args: Program and arguments.
        description: Human-readable subject used in error messages.

    Returns:
        The tool's stdout decoded as UTF-8 (invalid bytes replaced).

    Raises:
        ExtractionError: If the tool cannot be started or exits non-zero.
    """
    try:
        result = subprocess.run(
            args,
            capture_output=True,
            check=True,
        )
    except FileNotFoundError as e:
        raise ExtractionError(f"failed to execute {args[0]} for {description}: {e}") from e
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or b"").decode("utf-8", errors="replace").strip()
        raise ExtractionError(
            f"{args[0]} returned non-zero exit status for {description}: {stderr}"
        ) from e

    return result.stdout.decode("utf-8", errors="replace")


def command_available(program: str) -> bool:
    """Check whether an external program can be found on PATH."""
    return shutil.which(program) is not None


def extract_text_pages(pdf_path: Path, max_pages: int | None = None) -> list[str]:
    """
    Extract the text layer of a PDF, one string per page.

    Args:
        pdf_path: The source PDF.
        max_pages: Stop after this many pages when given.

    Returns:
        Page texts in PDF order, trailing blank pages dropped.

    Raises:
        ExtractionError: If pdftotext fails.
    """
    args = ["pdftotext", "-enc", "UTF-8", "-f", "1"]
    if max_pages is not None:
        args.extend(["-l", str(max_pages)])
    args.extend([str(pdf_path), "-"])

    raw = run_tool(args, str(pdf_path))
    pages = [page.replace("\x00", "") for page in raw.split(FORM_FEED)]

    while pages and not pages[-1].strip():
        pages.pop()

    return pages


def normalize_outline_label(raw_label: str) -> str:
    """Collapse whitespace (non-breaking spaces included) in an outline label."""
    return " ".join(raw_label.replace("\u00a0", " ").split())


def parse_outline_xml(xml: str, patterns: IngestPatterns | None = None) -> list[SectionHeadingDraft]:
    """
    Collect top-level section headings from pdftohtml XML output.

    Args:
        xml: The XML document produced by ``pdftohtml -xml``.
        patterns: Compiled heuristic patterns, defaults when omitted.

    Returns:
        One draft per distinct section reference, first occurrence wins.
    """
    patterns = patterns or default_patterns()
    if not xml.strip():
        return []

    parser = etree.XMLParser(recover=True)
    root = etree.fromstring(xml.encode("utf-8"), parser)
    if root is None:
        return []

    headings: list[SectionHeadingDraft] = []
    seen_refs: set[str] = set()

    for item in root.iter("item"):
        try:
            page_pdf = int(item.get("page", "1"))
        except ValueError:
            page_pdf = 1

        label = normalize_outline_label("".join(item.itertext()))
        match = patterns.outline_section.match(label)
        if not match:
            continue

        reference = match.group(1).strip()
        title = match.group(2).strip()
        if not reference or not title or reference in seen_refs:
            continue

        seen_refs.add(reference)
        headings.append(SectionHeadingDraft(reference=reference, heading=label, page_pdf=page_pdf))

    return headings


def extract_outline_headings(
    pdf_path: Path,
    patterns: IngestPatterns | None = None,
) -> list[SectionHeadingDraft]:
    """
    Extract top-level section headings from the PDF outline.

    Raises:
        ExtractionError: If pdftohtml fails.
    """
    xml = run_tool(
        ["pdftohtml", "-xml", "-f", "1", "-l", "1", str(pdf_path), "-stdout"],
        str(pdf_path),
    )
    return parse_outline_xml(xml, patterns)


def ocr_page(pdf_path: Path, page_number: int, ocr_lang: str) -> str:
    """
    Rasterize one page and run text recognition on it.

    Args:
        pdf_path: The source PDF.
        page_number: 1-based page to recognise.
        ocr_lang: Tesseract language code.

    Returns:
        The recognised text, trimmed.

    Raises:
        ExtractionError: If rasterization or recognition fails.
    """
    description = f"{pdf_path} page {page_number}"

    with tempfile.TemporaryDirectory(prefix="clausemap_ocr_") as tmp_dir:
        output_root = Path(tmp_dir) / f"page_{page_number}"
        run_tool(
            [
                "pdftoppm", "-f", str(page_number), "-l", str(page_number),
                "-singlefile", "-png", str(pdf_path), str(output_root),
            ],
            description,
        )

        png_path = output_root.with_suffix(".png")
        if not png_path.exists():
            raise ExtractionError(f"pdftoppm did not produce expected image for {description}")

        text = run_tool(["tesseract", str(png_path), "stdout", "-l", ocr_lang], description)

    return text.replace("\x00", "").strip()


def collect_ocr_candidates(pages: list[str], mode: OcrMode, min_chars: int) -> list[int]:
    """
    Pick the pages to OCR.

    Returns:
        1-based page numbers: none when off, all when forced, and in auto mode
        the pages whose non-whitespace character count is below ``min_chars``.
    """
    if mode == OcrMode.OFF:
        return []
    if mode == OcrMode.FORCE:
        return list(range(1, len(pages) + 1))
    return [
        index + 1 for index, page in enumerate(pages)
        if non_whitespace_char_count(page) < min_chars
    ]


def _initial_extraction(pages: list[str], doc_id: str) -> ExtractedPages:
    provenance = []
    for index, page in enumerate(pages):
        chars = non_whitespace_char_count(page)
        provenance.append(PageExtractionProvenance(
            doc_id=doc_id,
            page_pdf=index + 1,
            backend="text_layer",
            reason="text_layer_empty" if chars == 0 else "text_layer_default",
            text_char_count=chars,
        ))

    return ExtractedPages(
        pages=list(pages),
        text_layer_page_count=len(pages),
        page_provenance=provenance,
    )


def _apply_ocr(
    extraction: ExtractedPages,
    pdf_path: Path,
    candidates: list[int],
    config: ExtractionConfig,
) -> None:
    if not command_available("pdftoppm") or not command_available("tesseract"):
        message = (
            f"OCR mode '{config.ocr_mode.value}' requested for {len(candidates)} pages "
            f"but pdftoppm/tesseract are unavailable"
        )
        if config.ocr_mode == OcrMode.FORCE:
            raise ExtractionError(message)

        for page_number in candidates:
            extraction.page_provenance[page_number - 1].reason = "ocr_unavailable_text_layer_fallback"
        extraction.warnings.append(message)
        logger.warning(message)
        return

    for page_number in candidates:
        index = page_number - 1
        entry = extraction.page_provenance[index]

        try:
            ocr_text = ocr_page(pdf_path, page_number, config.ocr_lang)
        except ExtractionError as e:
            if config.ocr_mode == OcrMode.FORCE:
                raise ExtractionError(
                    f"failed OCR extraction for {pdf_path} page {page_number}: {e}"
                ) from e
            message = f"OCR fallback failed for {pdf_path} page {page_number}: {e}"
            extraction.warnings.append(message)
            logger.warning(message)
            entry.reason = "ocr_failed_text_layer_fallback"
            continue

        ocr_chars = non_whitespace_char_count(ocr_text)
        if ocr_chars == 0 and config.ocr_mode == OcrMode.AUTO:
            message = f"OCR text was empty for {pdf_path} page {page_number} in auto mode"
            extraction.warnings.append(message)
            logger.warning(message)
            entry.reason = "ocr_empty_text_layer_fallback"
            entry.ocr_char_count = 0
            continue

        extraction.pages[index] = ocr_text
        extraction.ocr_page_count += 1
        extraction.text_layer_page_count -= 1
        if config.ocr_mode == OcrMode.AUTO:
            extraction.ocr_fallback_page_count += 1

        entry.backend = "ocr"
        entry.reason = "ocr_force_mode" if config.ocr_mode == OcrMode.FORCE else "ocr_auto_low_text"
        entry.text_char_count = ocr_chars
        entry.ocr_char_count = ocr_chars


def _finish_extraction(extraction: ExtractedPages, structure: StructureConfig) -> None:
    extraction.page_printed_labels = detect_printed_page_labels(extraction.pages)
    for entry, label in zip(extraction.page_provenance, extraction.page_printed_labels):
        entry.printed_page_label = label
        entry.printed_page_status = "detected" if label is not None else "missing"

    normalized = normalize_pages(extraction.pages, structure)
    extraction.pages = normalized.pages
    extraction.header_lines_removed = normalized.header_lines_removed
    extraction.footer_lines_removed = normalized.footer_lines_removed
    extraction.dehyphenation_merges = normalized.dehyphenation_merges
    extraction.empty_page_count = normalized.empty_page_count


def extract_pages_with_backend(
    pdf_path: Path,
    doc_id: str,
    config: ExtractionConfig | None = None,
    structure: StructureConfig | None = None,
) -> ExtractedPages:
    """
    Extract, optionally OCR, and normalize the pages of one document.

    The text layer is read first; candidate pages are then re-read through OCR
    according to the configured mode, falling back to the text layer (with a
    warning) when OCR is unavailable, fails or comes back empty, except in
    force mode where such failures raise. Printed page labels are detected
    before the page normalizer strips headers and footers.

    Args:
        pdf_path: The source PDF.
        doc_id: Document id recorded in the page provenance.
        config: Extraction settings, defaults when omitted.
        structure: Normalizer limits, defaults when omitted.

    Returns:
        The extracted pages with counters, provenance and warnings.

    Raises:
        ExtractionError: If the text layer cannot be read, or OCR fails in
            force mode.
    """
    config = config or ExtractionConfig()
    structure = structure or StructureConfig()

    pages = extract_text_pages(pdf_path, config.max_pages_per_doc)
    extraction = _initial_extraction(pages, doc_id)

    candidates = collect_ocr_candidates(extraction.pages, config.ocr_mode, config.ocr_min_text_chars)
    if candidates:
        logger.info(f"OCR candidates for {pdf_path.name}: {len(candidates)} pages")
        _apply_ocr(extraction, pdf_path, candidates, config)

    _finish_extraction(extraction, structure)
    return extraction
