"""
Inventory of source PDFs.

This module discovers the standard's PDF parts in a cache directory, derives
their part/year identity from the filename and fingerprints each file.
"""

import re
import hashlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from pydantic import BaseModel, Field

from clausemap.backend.data_processing.tracking import write_manifest


logger = logging.getLogger("clausemap.inventory")


class InventoryConfig(BaseModel):
    """Configuration for source PDF discovery."""
    cache_root: Path = Field(
        default=Path("data/raw"),
        description="Directory holding the source PDFs"
    )
    filename_pattern: str = Field(
        default=r"ISO 26262-(?P<part>\d+);(?P<year>\d{4})",
        description="Regex with named groups 'part' and 'year' matched against filenames"
    )
    doc_id_prefix: str = Field(default="ISO26262", description="Prefix of generated document ids")
    standard_name: str = Field(default="ISO 26262", description="Human-readable standard name")


class SourcePdf(BaseModel):
    """One discovered source PDF."""
    filename: str
    path: Path
    part: int
    year: int
    sha256: str
    doc_id: str
    title: str


class InventoryManifest(BaseModel):
    """Inventory manifest written to disk."""
    manifest_version: int = Field(default=1)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source_directory: str
    pdf_count: int
    pdfs: list[SourcePdf] = Field(default_factory=list)


def calculate_file_hash(file_path: Path) -> str:
    """
    Calculate the SHA-256 hash of a file.

    Args:
        file_path: Path to the file.

    Returns:
        The hexadecimal digest of the hash.
    """
    hash_obj = hashlib.sha256()

    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(4096), b""):
            hash_obj.update(chunk)

    return hash_obj.hexdigest()


def discover_source_pdfs(config: InventoryConfig | None = None) -> list[SourcePdf]:
    """
    Find and fingerprint the source PDFs in the cache directory.

    Args:
        config: Inventory settings, defaults when omitted.

    Returns:
        Matching PDFs sorted by part, year and filename.

    Raises:
        FileNotFoundError: If the cache directory does not exist.
    """
    config = config or InventoryConfig()
    pattern = re.compile(config.filename_pattern)

    if not config.cache_root.is_dir():
        raise FileNotFoundError(f"PDF cache directory not found: {config.cache_root}")

    pdfs: list[SourcePdf] = []
    for path in sorted(config.cache_root.iterdir()):
        if not path.is_file() or path.suffix.lower() != ".pdf":
            continue

        match = pattern.search(path.name)
        if not match:
            logger.warning(f"Skipping {path.name}: filename does not match {config.filename_pattern}")
            continue

        part = int(match.group("part"))
        year = int(match.group("year"))
        pdfs.append(SourcePdf(
            filename=path.name,
            path=path,
            part=part,
            year=year,
            sha256=calculate_file_hash(path),
            doc_id=f"{config.doc_id_prefix}-{part}-{year}",
            title=f"{config.standard_name}-{part}:{year}",
        ))

    pdfs.sort(key=lambda pdf: (pdf.part, pdf.year, pdf.filename))
    logger.info(f"Discovered {len(pdfs)} source PDFs in {config.cache_root}")
    return pdfs


def build_inventory_manifest(pdfs: list[SourcePdf], source_directory: Path) -> InventoryManifest:
    return InventoryManifest(
        source_directory=str(source_directory),
        pdf_count=len(pdfs),
        pdfs=pdfs,
    )


def write_inventory_manifest(pdfs: list[SourcePdf], path: Path, source_directory: Path | None = None) -> Path:
    """Write the inventory of discovered PDFs as JSON."""
    if source_directory is None:
        source_directory = pdfs[0].path.parent if pdfs else Path(".")
    return write_manifest(build_inventory_manifest(pdfs, source_directory), path)
