"""
Unit tests for the source PDF inventory.
"""

import json
import hashlib
import pytest

from clausemap.backend.data_processing.inventory import (
    InventoryConfig, calculate_file_hash, discover_source_pdfs, write_inventory_manifest
)


@pytest.fixture
def pdf_cache(tmp_path):
    """Create a cache directory with matching and non-matching files."""
    cache_root = tmp_path / "raw"
    cache_root.mkdir()

    (cache_root / "ISO 26262-6;2018.pdf").write_bytes(b"%PDF-1.7 part six")
    (cache_root / "ISO 26262-2;2018.pdf").write_bytes(b"%PDF-1.7 part two")
    (cache_root / "ISO 26262-10;2012.PDF").write_bytes(b"%PDF-1.4 part ten")
    (cache_root / "unrelated.pdf").write_bytes(b"%PDF-1.7 other")
    (cache_root / "ISO 26262-3;2018.txt").write_text("not a pdf")
    (cache_root / "ISO 26262-4;2018.pdf").mkdir()

    return cache_root


def test_calculate_file_hash(tmp_path):
    """Test the SHA-256 fingerprint of a file."""
    path = tmp_path / "sample.pdf"
    content = b"%PDF-1.7\n" + b"x" * 10000
    path.write_bytes(content)

    assert calculate_file_hash(path) == hashlib.sha256(content).hexdigest()


def test_discover_source_pdfs(pdf_cache):
    """Test discovery, identity and ordering of source PDFs."""
    pdfs = discover_source_pdfs(InventoryConfig(cache_root=pdf_cache))

    assert [pdf.doc_id for pdf in pdfs] == [
        "ISO26262-2-2018",
        "ISO26262-6-2018",
        "ISO26262-10-2012",
    ]

    part6 = pdfs[1]
    assert part6.filename == "ISO 26262-6;2018.pdf"
    assert part6.part == 6
    assert part6.year == 2018
    assert part6.title == "ISO 26262-6:2018"
    assert part6.sha256 == hashlib.sha256(b"%PDF-1.7 part six").hexdigest()
    assert part6.path == pdf_cache / "ISO 26262-6;2018.pdf"


def test_discover_source_pdfs_custom_naming(tmp_path):
    """Test a configured filename pattern and id prefix."""
    (tmp_path / "sotif-part1-2022.pdf").write_bytes(b"%PDF")
    config = InventoryConfig(
        cache_root=tmp_path,
        filename_pattern=r"part(?P<part>\d+)-(?P<year>\d{4})",
        doc_id_prefix="ISO21448",
        standard_name="ISO 21448",
    )

    pdfs = discover_source_pdfs(config)

    assert [pdf.doc_id for pdf in pdfs] == ["ISO21448-1-2022"]
    assert pdfs[0].title == "ISO 21448-1:2022"


def test_discover_source_pdfs_missing_directory(tmp_path):
    """Test that a missing cache directory raises."""
    with pytest.raises(FileNotFoundError):
        discover_source_pdfs(InventoryConfig(cache_root=tmp_path / "missing"))


def test_write_inventory_manifest(pdf_cache, tmp_path):
    """Test the inventory manifest written to disk."""
    pdfs = discover_source_pdfs(InventoryConfig(cache_root=pdf_cache))
    manifest_path = tmp_path / "manifests" / "pdf_inventory.json"

    written = write_inventory_manifest(pdfs, manifest_path)

    assert written == manifest_path
    data = json.loads(manifest_path.read_text(encoding="utf-8"))
    assert data["manifest_version"] == 1
    assert data["pdf_count"] == 3
    assert data["source_directory"] == str(pdf_cache)
    assert data["pdfs"][0]["doc_id"] == "ISO26262-2-2018"
