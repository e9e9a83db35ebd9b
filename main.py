#!/usr/bin/env python
"""
clausemap command-line interface

This script runs the ingest pipeline that turns the PDF parts of a technical
standard into a citation-addressable node/chunk store.

Usage:
    python main.py inventory    # List and fingerprint the source PDFs
    python main.py ingest       # Extract, structure and store every PDF
    python main.py check        # Report structural violations in the store
"""

import sys
import json
import shlex
import logging
import argparse
from pathlib import Path
from typing import Any, Optional

from clausemap.backend.data_processing.database import (
    DbConfig, get_connection, close_connection, ensure_schema_current,
    find_structural_violations, count_nodes_by_type
)
from clausemap.backend.data_processing.extraction import ExtractionConfig, OcrMode
from clausemap.backend.data_processing.inventory import (
    InventoryConfig, discover_source_pdfs, write_inventory_manifest
)
from clausemap.backend.data_processing.patterns import PatternConfig, StructureConfig
from clausemap.backend.data_processing.pipeline import PipelineConfig, run_ingest


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler("clausemap.log"),
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger("clausemap")


class Config:
    """Configuration class for clausemap runs."""

    DEFAULT_CONFIG = {
        "cache_root": "data/raw",
        "db_path": "data/processed/clausemap.duckdb",
        "manifest_dir": "data/manifests",
        "ocr_mode": "auto",
        "ocr_lang": "eng",
        "ocr_min_text_chars": 120,
        "max_pages": None,
        "part": [],
        "seed_page_chunks": False,
        "no_fts": False,
        "log_level": "info",
        "patterns": {},
        "structure": {},
    }

    def __init__(self, config_path: Optional[str] = None):
        """Initialize with optional config file path."""
        self.config: dict[str, Any] = self.DEFAULT_CONFIG.copy()

        if config_path:
            self._load_from_file(config_path)

        log_level = getattr(logging, self.config["log_level"].upper())
        logging.getLogger().setLevel(log_level)

    def _load_from_file(self, config_path: str) -> None:
        """Load configuration from a JSON file."""
        try:
            with open(config_path, "r") as f:
                user_config = json.load(f)
                self.config.update(user_config)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config file: {e}")
            logger.warning("Using default configuration")

    def __getitem__(self, key: str) -> Any:
        return self.config[key]

    def get_db_config(self) -> DbConfig:
        return DbConfig(db_path=self.config["db_path"])

    def get_inventory_config(self) -> InventoryConfig:
        return InventoryConfig(cache_root=Path(self.config["cache_root"]))

    def get_extraction_config(self) -> ExtractionConfig:
        return ExtractionConfig(
            ocr_mode=OcrMode(self.config["ocr_mode"]),
            ocr_lang=self.config["ocr_lang"],
            ocr_min_text_chars=self.config["ocr_min_text_chars"],
            max_pages_per_doc=self.config["max_pages"],
        )

    def get_pipeline_config(self, command: str = "") -> PipelineConfig:
        """Get configuration for the ingest pipeline."""
        return PipelineConfig(
            db_config=self.get_db_config(),
            inventory_config=self.get_inventory_config(),
            extraction_config=self.get_extraction_config(),
            structure_config=StructureConfig(**self.config["structure"]),
            pattern_config=PatternConfig(**self.config["patterns"]),
            manifest_dir=Path(self.config["manifest_dir"]),
            target_parts=list(self.config["part"]),
            seed_page_chunks=self.config["seed_page_chunks"],
            rebuild_fts=not self.config["no_fts"],
            command=command,
        )


def run_inventory(config: Config) -> None:
    """Discover the source PDFs and write the inventory manifest."""
    pdfs = discover_source_pdfs(config.get_inventory_config())
    manifest_path = Path(config["manifest_dir"]) / "pdf_inventory.json"
    write_inventory_manifest(pdfs, manifest_path, Path(config["cache_root"]))

    for pdf in pdfs:
        logger.info(f"{pdf.doc_id}: {pdf.filename} ({pdf.sha256[:12]})")
    logger.info(f"Inventory completed: {len(pdfs)} PDFs, manifest at {manifest_path}")


def run_ingest_command(config: Config, command: str) -> None:
    """Run the ingest pipeline."""
    result = run_ingest(config.get_pipeline_config(command))

    counts = result.counts
    logger.info(
        f"Ingest {result.run_id} {result.status}: {counts.processed_pdf_count} PDFs, "
        f"{counts.nodes_total} nodes, {counts.structured_chunks_inserted} structured chunks, "
        f"{counts.page_chunks_inserted} page chunks"
    )
    for warning in result.warnings:
        logger.warning(warning)


def run_check(config: Config) -> int:
    """Report structural violations; return the process exit code."""
    get_connection(config.get_db_config())
    ensure_schema_current()

    for node_type, count in sorted(count_nodes_by_type().items()):
        logger.info(f"{node_type}: {count}")

    violations = find_structural_violations()
    for violation in violations:
        logger.error(
            f"{violation['kind']} in {violation['doc_id']} at {violation['node_id']}: {violation['detail']}"
        )

    if violations:
        logger.error(f"Found {len(violations)} structural violations")
        return 1

    logger.info("No structural violations found")
    return 0


def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="clausemap document structuring pipeline")

    parser.add_argument("command", choices=["inventory", "ingest", "check"],
                        help="Command to execute")

    parser.add_argument("--config", "-c", type=str,
                        help="Path to configuration file (JSON)")

    parser.add_argument("--cache-root", type=str,
                        help="Directory holding the source PDFs")
    parser.add_argument("--db-path", type=str,
                        help="Path to DuckDB database file")
    parser.add_argument("--manifest-dir", type=str,
                        help="Directory for manifests")
    parser.add_argument("--ocr-mode", type=str, choices=[mode.value for mode in OcrMode],
                        help="OCR policy for low-text pages")
    parser.add_argument("--ocr-lang", type=str,
                        help="Tesseract language code")
    parser.add_argument("--ocr-min-text-chars", type=int,
                        help="Pages below this many characters are OCR candidates")
    parser.add_argument("--max-pages", type=int,
                        help="Only extract the first N pages of each PDF")
    parser.add_argument("--part", type=int, action="append",
                        help="Only ingest this part (repeatable)")
    parser.add_argument("--seed-page-chunks", action="store_true", default=None,
                        help="Also store one chunk per PDF page")
    parser.add_argument("--no-fts", action="store_true", default=None,
                        help="Skip the full-text index rebuild")
    parser.add_argument("--log-level", type=str,
                        choices=["debug", "info", "warning", "error"],
                        help="Logging level")

    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_arguments(argv)

    config = Config(args.config)

    for arg_name, arg_value in vars(args).items():
        if arg_name not in ("command", "config") and arg_value is not None:
            config.config[arg_name] = arg_value

    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level.upper()))

    command_line = shlex.join(["main.py", *(argv if argv is not None else sys.argv[1:])])

    try:
        if args.command == "inventory":
            run_inventory(config)
        elif args.command == "ingest":
            run_ingest_command(config, command_line)
        elif args.command == "check":
            return run_check(config)
    except KeyboardInterrupt:
        logger.info("Operation interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Error executing {args.command}: {e}", exc_info=True)
        return 1
    finally:
        close_connection()

    return 0


if __name__ == "__main__":
    sys.exit(main())
