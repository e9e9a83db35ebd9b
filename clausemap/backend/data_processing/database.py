"""
Database module for clausemap.

This module provides the DuckDB connection, schema management and the
row-level operations of the document store: source documents, the
hierarchical node tree, retrieval chunks and the full-text index over chunks.
"""

import os
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TypedDict, NotRequired, Any, Optional
from pydantic import BaseModel, Field
import duckdb


logger = logging.getLogger("clausemap.database")


DB_SCHEMA_VERSION = "0.4.0"
TARGET_MIGRATION_VERSION = 1


class DocRecord(TypedDict):
    """Type representing a source document record."""
    doc_id: str
    filename: str
    sha256: str
    part: int | None
    year: int | None
    title: str | None


class NodeRecord(TypedDict):
    """Type representing one node of the document tree."""
    node_id: str
    parent_node_id: str | None
    doc_id: str
    node_type: str
    order_index: int
    ancestor_path: str
    source_hash: str
    ref: NotRequired[str | None]
    ref_path: NotRequired[str | None]
    heading: NotRequired[str | None]
    page_pdf_start: NotRequired[int | None]
    page_pdf_end: NotRequired[int | None]
    text: NotRequired[str | None]
    anchor_type: NotRequired[str | None]
    anchor_label_raw: NotRequired[str | None]
    anchor_label_norm: NotRequired[str | None]
    anchor_order: NotRequired[int | None]
    citation_anchor_id: NotRequired[str | None]
    list_depth: NotRequired[int | None]
    list_marker_style: NotRequired[str | None]
    item_index: NotRequired[int | None]
    table_node_id: NotRequired[str | None]
    row_idx: NotRequired[int | None]
    col_idx: NotRequired[int | None]
    is_header: NotRequired[int | None]
    row_span: NotRequired[int | None]
    col_span: NotRequired[int | None]


class ChunkRecord(TypedDict):
    """Type representing a retrieval chunk record."""
    chunk_id: str
    doc_id: str
    type: str
    chunk_seq: int
    text: str
    source_hash: str
    origin_node_id: str
    leaf_node_type: str
    ancestor_path: str
    ref: NotRequired[str | None]
    ref_path: NotRequired[str | None]
    heading: NotRequired[str | None]
    page_pdf_start: NotRequired[int | None]
    page_pdf_end: NotRequired[int | None]
    page_printed_start: NotRequired[str | None]
    page_printed_end: NotRequired[str | None]
    table_md: NotRequired[str | None]
    table_csv: NotRequired[str | None]
    anchor_type: NotRequired[str | None]
    anchor_label_raw: NotRequired[str | None]
    anchor_label_norm: NotRequired[str | None]
    anchor_order: NotRequired[int | None]
    citation_anchor_id: NotRequired[str | None]


class StructuralViolation(TypedDict):
    """A broken parent/child contract found in the store."""
    kind: str
    doc_id: str
    node_id: str
    detail: str


DOC_COLUMNS = ("doc_id", "filename", "sha256", "part", "year", "title")

NODE_COLUMNS = (
    "node_id", "parent_node_id", "doc_id", "node_type", "ref", "ref_path", "heading",
    "order_index", "page_pdf_start", "page_pdf_end", "text", "source_hash",
    "ancestor_path", "anchor_type", "anchor_label_raw", "anchor_label_norm",
    "anchor_order", "citation_anchor_id", "list_depth", "list_marker_style",
    "item_index", "table_node_id", "row_idx", "col_idx", "is_header", "row_span",
    "col_span",
)

CHUNK_COLUMNS = (
    "chunk_id", "doc_id", "type", "ref", "ref_path", "heading", "chunk_seq",
    "page_pdf_start", "page_pdf_end", "page_printed_start", "page_printed_end",
    "text", "table_md", "table_csv", "source_hash", "origin_node_id",
    "leaf_node_type", "ancestor_path", "anchor_type", "anchor_label_raw",
    "anchor_label_norm", "anchor_order", "citation_anchor_id",
)

# Allowed parent node types per child node type.
PARENT_TYPE_CONTRACT: dict[str, set[str]] = {
    "table_row": {"table"},
    "table_cell": {"table_row"},
    "list_item": {"list", "list_item"},
    "note": {"clause", "subclause", "annex"},
    "paragraph": {"clause", "subclause", "annex"},
    "note_item": {"note"},
    "list": {"clause", "subclause", "annex"},
    "requirement_atom": {"clause", "subclause", "annex"},
}


class DbConfig(BaseModel):
    """Database configuration."""
    db_path: str = Field(
        default="data/processed/clausemap.duckdb",
        description="Path to the DuckDB database file"
    )
    read_only: bool = Field(
        default=False,
        description="Whether to open the database in read-only mode"
    )
    memory_limit: Optional[str] = Field(
        default=None,
        description="Memory limit for DuckDB"
    )

    @classmethod
    def from_environment(cls) -> "DbConfig":
        """
        Create a configuration from environment variables.

        Returns:
            A DbConfig instance honouring CLAUSEMAP_DB_PATH or TEST_DB_PATH.
        """
        db_path = os.getenv("TEST_DB_PATH") or os.getenv("CLAUSEMAP_DB_PATH")
        if db_path:
            return cls(db_path=db_path)
        return cls()


# Database singleton connection
_connection: Optional[duckdb.DuckDBPyConnection] = None
_config: Optional[DbConfig] = None


def get_connection(config: Optional[DbConfig] = None) -> duckdb.DuckDBPyConnection:
    """
    Get a connection to the DuckDB database.

    The connection is opened once and reused; passing a different config
    reopens it against the new database.

    Args:
        config: Optional configuration for the database connection.

    Returns:
        An open DuckDB connection.
    """
    global _connection, _config

    if _connection is not None and config is not None and config != _config:
        close_connection()

    if _connection is not None:
        try:
            _connection.execute("SELECT 1")
            return _connection
        except (duckdb.ConnectionException, duckdb.InvalidInputException) as e:
            logger.warning(f"Existing DB connection is invalid ({type(e).__name__}). Will reconnect.")
            _connection = None

    if config is None:
        config = _config or DbConfig()
    _config = config

    connect_params: dict[str, Any] = {}
    if config.read_only:
        connect_params["read_only"] = True
    if config.memory_limit:
        connect_params["config"] = {"memory_limit": config.memory_limit}

    if config.db_path != ":memory:":
        Path(config.db_path).parent.mkdir(parents=True, exist_ok=True)

    try:
        _connection = duckdb.connect(config.db_path, **connect_params)
    except duckdb.Error as e:
        logger.error(f"Fatal error connecting to database at {config.db_path}: {e}")
        _connection = None
        raise

    logger.info(f"Connected to database at {config.db_path}")
    return _connection


def close_connection() -> None:
    """Close the database connection if it exists."""
    global _connection

    if _connection is not None:
        try:
            _connection.close()
        finally:
            _connection = None
            logger.debug("Database connection closed")


def initialize_database() -> None:
    """
    Initialize the database schema.

    Parent pointers are not declared as foreign keys; they are checked after
    a run by find_structural_violations.
    """
    conn = get_connection()

    conn.execute("""
    CREATE TABLE IF NOT EXISTS metadata (
        key VARCHAR PRIMARY KEY,
        value VARCHAR NOT NULL
    )
    """)

    conn.execute("""
    CREATE TABLE IF NOT EXISTS docs (
        doc_id VARCHAR PRIMARY KEY,           -- e.g., "ISO26262-6-2018"
        filename VARCHAR NOT NULL,
        sha256 VARCHAR NOT NULL,
        part INTEGER,
        year INTEGER,
        title VARCHAR
    )
    """)

    conn.execute("""
    CREATE TABLE IF NOT EXISTS nodes (
        node_id VARCHAR PRIMARY KEY,
        parent_node_id VARCHAR,               -- NULL only for the document root
        doc_id VARCHAR NOT NULL,
        node_type VARCHAR NOT NULL,
        ref VARCHAR,
        ref_path VARCHAR,
        heading VARCHAR,
        order_index INTEGER DEFAULT 0,        -- Reading order within the document
        page_pdf_start INTEGER,
        page_pdf_end INTEGER,
        text VARCHAR,
        source_hash VARCHAR,
        ancestor_path VARCHAR,
        anchor_type VARCHAR,
        anchor_label_raw VARCHAR,
        anchor_label_norm VARCHAR,
        anchor_order INTEGER,
        citation_anchor_id VARCHAR,
        list_depth INTEGER,
        list_marker_style VARCHAR,
        item_index INTEGER,
        table_node_id VARCHAR,
        row_idx INTEGER,
        col_idx INTEGER,
        is_header INTEGER,
        row_span INTEGER,
        col_span INTEGER
    )
    """)

    conn.execute("""
    CREATE TABLE IF NOT EXISTS chunks (
        chunk_id VARCHAR PRIMARY KEY,
        doc_id VARCHAR NOT NULL,
        type VARCHAR NOT NULL,                -- clause, table, annex or page
        ref VARCHAR,
        ref_path VARCHAR,
        heading VARCHAR,
        chunk_seq INTEGER DEFAULT 0,
        page_pdf_start INTEGER,
        page_pdf_end INTEGER,
        page_printed_start VARCHAR,
        page_printed_end VARCHAR,
        text VARCHAR,
        table_md VARCHAR,
        table_csv VARCHAR,
        source_hash VARCHAR,
        origin_node_id VARCHAR,
        leaf_node_type VARCHAR,
        ancestor_path VARCHAR,
        anchor_type VARCHAR,
        anchor_label_raw VARCHAR,
        anchor_label_norm VARCHAR,
        anchor_order INTEGER,
        citation_anchor_id VARCHAR
    )
    """)


def run_migration(version: int) -> None:
    """
    Run a database migration to update the schema.

    Args:
        version: The migration version to run.
    """
    conn = get_connection()

    conn.execute("""
    CREATE TABLE IF NOT EXISTS migrations (
        version INTEGER PRIMARY KEY,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    result = conn.execute("SELECT version FROM migrations WHERE version = ?", (version,)).fetchone()
    if result is not None:
        return

    if version == 1:
        initialize_database()
    else:
        raise ValueError(f"Unknown migration version: {version}")

    conn.execute("INSERT INTO migrations (version) VALUES (?)", (version,))


def get_db_version() -> int:
    """
    Get the current database schema version.

    Returns:
        The highest migration version that has been applied.
    """
    conn = get_connection()

    conn.execute("""
    CREATE TABLE IF NOT EXISTS migrations (
        version INTEGER PRIMARY KEY,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    result = conn.execute("SELECT MAX(version) FROM migrations").fetchone()
    return result[0] if result[0] is not None else 0


def ensure_schema_current() -> None:
    """
    Apply every pending migration and stamp the schema metadata.

    Raises:
        duckdb.Error: If a migration fails.
    """
    current_version = get_db_version()

    if current_version < TARGET_MIGRATION_VERSION:
        logger.info(f"Updating database schema from version {current_version} to {TARGET_MIGRATION_VERSION}")
        for version in range(current_version + 1, TARGET_MIGRATION_VERSION + 1):
            run_migration(version)

    set_metadata("db_schema_version", DB_SCHEMA_VERSION)
    set_metadata("db_updated_at", datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"))


def set_metadata(key: str, value: str) -> None:
    conn = get_connection()
    conn.execute("""
    INSERT INTO metadata (key, value) VALUES (?, ?)
    ON CONFLICT (key) DO UPDATE SET value = excluded.value
    """, (key, value))


def get_metadata(key: str) -> str | None:
    conn = get_connection()
    result = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return result[0] if result is not None else None


def _upsert_sql(table: str, key: str, columns: tuple[str, ...]) -> str:
    placeholders = ", ".join("?" for _ in columns)
    updates = ", ".join(f"{column} = excluded.{column}" for column in columns if column != key)
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
        f"ON CONFLICT ({key}) DO UPDATE SET {updates}"
    )


UPSERT_DOC_SQL = _upsert_sql("docs", "doc_id", DOC_COLUMNS)
UPSERT_NODE_SQL = _upsert_sql("nodes", "node_id", NODE_COLUMNS)
UPSERT_CHUNK_SQL = _upsert_sql("chunks", "chunk_id", CHUNK_COLUMNS)


def upsert_doc(doc: DocRecord) -> None:
    """
    Insert or update a source document.

    Args:
        doc: The document data.
    """
    conn = get_connection()
    conn.execute(UPSERT_DOC_SQL, tuple(doc.get(column) for column in DOC_COLUMNS))


def upsert_node(node: NodeRecord) -> None:
    """
    Insert a node, replacing any row with the same node_id.

    Args:
        node: The node data; missing optional fields are stored as NULL.
    """
    conn = get_connection()
    conn.execute(UPSERT_NODE_SQL, tuple(node.get(column) for column in NODE_COLUMNS))


def upsert_chunk(chunk: ChunkRecord) -> None:
    """
    Insert a chunk, replacing any row with the same chunk_id.

    Args:
        chunk: The chunk data; missing optional fields are stored as NULL.
    """
    conn = get_connection()
    conn.execute(UPSERT_CHUNK_SQL, tuple(chunk.get(column) for column in CHUNK_COLUMNS))


def delete_document_rows(doc_id: str) -> None:
    """Delete every chunk and node of a document."""
    conn = get_connection()
    conn.execute("DELETE FROM chunks WHERE doc_id = ?", (doc_id,))
    conn.execute("DELETE FROM nodes WHERE doc_id = ?", (doc_id,))


def get_doc(doc_id: str) -> DocRecord | None:
    conn = get_connection()
    result = conn.execute(
        f"SELECT {', '.join(DOC_COLUMNS)} FROM docs WHERE doc_id = ?", (doc_id,)
    ).fetchone()
    if result is None:
        return None
    return DocRecord(**dict(zip(DOC_COLUMNS, result)))


def get_node(node_id: str) -> NodeRecord | None:
    """
    Get a node by ID.

    Args:
        node_id: The ID of the node to retrieve.

    Returns:
        The node data or None if not found.
    """
    conn = get_connection()
    result = conn.execute(
        f"SELECT {', '.join(NODE_COLUMNS)} FROM nodes WHERE node_id = ?", (node_id,)
    ).fetchone()
    if result is None:
        return None
    return NodeRecord(**dict(zip(NODE_COLUMNS, result)))


def get_nodes_by_doc(doc_id: str, node_type: str | None = None) -> list[NodeRecord]:
    """
    Get the nodes of a document in reading order.

    Args:
        doc_id: The document ID.
        node_type: Restrict to one node type when given.

    Returns:
        Nodes ordered by order_index.
    """
    conn = get_connection()
    query = f"SELECT {', '.join(NODE_COLUMNS)} FROM nodes WHERE doc_id = ?"
    params: list[Any] = [doc_id]
    if node_type is not None:
        query += " AND node_type = ?"
        params.append(node_type)
    query += " ORDER BY order_index, node_id"

    return [NodeRecord(**dict(zip(NODE_COLUMNS, row))) for row in conn.execute(query, params).fetchall()]


def get_chunks_by_doc(doc_id: str) -> list[ChunkRecord]:
    """Get the chunks of a document ordered by chunk_id."""
    conn = get_connection()
    rows = conn.execute(
        f"SELECT {', '.join(CHUNK_COLUMNS)} FROM chunks WHERE doc_id = ? ORDER BY chunk_id",
        (doc_id,),
    ).fetchall()
    return [ChunkRecord(**dict(zip(CHUNK_COLUMNS, row))) for row in rows]


def count_nodes_by_type(doc_id: str | None = None) -> dict[str, int]:
    conn = get_connection()
    if doc_id is None:
        rows = conn.execute("SELECT node_type, COUNT(*) FROM nodes GROUP BY node_type").fetchall()
    else:
        rows = conn.execute(
            "SELECT node_type, COUNT(*) FROM nodes WHERE doc_id = ? GROUP BY node_type", (doc_id,)
        ).fetchall()
    return {node_type: count for node_type, count in rows}


def count_rows(table: str) -> int:
    if table not in {"docs", "nodes", "chunks", "metadata"}:
        raise ValueError(f"Unknown table: {table}")
    conn = get_connection()
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def rebuild_fts_index() -> None:
    """
    Rebuild the full-text index over chunk ref, heading and text.

    Uses the DuckDB ``fts`` extension; the index is recreated from scratch.

    Raises:
        duckdb.Error: If the extension cannot be installed or loaded.
    """
    conn = get_connection()
    conn.execute("INSTALL fts")
    conn.execute("LOAD fts")
    conn.execute(
        "PRAGMA create_fts_index('chunks', 'chunk_id', 'ref', 'heading', 'text', overwrite = 1)"
    )
    logger.info("Rebuilt full-text index over chunks")


def find_structural_violations(doc_id: str | None = None) -> list[StructuralViolation]:
    """
    Check the parent/child contracts of the node tree.

    Reports nodes whose parent is missing, non-root nodes without a parent,
    documents with more than one root, nodes attached to a parent of the wrong
    type and chunks whose origin node does not exist.

    Args:
        doc_id: Restrict the check to one document when given.

    Returns:
        The violations found, empty when the store is consistent.
    """
    conn = get_connection()
    doc_filter = " AND n.doc_id = ?" if doc_id is not None else ""
    params: tuple[Any, ...] = (doc_id,) if doc_id is not None else ()
    violations: list[StructuralViolation] = []

    rows = conn.execute(f"""
    SELECT n.doc_id, n.node_id, n.node_type, n.parent_node_id, p.node_id, p.node_type
    FROM nodes n
    LEFT JOIN nodes p ON n.parent_node_id = p.node_id
    WHERE 1 = 1{doc_filter}
    ORDER BY n.doc_id, n.order_index
    """, params).fetchall()

    roots_by_doc: dict[str, int] = {}
    for node_doc, node_id, node_type, parent_id, found_parent, parent_type in rows:
        if parent_id is None:
            if node_type != "document":
                violations.append(StructuralViolation(
                    kind="missing_parent", doc_id=node_doc, node_id=node_id,
                    detail=f"{node_type} node has no parent"))
            else:
                roots_by_doc[node_doc] = roots_by_doc.get(node_doc, 0) + 1
            continue

        if found_parent is None:
            violations.append(StructuralViolation(
                kind="dangling_parent", doc_id=node_doc, node_id=node_id,
                detail=f"parent {parent_id} does not exist"))
            continue

        allowed = PARENT_TYPE_CONTRACT.get(node_type)
        if allowed is not None and parent_type not in allowed:
            violations.append(StructuralViolation(
                kind="parent_type", doc_id=node_doc, node_id=node_id,
                detail=f"{node_type} under {parent_type}"))

    for root_doc, count in roots_by_doc.items():
        if count > 1:
            violations.append(StructuralViolation(
                kind="multiple_roots", doc_id=root_doc, node_id=f"{root_doc}:node:document",
                detail=f"{count} document roots"))

    chunk_filter = " AND c.doc_id = ?" if doc_id is not None else ""
    orphan_chunks = conn.execute(f"""
    SELECT c.doc_id, c.chunk_id, c.origin_node_id
    FROM chunks c
    LEFT JOIN nodes n ON c.origin_node_id = n.node_id
    WHERE n.node_id IS NULL{chunk_filter}
    """, params).fetchall()

    for chunk_doc, chunk_id, origin_node_id in orphan_chunks:
        violations.append(StructuralViolation(
            kind="dangling_origin", doc_id=chunk_doc, node_id=chunk_id,
            detail=f"origin node {origin_node_id} does not exist"))

    return violations
