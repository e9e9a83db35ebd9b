"""
Tests for the clausemap database module.

This module tests the database connection, schema, upserts and the
structural checks of the node tree.
"""

import os
import tempfile
import pytest
import duckdb

from clausemap.backend.data_processing.database import (
    get_connection, close_connection, initialize_database, ensure_schema_current,
    get_db_version, set_metadata, get_metadata, DbConfig, DocRecord, NodeRecord, ChunkRecord,
    upsert_doc, get_doc, upsert_node, get_node, get_nodes_by_doc, upsert_chunk,
    get_chunks_by_doc, delete_document_rows, count_nodes_by_type, count_rows,
    rebuild_fts_index, find_structural_violations, DB_SCHEMA_VERSION, TARGET_MIGRATION_VERSION
)


DOC_ID = "ISO26262-6-2018"


@pytest.fixture
def temp_db_path():
    """Create a temporary database file for testing."""
    # Create a temporary directory
    with tempfile.TemporaryDirectory() as tmpdirname:
        # Set the database path
        db_path = os.path.join(tmpdirname, "test.duckdb")

        # Store the original connection
        global_connection = get_connection.__globals__["_connection"]
        global_config = get_connection.__globals__["_config"]

        # Reset the connection and config
        get_connection.__globals__["_connection"] = None
        get_connection.__globals__["_config"] = None

        # Create a test config
        test_config = DbConfig(db_path=db_path)

        try:
            yield test_config
        finally:
            # Close the test connection
            close_connection()

            # Restore the original connection and config
            get_connection.__globals__["_connection"] = global_connection
            get_connection.__globals__["_config"] = global_config


@pytest.fixture
def db_setup(temp_db_path):
    """Initialize the database schema for testing."""
    conn = get_connection(temp_db_path)

    initialize_database()

    try:
        yield conn
    finally:
        close_connection()


def make_node(node_id: str, parent_node_id: str | None, node_type: str, order_index: int,
              doc_id: str = DOC_ID, **extra) -> NodeRecord:
    node = NodeRecord(
        node_id=node_id,
        parent_node_id=parent_node_id,
        doc_id=doc_id,
        node_type=node_type,
        order_index=order_index,
        ancestor_path=f"{node_type}:{order_index}",
        source_hash="abc123",
    )
    node.update(extra)
    return node


def make_chunk(chunk_id: str, origin_node_id: str, doc_id: str = DOC_ID, **extra) -> ChunkRecord:
    chunk = ChunkRecord(
        chunk_id=chunk_id,
        doc_id=doc_id,
        type="clause",
        chunk_seq=1,
        text="8.4.5 Design principles\n\nThe unit shall be small.",
        source_hash="abc123",
        origin_node_id=origin_node_id,
        leaf_node_type="subclause",
        ancestor_path="document:doc > subclause:8.4.5",
    )
    chunk.update(extra)
    return chunk


@pytest.fixture
def sample_tree(db_setup):
    """Insert a small consistent tree."""
    root = f"{DOC_ID}:node:document"
    clause = f"{DOC_ID}:node:subclause:8_4_5:001"
    nodes = [
        make_node(root, None, "document", 0),
        make_node(clause, root, "subclause", 1, ref="8.4.5", heading="8.4.5 Design principles"),
        make_node(f"{clause}:list:001", clause, "list", 2),
        make_node(f"{clause}:list:001:item:001", f"{clause}:list:001", "list_item", 3,
                  anchor_type="marker", anchor_label_norm="a", list_depth=1),
        make_node(f"{clause}:list:001:item:002", f"{clause}:list:001:item:001", "list_item", 4,
                  anchor_type="marker", anchor_label_norm="-", list_depth=2),
    ]
    for node in nodes:
        upsert_node(node)
    upsert_chunk(make_chunk(f"{DOC_ID}:clause:8_4_5:001", clause, ref="8.4.5", heading="8.4.5 Design principles"))
    return nodes


def test_initialize_database(db_setup):
    """Test that the database initializes with the correct schema."""
    conn = db_setup

    for table in ["metadata", "docs", "nodes", "chunks"]:
        result = conn.execute(
            "SELECT table_name FROM information_schema.tables WHERE table_name = ?", (table,)
        ).fetchone()
        assert result is not None


def test_ensure_schema_current(temp_db_path):
    """Test migrations and schema metadata on a fresh database."""
    get_connection(temp_db_path)
    assert get_db_version() == 0

    ensure_schema_current()

    assert get_db_version() == TARGET_MIGRATION_VERSION
    assert get_metadata("db_schema_version") == DB_SCHEMA_VERSION
    assert get_metadata("db_updated_at") is not None

    # Running it again is a no-op for the migrations
    ensure_schema_current()
    assert get_db_version() == TARGET_MIGRATION_VERSION


def test_get_connection_reuses_and_reopens(temp_db_path, tmp_path):
    """Test the connection singleton."""
    first = get_connection(temp_db_path)
    assert get_connection() is first
    assert get_connection(temp_db_path) is first

    other = get_connection(DbConfig(db_path=str(tmp_path / "nested" / "other.duckdb")))
    assert other is not first
    assert (tmp_path / "nested" / "other.duckdb").exists()


def test_db_config_from_environment(monkeypatch):
    """Test environment overrides of the database path."""
    monkeypatch.delenv("TEST_DB_PATH", raising=False)
    monkeypatch.delenv("CLAUSEMAP_DB_PATH", raising=False)
    assert DbConfig.from_environment().db_path == "data/processed/clausemap.duckdb"

    monkeypatch.setenv("CLAUSEMAP_DB_PATH", "/tmp/clausemap.duckdb")
    assert DbConfig.from_environment().db_path == "/tmp/clausemap.duckdb"

    monkeypatch.setenv("TEST_DB_PATH", ":memory:")
    assert DbConfig.from_environment().db_path == ":memory:"


def test_metadata(db_setup):
    """Test metadata upserts."""
    assert get_metadata("last_ingest_run_id") is None

    set_metadata("last_ingest_run_id", "run-1")
    set_metadata("last_ingest_run_id", "run-2")

    assert get_metadata("last_ingest_run_id") == "run-2"


def test_upsert_and_get_doc(db_setup):
    """Test inserting and updating a source document."""
    doc = DocRecord(doc_id=DOC_ID, filename="ISO 26262-6;2018.pdf", sha256="abc",
                    part=6, year=2018, title="ISO 26262-6:2018")
    upsert_doc(doc)
    upsert_doc({**doc, "sha256": "def"})

    retrieved = get_doc(DOC_ID)

    assert retrieved is not None
    assert retrieved["sha256"] == "def"
    assert retrieved["part"] == 6
    assert count_rows("docs") == 1
    assert get_doc("unknown") is None


def test_upsert_node_replaces_by_id(sample_tree):
    """Test that a node inserted twice is stored once."""
    clause = sample_tree[1]
    upsert_node({**clause, "heading": "8.4.5 Updated heading"})

    retrieved = get_node(clause["node_id"])

    assert retrieved["heading"] == "8.4.5 Updated heading"
    assert retrieved["ref"] == "8.4.5"
    assert retrieved["citation_anchor_id"] is None
    assert count_rows("nodes") == len(sample_tree)


def test_get_nodes_by_doc_in_reading_order(sample_tree):
    """Test retrieval of nodes ordered by order_index."""
    nodes = get_nodes_by_doc(DOC_ID)

    assert [node["order_index"] for node in nodes] == [0, 1, 2, 3, 4]
    assert [node["node_type"] for node in get_nodes_by_doc(DOC_ID, "list_item")] == ["list_item"] * 2
    assert get_nodes_by_doc("other-doc") == []


def test_count_nodes_by_type(sample_tree):
    """Test the node type histogram."""
    upsert_node(make_node("other:node:document", None, "document", 0, doc_id="other"))

    assert count_nodes_by_type(DOC_ID) == {"document": 1, "subclause": 1, "list": 1, "list_item": 2}
    assert count_nodes_by_type()["document"] == 2


def test_chunks_and_delete_document_rows(sample_tree):
    """Test chunk retrieval and per-document deletion."""
    upsert_node(make_node("other:node:document", None, "document", 0, doc_id="other"))

    chunks = get_chunks_by_doc(DOC_ID)
    assert len(chunks) == 1
    assert chunks[0]["origin_node_id"] == sample_tree[1]["node_id"]
    assert chunks[0]["table_md"] is None

    delete_document_rows(DOC_ID)

    assert get_nodes_by_doc(DOC_ID) == []
    assert get_chunks_by_doc(DOC_ID) == []
    assert count_rows("nodes") == 1


def test_count_rows_rejects_unknown_tables(db_setup):
    """Test that only known tables can be counted."""
    with pytest.raises(ValueError):
        count_rows("migrations; DROP TABLE nodes")


def test_transaction_rollback_discards_rows(db_setup):
    """Test that rolled back upserts leave no rows."""
    conn = db_setup
    conn.execute("BEGIN TRANSACTION")
    upsert_node(make_node(f"{DOC_ID}:node:document", None, "document", 0))
    conn.execute("ROLLBACK")

    assert count_rows("nodes") == 0


def test_find_structural_violations_clean_tree(sample_tree):
    """Test that a consistent tree has no violations."""
    assert find_structural_violations() == []
    assert find_structural_violations(DOC_ID) == []


def test_find_structural_violations_reports_broken_contracts(sample_tree):
    """Test detection of every violation kind."""
    root = sample_tree[0]["node_id"]
    clause = sample_tree[1]["node_id"]
    upsert_node(make_node(f"{clause}:paragraph:001", None, "paragraph", 5))
    upsert_node(make_node(f"{clause}:note:001", f"{clause}:gone", "note", 6))
    upsert_node(make_node(f"{clause}:table:row:001", clause, "table_row", 7))
    upsert_node(make_node(f"{DOC_ID}:node:document:2", None, "document", 8))
    upsert_chunk(make_chunk(f"{DOC_ID}:clause:9_1:001", f"{DOC_ID}:node:clause:9_1:001"))

    violations = find_structural_violations(DOC_ID)

    kinds = sorted(violation["kind"] for violation in violations)
    assert kinds == ["dangling_origin", "dangling_parent", "missing_parent", "multiple_roots", "parent_type"]

    parent_type = next(v for v in violations if v["kind"] == "parent_type")
    assert parent_type["node_id"] == f"{clause}:table:row:001"
    assert parent_type["detail"] == "table_row under subclause"

    multiple_roots = next(v for v in violations if v["kind"] == "multiple_roots")
    assert multiple_roots["node_id"] == root


def test_find_structural_violations_scoped_to_document(sample_tree):
    """Test that the document filter excludes other documents."""
    upsert_node(make_node("other:node:paragraph:001", None, "paragraph", 0, doc_id="other"))

    assert find_structural_violations(DOC_ID) == []
    assert [v["doc_id"] for v in find_structural_violations()] == ["other"]


def test_rebuild_fts_index(sample_tree):
    """Test full-text search over chunks after an index rebuild."""
    try:
        rebuild_fts_index()
    except duckdb.Error as e:
        pytest.skip(f"DuckDB fts extension unavailable: {e}")

    conn = get_connection()
    result = conn.execute("""
    SELECT chunk_id FROM (
        SELECT chunk_id, fts_main_chunks.match_bm25(chunk_id, 'principles') AS score FROM chunks
    ) WHERE score IS NOT NULL
    """).fetchall()

    assert [row[0] for row in result] == [f"{DOC_ID}:clause:8_4_5:001"]
