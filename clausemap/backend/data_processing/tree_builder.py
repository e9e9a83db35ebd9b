"""
Node tree builder for one document.

This module turns the segmented drafts of a document into the persisted node
tree and its retrieval chunks. All running state of one document (order
counter, reference lookups, per-key counters, issued citation anchors and the
insert tally) lives in a BuilderState that is threaded through every insert,
and every node goes through the single BuilderState.insert_node routine as a
NodeDraft value object.
"""

import logging
from enum import Enum
from collections import Counter
from dataclasses import dataclass, field
from typing import Protocol

from clausemap.backend.data_processing.anchors import build_citation_anchor_id, sanitize_ref
from clausemap.backend.data_processing.body_segmenter import (
    ListItemDraft, NoteItemDraft, parse_paragraphs, parse_requirement_atoms, scan_markers
)
from clausemap.backend.data_processing.chunk_splitter import split_long_chunks
from clausemap.backend.data_processing.database import (
    ChunkRecord, NodeRecord, upsert_chunk, upsert_node
)
from clausemap.backend.data_processing.extraction import SectionHeadingDraft
from clausemap.backend.data_processing.heading_segmenter import (
    ChunkType, StructuredChunkDraft, segment_pages
)
from clausemap.backend.data_processing.page_normalizer import (
    printed_page_label_for, printed_page_labels_for_range
)
from clausemap.backend.data_processing.patterns import (
    IngestPatterns, StructureConfig, default_patterns
)
from clausemap.backend.data_processing.table_parser import (
    ParsedTable, infer_table_header_rows, parse_table
)
from clausemap.backend.data_processing.tracking import IngestCounts


logger = logging.getLogger("clausemap.tree_builder")


class NodeType(str, Enum):
    """Types of nodes in the document tree."""
    DOCUMENT = "document"
    SECTION_HEADING = "section_heading"
    CLAUSE = "clause"
    SUBCLAUSE = "subclause"
    ANNEX = "annex"
    PARAGRAPH = "paragraph"
    TABLE = "table"
    TABLE_ROW = "table_row"
    TABLE_CELL = "table_cell"
    LIST = "list"
    LIST_ITEM = "list_item"
    NOTE = "note"
    NOTE_ITEM = "note_item"
    REQUIREMENT_ATOM = "requirement_atom"
    PAGE = "page"


# Node types whose bodies are decomposed into paragraphs, notes, lists and requirement atoms.
BODY_NODE_TYPES = {NodeType.CLAUSE, NodeType.SUBCLAUSE, NodeType.ANNEX}

# Sub-unit anchor types that must stay unique within a document.
SUFFIXED_ANCHOR_TYPES = {"paragraph", "marker", "requirement_atom", "table_row", "table_cell"}


class NodeSink(Protocol):
    """Destination of the rows produced by the builder."""

    def write_node(self, node: NodeRecord) -> None: ...

    def write_chunk(self, chunk: ChunkRecord) -> None: ...


class DatabaseSink:
    """Sink writing straight into the DuckDB store."""

    def write_node(self, node: NodeRecord) -> None:
        upsert_node(node)

    def write_chunk(self, chunk: ChunkRecord) -> None:
        upsert_chunk(chunk)


class MemorySink:
    """Sink keeping rows in memory, keyed by id like the store's upsert."""

    def __init__(self):
        self.nodes: dict[str, NodeRecord] = {}
        self.chunks: dict[str, ChunkRecord] = {}

    def write_node(self, node: NodeRecord) -> None:
        self.nodes[node["node_id"]] = node

    def write_chunk(self, chunk: ChunkRecord) -> None:
        self.chunks[chunk["chunk_id"]] = chunk

    def nodes_of_type(self, node_type: NodeType | str) -> list[NodeRecord]:
        value = node_type.value if isinstance(node_type, NodeType) else node_type
        return sorted(
            (node for node in self.nodes.values() if node["node_type"] == value),
            key=lambda node: node["order_index"],
        )

    def children_of(self, node_id: str) -> list[NodeRecord]:
        return sorted(
            (node for node in self.nodes.values() if node["parent_node_id"] == node_id),
            key=lambda node: node["order_index"],
        )


@dataclass
class NodeDraft:
    """Everything needed to insert one node, built by the insert routines."""
    node_id: str
    parent_node_id: str | None
    node_type: NodeType
    path_label: str
    ref: str | None = None
    ref_path: str | None = None
    heading: str | None = None
    page_pdf_start: int | None = None
    page_pdf_end: int | None = None
    text: str | None = None
    anchor_type: str | None = None
    anchor_parent_ref: str | None = None
    anchor_label_raw: str | None = None
    anchor_label_norm: str | None = None
    anchor_order: int | None = None
    list_depth: int | None = None
    list_marker_style: str | None = None
    item_index: int | None = None
    table_node_id: str | None = None
    row_idx: int | None = None
    col_idx: int | None = None
    is_header: int | None = None
    row_span: int | None = None
    col_span: int | None = None


@dataclass
class BuilderState:
    """Running state of one document's tree build."""
    doc_id: str
    source_hash: str
    sink: NodeSink
    node_order_index: int = 0
    node_paths: dict[str, str] = field(default_factory=dict)
    section_ref_to_node_id: dict[str, str] = field(default_factory=dict)
    clause_ref_to_node_id: dict[str, str] = field(default_factory=dict)
    last_clause_node_id: str | None = None
    node_key_counts: Counter[str] = field(default_factory=Counter)
    chunk_key_counts: Counter[str] = field(default_factory=Counter)
    chunk_seq_by_ref: Counter[str] = field(default_factory=Counter)
    issued_anchor_ids: Counter[str] = field(default_factory=Counter)
    counts: IngestCounts = field(default_factory=IngestCounts)

    @property
    def document_node_id(self) -> str:
        return f"{self.doc_id}:node:document"

    def build_ancestor_path(self, parent_node_id: str | None, path_label: str) -> str:
        parent_path = self.node_paths.get(parent_node_id) if parent_node_id else None
        if parent_path:
            return f"{parent_path} > {path_label}"
        return path_label

    def issue_anchor_id(self, draft: NodeDraft) -> str | None:
        """
        Compute the citation anchor of a draft.

        Sub-unit anchors already issued in this document get an ``_<n>``
        occurrence suffix on their label key.
        """
        if draft.anchor_type is None:
            return None

        anchor_id = build_citation_anchor_id(
            self.doc_id,
            draft.anchor_parent_ref or "",
            draft.anchor_type,
            draft.anchor_label_norm,
            draft.anchor_order,
        )
        if draft.anchor_type not in SUFFIXED_ANCHOR_TYPES:
            return anchor_id

        self.issued_anchor_ids[anchor_id] += 1
        occurrence = self.issued_anchor_ids[anchor_id]
        if occurrence > 1:
            return f"{anchor_id}_{occurrence}"
        return anchor_id

    def insert_node(self, draft: NodeDraft) -> str:
        """
        Insert one node and return its ancestor path.

        Assigns the next order_index, derives the ancestor path from the
        parent's stored path and computes the citation anchor.
        """
        ancestor_path = self.build_ancestor_path(draft.parent_node_id, draft.path_label)

        record = NodeRecord(
            node_id=draft.node_id,
            parent_node_id=draft.parent_node_id,
            doc_id=self.doc_id,
            node_type=draft.node_type.value,
            ref=draft.ref,
            ref_path=draft.ref_path,
            heading=draft.heading,
            order_index=self.node_order_index,
            page_pdf_start=draft.page_pdf_start,
            page_pdf_end=draft.page_pdf_end,
            text=draft.text,
            source_hash=self.source_hash,
            ancestor_path=ancestor_path,
            anchor_type=draft.anchor_type,
            anchor_label_raw=draft.anchor_label_raw,
            anchor_label_norm=draft.anchor_label_norm,
            anchor_order=draft.anchor_order,
            citation_anchor_id=self.issue_anchor_id(draft),
            list_depth=draft.list_depth,
            list_marker_style=draft.list_marker_style,
            item_index=draft.item_index,
            table_node_id=draft.table_node_id,
            row_idx=draft.row_idx,
            col_idx=draft.col_idx,
            is_header=draft.is_header,
            row_span=draft.row_span,
            col_span=draft.col_span,
        )
        self.sink.write_node(record)

        self.node_paths[draft.node_id] = ancestor_path
        self.node_order_index += 1
        self.counts.record_node(draft.node_type.value)
        return ancestor_path

    def next_key_count(self, counter: Counter[str], key: str) -> int:
        counter[key] += 1
        return counter[key]


def chunk_origin_node_type(chunk_type: ChunkType, reference: str) -> NodeType:
    """Clauses with more than two dotted segments are subclauses."""
    if chunk_type == ChunkType.CLAUSE:
        return NodeType.SUBCLAUSE if len(reference.split(".")) > 2 else NodeType.CLAUSE
    if chunk_type == ChunkType.TABLE:
        return NodeType.TABLE
    return NodeType.ANNEX


def find_parent_clause_node_id(reference: str, clause_ref_to_node_id: dict[str, str]) -> str | None:
    parts = reference.split(".")
    while len(parts) > 1:
        parts.pop()
        parent = clause_ref_to_node_id.get(".".join(parts))
        if parent is not None:
            return parent
    return None


def find_section_node_id(reference: str, section_ref_to_node_id: dict[str, str]) -> str | None:
    section_ref = reference.split(".")[0].strip()
    if not section_ref:
        return None
    return section_ref_to_node_id.get(section_ref)


def resolve_structured_parent(state: BuilderState, draft: StructuredChunkDraft) -> str:
    """
    Pick the parent node of a structured draft.

    Tables hang under the last clause seen; clauses under their nearest
    ancestor clause, else their top-level section, else the document root;
    annexes under the document root.
    """
    if draft.chunk_type == ChunkType.TABLE:
        return state.last_clause_node_id or state.document_node_id

    if draft.chunk_type == ChunkType.CLAUSE:
        return (
            find_parent_clause_node_id(draft.reference, state.clause_ref_to_node_id)
            or find_section_node_id(draft.reference, state.section_ref_to_node_id)
            or state.document_node_id
        )

    return state.document_node_id


def structured_path_label(node_type: NodeType, reference: str, heading: str) -> str:
    label = reference or heading or "unlabeled"
    return f"{node_type.value}:{label}"


def insert_document_node(state: BuilderState, heading: str, page_count: int) -> None:
    """Insert the document root at order 0."""
    state.insert_node(NodeDraft(
        node_id=state.document_node_id,
        parent_node_id=None,
        node_type=NodeType.DOCUMENT,
        path_label=f"document:{state.doc_id}",
        heading=heading,
        page_pdf_start=1,
        page_pdf_end=page_count,
    ))


def insert_section_heading_nodes(state: BuilderState, sections: list[SectionHeadingDraft]) -> None:
    """Insert one section_heading node per outline entry under the document root."""
    for section in sections:
        node_id = f"{state.doc_id}:node:section_heading:{sanitize_ref(section.reference)}"
        anchor_order = int(section.reference) if section.reference.isdigit() else None

        state.insert_node(NodeDraft(
            node_id=node_id,
            parent_node_id=state.document_node_id,
            node_type=NodeType.SECTION_HEADING,
            path_label=f"section_heading:{section.reference}",
            ref=section.reference,
            ref_path=section.reference,
            heading=section.heading,
            page_pdf_start=section.page_pdf,
            page_pdf_end=section.page_pdf,
            text=section.heading,
            anchor_type="clause",
            anchor_parent_ref=section.reference,
            anchor_label_raw=section.reference,
            anchor_label_norm=section.reference,
            anchor_order=anchor_order,
        ))
        state.section_ref_to_node_id[section.reference] = node_id


def insert_table_child_nodes(
    state: BuilderState,
    table_node_id: str,
    table_reference: str,
    parsed: ParsedTable,
    page_start: int,
    page_end: int,
) -> None:
    """Insert a table_row per parsed row and a table_cell per cell."""
    header_row_count = infer_table_header_rows(parsed.rows)

    for row_index, cells in enumerate(parsed.rows, start=1):
        row_node_id = f"{table_node_id}:row:{row_index:03}"
        row_ref = f"{table_reference} row {row_index}"
        is_header = 1 if row_index <= header_row_count else 0

        state.insert_node(NodeDraft(
            node_id=row_node_id,
            parent_node_id=table_node_id,
            node_type=NodeType.TABLE_ROW,
            path_label=f"table_row:{row_index}",
            ref=row_ref,
            ref_path=row_ref,
            heading=row_ref,
            page_pdf_start=page_start,
            page_pdf_end=page_end,
            text=" | ".join(cells),
            anchor_type="table_row",
            anchor_parent_ref=table_reference,
            anchor_label_norm=str(row_index),
            anchor_order=row_index,
            table_node_id=table_node_id,
            row_idx=row_index,
            is_header=is_header,
            row_span=1,
        ))

        for col_index, cell_text in enumerate(cells, start=1):
            cell_label = f"r{row_index}c{col_index}"
            cell_ref = f"{table_reference} {cell_label}"

            state.insert_node(NodeDraft(
                node_id=f"{table_node_id}:cell:{row_index:03}:{col_index:03}",
                parent_node_id=row_node_id,
                node_type=NodeType.TABLE_CELL,
                path_label=f"table_cell:{cell_label}",
                ref=cell_ref,
                ref_path=cell_ref,
                heading=cell_ref,
                page_pdf_start=page_start,
                page_pdf_end=page_end,
                text=cell_text,
                anchor_type="table_cell",
                anchor_parent_ref=table_reference,
                anchor_label_norm=cell_label,
                anchor_order=(row_index - 1) * 1000 + col_index,
                table_node_id=table_node_id,
                row_idx=row_index,
                col_idx=col_index,
                is_header=is_header,
                row_span=1,
                col_span=1,
            ))


def insert_paragraph_nodes(
    state: BuilderState,
    parent_node_id: str,
    reference: str,
    paragraphs: list[str],
    page_start: int,
    page_end: int,
) -> None:
    for index, paragraph in enumerate(paragraphs, start=1):
        paragraph_ref = f"{reference} para {index}"
        state.insert_node(NodeDraft(
            node_id=f"{parent_node_id}:paragraph:{index:03}",
            parent_node_id=parent_node_id,
            node_type=NodeType.PARAGRAPH,
            path_label=f"paragraph:{index}",
            ref=paragraph_ref,
            ref_path=paragraph_ref,
            heading=f"{reference} paragraph {index}",
            page_pdf_start=page_start,
            page_pdf_end=page_end,
            text=paragraph,
            anchor_type="paragraph",
            anchor_parent_ref=reference,
            anchor_label_norm=str(index),
            anchor_order=index,
        ))


def insert_note_nodes(
    state: BuilderState,
    parent_node_id: str,
    reference: str,
    note_items: list[NoteItemDraft],
    page_start: int,
    page_end: int,
) -> None:
    """Insert a note container with one note_item child per NOTE."""
    note_node_id = f"{parent_node_id}:note:001"
    note_ref = f"{reference} note"

    state.insert_node(NodeDraft(
        node_id=note_node_id,
        parent_node_id=parent_node_id,
        node_type=NodeType.NOTE,
        path_label=f"note:{reference}",
        ref=note_ref,
        ref_path=note_ref,
        heading=note_ref,
        page_pdf_start=page_start,
        page_pdf_end=page_end,
    ))

    for index, item in enumerate(note_items, start=1):
        item_ref = f"{reference} note {index}"
        state.insert_node(NodeDraft(
            node_id=f"{note_node_id}:item:{index:03}",
            parent_node_id=note_node_id,
            node_type=NodeType.NOTE_ITEM,
            path_label=f"note_item:{index}",
            ref=item_ref,
            ref_path=item_ref,
            heading=f"{item.marker} {item.text}",
            page_pdf_start=page_start,
            page_pdf_end=page_end,
            text=item.text,
            anchor_type="marker",
            anchor_parent_ref=reference,
            anchor_label_raw=item.marker,
            anchor_label_norm=item.marker_norm,
            anchor_order=index,
        ))


def insert_list_nodes(
    state: BuilderState,
    parent_node_id: str,
    reference: str,
    list_items: list[ListItemDraft],
    page_start: int,
    page_end: int,
) -> None:
    """
    Insert a list container and its items, nesting items by depth.

    An item deeper than any open ancestor is pulled up until its parent depth
    exists; depth 1 items hang under the list container.
    """
    list_node_id = f"{parent_node_id}:list:001"
    list_ref = f"{reference} list"

    state.insert_node(NodeDraft(
        node_id=list_node_id,
        parent_node_id=parent_node_id,
        node_type=NodeType.LIST,
        path_label=f"list:{reference}",
        ref=list_ref,
        ref_path=list_ref,
        heading=list_ref,
        page_pdf_start=page_start,
        page_pdf_end=page_end,
    ))

    last_item_by_depth: dict[int, str] = {}
    item_index_by_parent: Counter[str] = Counter()

    for index, item in enumerate(list_items, start=1):
        effective_depth = max(item.depth, 1)
        while effective_depth > 1 and (effective_depth - 1) not in last_item_by_depth:
            effective_depth -= 1

        if effective_depth == 1:
            item_parent_id = list_node_id
        else:
            item_parent_id = last_item_by_depth[effective_depth - 1]

        last_item_by_depth = {
            depth: node_id for depth, node_id in last_item_by_depth.items()
            if depth < effective_depth
        }
        item_index_by_parent[item_parent_id] += 1
        item_index = item_index_by_parent[item_parent_id]

        item_node_id = f"{list_node_id}:item:{index:03}"
        item_ref = f"{reference} item {index}"

        state.insert_node(NodeDraft(
            node_id=item_node_id,
            parent_node_id=item_parent_id,
            node_type=NodeType.LIST_ITEM,
            path_label=f"list_item:d{effective_depth}:{item_index}",
            ref=item_ref,
            ref_path=item_ref,
            heading=f"{item.marker} {item.text}",
            page_pdf_start=page_start,
            page_pdf_end=page_end,
            text=item.text,
            anchor_type="marker",
            anchor_parent_ref=reference,
            anchor_label_raw=item.marker,
            anchor_label_norm=item.marker_norm,
            anchor_order=index,
            list_depth=effective_depth,
            list_marker_style=item.marker_style.value,
            item_index=item_index,
        ))
        last_item_by_depth[effective_depth] = item_node_id


def insert_requirement_atom_nodes(
    state: BuilderState,
    parent_node_id: str,
    reference: str,
    atoms: list[str],
    page_start: int,
    page_end: int,
) -> None:
    for index, atom in enumerate(atoms, start=1):
        atom_ref = f"{reference} req {index}"
        state.insert_node(NodeDraft(
            node_id=f"{parent_node_id}:req:{index:03}",
            parent_node_id=parent_node_id,
            node_type=NodeType.REQUIREMENT_ATOM,
            path_label=f"requirement_atom:{index}",
            ref=atom_ref,
            ref_path=atom_ref,
            heading=f"Requirement atom {index}",
            page_pdf_start=page_start,
            page_pdf_end=page_end,
            text=atom,
            anchor_type="requirement_atom",
            anchor_parent_ref=reference,
            anchor_label_raw=str(index),
            anchor_label_norm=str(index),
            anchor_order=index,
        ))


def insert_body_nodes(
    state: BuilderState,
    parent_node_id: str,
    draft: StructuredChunkDraft,
    patterns: IngestPatterns,
) -> None:
    """Attach paragraphs, notes, lists and requirement atoms under a clause or annex node."""
    reference = draft.reference

    paragraphs = parse_paragraphs(draft.text, draft.heading, patterns)
    if paragraphs:
        insert_paragraph_nodes(state, parent_node_id, reference, paragraphs, draft.page_start, draft.page_end)

    markers = scan_markers(draft.text, draft.heading, patterns)
    if markers.note_items:
        insert_note_nodes(state, parent_node_id, reference, markers.note_items, draft.page_start, draft.page_end)

    if markers.had_list_candidates:
        state.counts.list_parse_candidate_count += 1
    if markers.list_items:
        insert_list_nodes(state, parent_node_id, reference, markers.list_items, draft.page_start, draft.page_end)
    elif markers.list_fallback:
        state.counts.list_parse_fallback_count += 1

    atoms = parse_requirement_atoms(draft.text, draft.heading, patterns)
    if atoms:
        insert_requirement_atom_nodes(state, parent_node_id, reference, atoms, draft.page_start, draft.page_end)


def record_table_quality(counts: IngestCounts, parsed: ParsedTable) -> None:
    if parsed.used_fallback:
        counts.table_raw_fallback_count += 1

    quality = parsed.quality
    counts.table_sparse_rows_count += quality.sparse_rows_count
    counts.table_overloaded_rows_count += quality.overloaded_rows_count
    counts.table_rows_with_markers_count += quality.rows_with_markers_count
    counts.table_rows_with_descriptions_count += quality.rows_with_descriptions_count
    counts.table_marker_expected_count += quality.marker_expected_count
    counts.table_marker_observed_count += quality.marker_observed_count


def insert_structured_chunks(
    state: BuilderState,
    drafts: list[StructuredChunkDraft],
    page_printed_labels: list[str | None],
    patterns: IngestPatterns,
) -> None:
    """
    Insert the node and retrieval chunk of every structured draft.

    Split fragments of one reference get successive ``chunk_seq`` values and
    share the reference's clause anchor.
    """
    for draft in drafts:
        node_type = chunk_origin_node_type(draft.chunk_type, draft.reference)
        parent_node_id = resolve_structured_parent(state, draft)
        ref_key = sanitize_ref(draft.reference)

        node_count = state.next_key_count(state.node_key_counts, f"{node_type.value}:{ref_key}")
        node_id = f"{state.doc_id}:node:{node_type.value}:{ref_key}:{node_count:03}"
        structured_seq = state.next_key_count(state.chunk_seq_by_ref, draft.reference)

        ancestor_path = state.insert_node(NodeDraft(
            node_id=node_id,
            parent_node_id=parent_node_id,
            node_type=node_type,
            path_label=structured_path_label(node_type, draft.reference, draft.heading),
            ref=draft.reference,
            ref_path=draft.ref_path,
            heading=draft.heading,
            page_pdf_start=draft.page_start,
            page_pdf_end=draft.page_end,
            text=draft.text,
            anchor_type="clause",
            anchor_parent_ref=draft.reference,
            anchor_label_raw=draft.reference,
            anchor_label_norm=draft.reference,
            anchor_order=structured_seq,
        ))

        if node_type in (NodeType.CLAUSE, NodeType.SUBCLAUSE):
            state.clause_ref_to_node_id[draft.reference] = node_id
            state.last_clause_node_id = node_id

        parsed = None
        if draft.chunk_type == ChunkType.TABLE:
            parsed = parse_table(draft.text, draft.heading, patterns.table_cell_split)
            record_table_quality(state.counts, parsed)

        chunk_count = state.next_key_count(state.chunk_key_counts, f"{draft.chunk_type.value}:{ref_key}")
        printed_start, printed_end = printed_page_labels_for_range(
            page_printed_labels, draft.page_start, draft.page_end
        )

        state.sink.write_chunk(ChunkRecord(
            chunk_id=f"{state.doc_id}:{draft.chunk_type.value}:{ref_key}:{chunk_count:03}",
            doc_id=state.doc_id,
            type=draft.chunk_type.value,
            ref=draft.reference,
            ref_path=draft.ref_path,
            heading=draft.heading,
            chunk_seq=structured_seq,
            page_pdf_start=draft.page_start,
            page_pdf_end=draft.page_end,
            page_printed_start=printed_start,
            page_printed_end=printed_end,
            text=draft.text,
            table_md=parsed.markdown if parsed else None,
            table_csv=parsed.csv if parsed else None,
            source_hash=state.source_hash,
            origin_node_id=node_id,
            leaf_node_type=node_type.value,
            ancestor_path=ancestor_path,
            anchor_type="clause",
            anchor_label_raw=draft.reference,
            anchor_label_norm=draft.reference,
            anchor_order=structured_seq,
            citation_anchor_id=build_citation_anchor_id(
                state.doc_id, draft.reference, "clause", draft.reference, structured_seq
            ),
        ))

        state.counts.structured_chunks_inserted += 1
        if draft.chunk_type == ChunkType.CLAUSE:
            state.counts.clause_chunks_inserted += 1
        elif draft.chunk_type == ChunkType.TABLE:
            state.counts.table_chunks_inserted += 1
        else:
            state.counts.annex_chunks_inserted += 1

        if parsed is not None:
            insert_table_child_nodes(state, node_id, draft.reference, parsed, draft.page_start, draft.page_end)

        if node_type in BODY_NODE_TYPES:
            insert_body_nodes(state, node_id, draft, patterns)


def insert_page_chunks(
    state: BuilderState,
    pages: list[str],
    page_printed_labels: list[str | None],
) -> None:
    """Insert one page node and one page chunk per non-empty page."""
    for page_number, page_text in enumerate(pages, start=1):
        text = page_text.strip()
        if not text:
            continue

        node_id = f"{state.doc_id}:node:page:{page_number:04}"
        page_ref = f"PDF page {page_number}"
        page_heading = f"Page {page_number}"
        printed_label = printed_page_label_for(page_printed_labels, page_number)

        ancestor_path = state.insert_node(NodeDraft(
            node_id=node_id,
            parent_node_id=state.document_node_id,
            node_type=NodeType.PAGE,
            path_label=f"page:{page_ref}",
            ref=page_ref,
            ref_path=page_ref,
            heading=page_heading,
            page_pdf_start=page_number,
            page_pdf_end=page_number,
            text=text,
        ))

        state.sink.write_chunk(ChunkRecord(
            chunk_id=f"{state.doc_id}:page:{page_number:04}",
            doc_id=state.doc_id,
            type="page",
            ref=page_ref,
            ref_path=page_ref,
            heading=page_heading,
            chunk_seq=page_number,
            page_pdf_start=page_number,
            page_pdf_end=page_number,
            page_printed_start=printed_label,
            page_printed_end=printed_label,
            text=text,
            source_hash=state.source_hash,
            origin_node_id=node_id,
            leaf_node_type=NodeType.PAGE.value,
            ancestor_path=ancestor_path,
        ))
        state.counts.page_chunks_inserted += 1


def build_document_tree(
    doc_id: str,
    source_hash: str,
    document_heading: str,
    pages: list[str],
    page_printed_labels: list[str | None],
    section_headings: list[SectionHeadingDraft],
    sink: NodeSink,
    patterns: IngestPatterns | None = None,
    structure: StructureConfig | None = None,
    seed_page_chunks: bool = False,
) -> BuilderState:
    """
    Build and write the node tree and chunks of one document.

    Args:
        doc_id: The document id.
        source_hash: SHA-256 of the source PDF, stored on every row.
        document_heading: Heading of the document root node.
        pages: Normalized page texts in PDF order.
        page_printed_labels: Printed label per PDF page.
        section_headings: Top-level outline entries.
        sink: Where node and chunk rows are written.
        patterns: Compiled heuristic patterns, defaults when omitted.
        structure: Structure limits, defaults when omitted.
        seed_page_chunks: Also insert one page node and chunk per page.

    Returns:
        The final builder state, including the insert tally.
    """
    patterns = patterns or default_patterns()
    structure = structure or StructureConfig()
    state = BuilderState(doc_id=doc_id, source_hash=source_hash, sink=sink)

    insert_document_node(state, document_heading, len(pages))
    insert_section_heading_nodes(state, section_headings)

    drafts = split_long_chunks(segment_pages(pages, patterns, structure), structure)
    insert_structured_chunks(state, drafts, page_printed_labels, patterns)

    if seed_page_chunks:
        insert_page_chunks(state, pages, page_printed_labels)

    logger.info(
        f"Built tree for {doc_id}: {state.counts.nodes_total} nodes, "
        f"{state.counts.structured_chunks_inserted} structured chunks"
    )
    return state
