"""SQLite persistence for analyses, knowledge graphs, and findings.

The graph builder and impact analyzer only need batch insert, full-graph
read, and delete-by-analysis; everything else here serves the CLI.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from . import config
from .errors import FindingsFormatError, StorageError
from .models import (
    SEVERITIES,
    CodeGraph,
    Finding,
    GraphEdge,
    GraphNode,
    NewEdge,
    NewNode,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dump(metadata: Dict[str, Any]) -> Optional[str]:
    return json.dumps(metadata) if metadata else None


def _load(raw: Optional[str]) -> Dict[str, Any]:
    return json.loads(raw) if raw else {}


# ===================================================================
# GraphStore
# ===================================================================

class GraphStore:
    """SQLite-backed store for graph nodes/edges, keyed by analysis ID."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        if db_path is None:
            config.ensure_base_dirs()
            db_path = config.DB_PATH
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "GraphStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.execute("""
            CREATE TABLE IF NOT EXISTS analyses (
                id           TEXT PRIMARY KEY,
                project_path TEXT NOT NULL,
                created_at   TEXT NOT NULL,
                updated_at   TEXT NOT NULL
            )
        """)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS graph_nodes (
                id          TEXT PRIMARY KEY,
                analysis_id TEXT NOT NULL,
                type        TEXT NOT NULL,
                name        TEXT NOT NULL,
                file        TEXT,
                line_start  INTEGER,
                line_end    INTEGER,
                metadata    TEXT,
                created_at  TEXT NOT NULL
            )
        """)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS graph_edges (
                id          TEXT PRIMARY KEY,
                analysis_id TEXT NOT NULL,
                source_id   TEXT NOT NULL REFERENCES graph_nodes(id) ON DELETE CASCADE,
                target_id   TEXT NOT NULL REFERENCES graph_nodes(id) ON DELETE CASCADE,
                type        TEXT NOT NULL,
                metadata    TEXT,
                created_at  TEXT NOT NULL
            )
        """)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS findings (
                id          TEXT PRIMARY KEY,
                analysis_id TEXT NOT NULL,
                scanner     TEXT NOT NULL,
                severity    TEXT NOT NULL,
                title       TEXT NOT NULL,
                description TEXT,
                file        TEXT,
                line        INTEGER,
                rule_id     TEXT,
                created_at  TEXT NOT NULL
            )
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_nodes_analysis ON graph_nodes(analysis_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_nodes_file ON graph_nodes(analysis_id, file)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_edges_analysis ON graph_edges(analysis_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_edges_source ON graph_edges(source_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_edges_target ON graph_edges(target_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_findings_analysis ON findings(analysis_id)")
        self.conn.commit()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["GraphStore"]:
        """Group writes into one commit; roll everything back on error.

        Nested use joins the outer transaction.
        """
        with self._lock:
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self.conn.rollback()
                    logger.debug("Rolled back graph store transaction")
                raise
            else:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self._execute_commit()

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self._execute_commit()

    def _execute_commit(self) -> None:
        try:
            self.conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Commit failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Analyses
    # ------------------------------------------------------------------

    def record_analysis(self, analysis_id: str, project_path: str) -> None:
        now = _now()
        with self._lock:
            try:
                self.conn.execute(
                    """
                    INSERT INTO analyses (id, project_path, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        project_path = excluded.project_path,
                        updated_at = excluded.updated_at
                    """,
                    (analysis_id, project_path, now, now),
                )
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot record analysis {analysis_id}: {exc}") from exc
            self._commit()

    def get_analysis(self, analysis_id: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM analyses WHERE id = ?", (analysis_id,)).fetchone()
        return dict(row) if row else None

    def list_analyses(self) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT a.*,
                   (SELECT COUNT(*) FROM graph_nodes n WHERE n.analysis_id = a.id) AS node_count,
                   (SELECT COUNT(*) FROM graph_edges e WHERE e.analysis_id = a.id) AS edge_count
            FROM analyses a
            ORDER BY a.updated_at DESC
            """
        ).fetchall()
        return [dict(r) for r in rows]

    def delete_analysis(self, analysis_id: str) -> bool:
        """Delete an analysis with its graph and findings."""
        with self.transaction():
            self.delete_by_analysis(analysis_id)
            try:
                self.conn.execute("DELETE FROM findings WHERE analysis_id = ?", (analysis_id,))
                cur = self.conn.execute("DELETE FROM analyses WHERE id = ?", (analysis_id,))
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot delete analysis {analysis_id}: {exc}") from exc
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Insert
    # ------------------------------------------------------------------

    def create_nodes(self, batch: Iterable[NewNode]) -> List[GraphNode]:
        """Insert *batch* and return the nodes with their durable IDs."""
        now = _now()
        created = [
            GraphNode(
                node_id=str(uuid.uuid4()),
                analysis_id=item.analysis_id,
                node_type=item.node_type,
                name=item.name,
                file=item.file,
                line_start=item.line_start,
                line_end=item.line_end,
                metadata=dict(item.metadata),
                created_at=now,
            )
            for item in batch
        ]
        if not created:
            return created
        logger.debug("Creating %d nodes in batch", len(created))
        with self._lock:
            try:
                self.conn.executemany(
                    """
                    INSERT INTO graph_nodes (
                        id, analysis_id, type, name, file,
                        line_start, line_end, metadata, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            n.node_id, n.analysis_id, n.node_type, n.name, n.file,
                            n.line_start, n.line_end, _dump(n.metadata), n.created_at,
                        )
                        for n in created
                    ],
                )
            except sqlite3.Error as exc:
                raise StorageError(f"Batch node insert failed: {exc}") from exc
            self._commit()
        return created

    def create_edges(self, batch: Iterable[NewEdge]) -> List[GraphEdge]:
        now = _now()
        created = [
            GraphEdge(
                edge_id=str(uuid.uuid4()),
                analysis_id=item.analysis_id,
                source_id=item.source_id,
                target_id=item.target_id,
                edge_type=item.edge_type,
                metadata=dict(item.metadata),
                created_at=now,
            )
            for item in batch
        ]
        if not created:
            return created
        logger.debug("Creating %d edges in batch", len(created))
        with self._lock:
            try:
                self.conn.executemany(
                    """
                    INSERT INTO graph_edges (
                        id, analysis_id, source_id, target_id, type, metadata, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            e.edge_id, e.analysis_id, e.source_id, e.target_id,
                            e.edge_type, _dump(e.metadata), e.created_at,
                        )
                        for e in created
                    ],
                )
            except sqlite3.Error as exc:
                raise StorageError(f"Batch edge insert failed: {exc}") from exc
            self._commit()
        return created

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def find_nodes_by_analysis(
        self,
        analysis_id: str,
        node_type: Optional[str] = None,
        file: Optional[str] = None,
    ) -> List[GraphNode]:
        query = "SELECT * FROM graph_nodes WHERE analysis_id = ?"
        params: List[Any] = [analysis_id]
        if node_type:
            query += " AND type = ?"
            params.append(node_type)
        if file:
            query += " AND file = ?"
            params.append(file)
        # rowid keeps insertion order, which is declaration order.
        query += " ORDER BY rowid"
        try:
            rows = self.conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot read nodes for {analysis_id}: {exc}") from exc
        return [_row_to_node(r) for r in rows]

    def find_edges_by_analysis(
        self,
        analysis_id: str,
        edge_type: Optional[str] = None,
    ) -> List[GraphEdge]:
        query = "SELECT * FROM graph_edges WHERE analysis_id = ?"
        params: List[Any] = [analysis_id]
        if edge_type:
            query += " AND type = ?"
            params.append(edge_type)
        query += " ORDER BY rowid"
        try:
            rows = self.conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot read edges for {analysis_id}: {exc}") from exc
        return [_row_to_edge(r) for r in rows]

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        row = self.conn.execute("SELECT * FROM graph_nodes WHERE id = ?", (node_id,)).fetchone()
        return _row_to_node(row) if row else None

    def get_full_graph(self, analysis_id: str) -> CodeGraph:
        nodes = self.find_nodes_by_analysis(analysis_id)
        edges = self.find_edges_by_analysis(analysis_id)
        logger.debug("Loaded graph %s: %d nodes, %d edges", analysis_id, len(nodes), len(edges))
        return CodeGraph.from_parts(analysis_id, nodes, edges)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete_by_analysis(self, analysis_id: str) -> None:
        """Delete every node and edge of *analysis_id* atomically."""
        logger.debug("Deleting graph data for analysis %s", analysis_id)
        with self.transaction():
            try:
                self.conn.execute("DELETE FROM graph_edges WHERE analysis_id = ?", (analysis_id,))
                self.conn.execute("DELETE FROM graph_nodes WHERE analysis_id = ?", (analysis_id,))
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot delete graph for {analysis_id}: {exc}") from exc


# ===================================================================
# FindingStore  (findings feed)
# ===================================================================

_SEVERITY_ORDER = "CASE severity " + " ".join(
    f"WHEN '{sev}' THEN {rank}" for rank, sev in enumerate(SEVERITIES)
) + " ELSE 99 END"


class FindingStore:
    """Scanner-normalised findings keyed by analysis and file."""

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    def add_findings(self, analysis_id: str, findings: Iterable[Finding]) -> List[Finding]:
        now = _now()
        stored: List[Finding] = []
        for f in findings:
            if f.severity not in SEVERITIES:
                raise FindingsFormatError(f"Unknown severity '{f.severity}' for finding '{f.title}'")
            stored.append(Finding(
                severity=f.severity,
                title=f.title,
                file=f.file,
                line=f.line,
                scanner=f.scanner,
                rule_id=f.rule_id,
                description=f.description,
                finding_id=f.finding_id or str(uuid.uuid4()),
                analysis_id=analysis_id,
            ))
        with self.store.transaction():
            try:
                self.store.conn.executemany(
                    """
                    INSERT OR REPLACE INTO findings (
                        id, analysis_id, scanner, severity, title,
                        description, file, line, rule_id, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            f.finding_id, analysis_id, f.scanner, f.severity, f.title,
                            f.description, f.file, f.line, f.rule_id, now,
                        )
                        for f in stored
                    ],
                )
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot store findings: {exc}") from exc
        return stored

    def find_by_analysis(
        self,
        analysis_id: str,
        file_pattern: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> List[Finding]:
        """Findings for an analysis; *file_pattern* is a substring match."""
        query = "SELECT * FROM findings WHERE analysis_id = ?"
        params: List[Any] = [analysis_id]
        if severity:
            query += " AND severity = ?"
            params.append(severity)
        if file_pattern:
            query += " AND file LIKE ?"
            params.append(f"%{file_pattern}%")
        query += f" ORDER BY {_SEVERITY_ORDER}, created_at, rowid"
        try:
            rows = self.store.conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot read findings for {analysis_id}: {exc}") from exc
        return [
            Finding(
                severity=r["severity"],
                title=r["title"],
                file=r["file"],
                line=r["line"],
                scanner=r["scanner"],
                rule_id=r["rule_id"],
                description=r["description"] or "",
                finding_id=r["id"],
                analysis_id=r["analysis_id"],
            )
            for r in rows
        ]


def load_findings_file(path: Path) -> List[Finding]:
    """Parse a JSON findings export: a list, or an object with ``findings``.

    Each entry needs ``severity`` and ``title``; ``file``, ``line``,
    ``scanner``, ``ruleId``/``rule_id`` and ``description`` are optional.
    """
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise FindingsFormatError(f"Cannot read findings from {path}: {exc}") from exc

    if isinstance(payload, dict):
        payload = payload.get("findings", [])
    if not isinstance(payload, list):
        raise FindingsFormatError("Findings file must contain a list of findings")

    findings: List[Finding] = []
    for idx, item in enumerate(payload):
        if not isinstance(item, dict) or "severity" not in item or "title" not in item:
            raise FindingsFormatError(f"Finding #{idx} needs at least 'severity' and 'title'")
        severity = str(item["severity"]).lower()
        if severity not in SEVERITIES:
            raise FindingsFormatError(f"Finding #{idx} has unknown severity '{item['severity']}'")
        line = item.get("line")
        if line is not None:
            try:
                line = int(line)
            except (TypeError, ValueError) as exc:
                raise FindingsFormatError(f"Finding #{idx} has invalid line {line!r}") from exc
        findings.append(Finding(
            severity=severity,
            title=str(item["title"]),
            file=item.get("file"),
            line=line,
            scanner=str(item.get("scanner", "")),
            rule_id=item.get("ruleId") or item.get("rule_id"),
            description=str(item.get("description", "")),
            finding_id=str(item.get("id", "")),
        ))
    return findings


# ===================================================================
# Helpers
# ===================================================================

def _row_to_node(row: sqlite3.Row) -> GraphNode:
    return GraphNode(
        node_id=row["id"],
        analysis_id=row["analysis_id"],
        node_type=row["type"],
        name=row["name"],
        file=row["file"],
        line_start=row["line_start"],
        line_end=row["line_end"],
        metadata=_load(row["metadata"]),
        created_at=row["created_at"],
    )


def _row_to_edge(row: sqlite3.Row) -> GraphEdge:
    return GraphEdge(
        edge_id=row["id"],
        analysis_id=row["analysis_id"],
        source_id=row["source_id"],
        target_id=row["target_id"],
        edge_type=row["type"],
        metadata=_load(row["metadata"]),
        created_at=row["created_at"],
    )
