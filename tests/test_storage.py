"""Tests for the storage layer (GraphStore and FindingStore)."""

import json
from pathlib import Path

import pytest

from impactgraph.errors import FindingsFormatError, StorageError
from impactgraph.models import Finding, NewEdge, NewNode
from impactgraph.storage import FindingStore, GraphStore, load_findings_file


def _seed(store: GraphStore, analysis_id: str = "a1"):
    nodes = store.create_nodes([
        NewNode(analysis_id, "module", "app.py", file="app.py", line_start=1, line_end=10),
        NewNode(analysis_id, "function", "run", file="app.py", line_start=2, line_end=4,
                metadata={"async": False}),
        NewNode(analysis_id, "module", "requests", metadata={"external": True}),
    ])
    edges = store.create_edges([
        NewEdge(analysis_id, nodes[1].node_id, nodes[2].node_id, "calls", {"unresolvedTarget": True}),
        NewEdge(analysis_id, nodes[0].node_id, nodes[2].node_id, "imports"),
    ])
    return nodes, edges


class TestGraphStore:
    """Tests for GraphStore."""

    def test_store_initialization(self, store: GraphStore):
        assert store.db_path.exists()

    def test_default_path_uses_config(self, isolated_home: Path):
        default_store = GraphStore()
        try:
            assert default_store.db_path == isolated_home / "graph.db"
            assert default_store.db_path.exists()
        finally:
            default_store.close()

    def test_create_nodes_assigns_ids(self, store: GraphStore):
        nodes, _ = _seed(store)

        assert len({n.node_id for n in nodes}) == 3
        run = store.get_node(nodes[1].node_id)
        assert run is not None
        assert run.name == "run"
        assert run.metadata == {"async": False}
        assert store.get_node(nodes[2].node_id).is_external

    def test_find_nodes_filters(self, store: GraphStore):
        _seed(store)
        _seed(store, "other")

        assert len(store.find_nodes_by_analysis("a1")) == 3
        assert [n.name for n in store.find_nodes_by_analysis("a1", node_type="function")] == ["run"]
        assert [n.name for n in store.find_nodes_by_analysis("a1", file="app.py")] == ["app.py", "run"]

    def test_find_edges_filters(self, store: GraphStore):
        _seed(store)

        edges = store.find_edges_by_analysis("a1")
        assert [e.edge_type for e in edges] == ["calls", "imports"]
        calls = store.find_edges_by_analysis("a1", edge_type="calls")
        assert len(calls) == 1
        assert calls[0].metadata == {"unresolvedTarget": True}

    def test_get_full_graph_stats(self, store: GraphStore):
        _seed(store)
        graph = store.get_full_graph("a1")

        assert graph.stats.total_nodes == 3
        assert graph.stats.total_edges == 2
        assert graph.stats.nodes_by_type["module"] == 2
        assert graph.stats.nodes_by_type["class"] == 0
        assert graph.stats.edges_by_type["calls"] == 1
        assert graph.stats.edges_by_type["contains"] == 0

    def test_delete_by_analysis_is_scoped(self, store: GraphStore):
        _seed(store)
        _seed(store, "other")

        store.delete_by_analysis("a1")

        assert store.get_full_graph("a1").stats.total_nodes == 0
        assert store.get_full_graph("other").stats.total_nodes == 3
        assert store.get_full_graph("other").stats.total_edges == 2

    def test_empty_batches(self, store: GraphStore):
        assert store.create_nodes([]) == []
        assert store.create_edges([]) == []

    def test_transaction_rolls_back_on_error(self, store: GraphStore):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.create_nodes([NewNode("a1", "module", "x.py", file="x.py")])
                raise RuntimeError("abort")

        assert store.find_nodes_by_analysis("a1") == []

    def test_edge_to_missing_node_fails_atomically(self, store: GraphStore):
        with pytest.raises(StorageError):
            with store.transaction():
                nodes = store.create_nodes([NewNode("a1", "module", "x.py", file="x.py")])
                store.create_edges([NewEdge("a1", nodes[0].node_id, "missing-node", "calls")])

        assert store.find_nodes_by_analysis("a1") == []
        assert store.find_edges_by_analysis("a1") == []

    def test_nested_transactions_commit_once(self, store: GraphStore):
        with store.transaction():
            with store.transaction():
                store.create_nodes([NewNode("a1", "module", "x.py", file="x.py")])
            store.create_nodes([NewNode("a1", "module", "y.py", file="y.py")])

        assert len(store.find_nodes_by_analysis("a1")) == 2

    def test_analysis_records(self, store: GraphStore):
        store.record_analysis("a1", "/tmp/project")
        store.record_analysis("a1", "/tmp/moved")
        _seed(store)

        record = store.get_analysis("a1")
        assert record is not None
        assert record["project_path"] == "/tmp/moved"

        listed = store.list_analyses()
        assert [(r["id"], r["node_count"], r["edge_count"]) for r in listed] == [("a1", 3, 2)]

        assert store.delete_analysis("a1") is True
        assert store.get_analysis("a1") is None
        assert store.find_nodes_by_analysis("a1") == []
        assert store.delete_analysis("a1") is False


class TestFindingStore:

    def test_add_and_filter(self, store: GraphStore):
        findings = FindingStore(store)
        findings.add_findings("a1", [
            Finding(severity="low", title="Unused var", file="src/util.js"),
            Finding(severity="critical", title="SQL injection", file="src/db/query.js", line=12),
            Finding(severity="high", title="XSS", file="src/view.js"),
        ])
        findings.add_findings("a2", [Finding(severity="high", title="Other", file="src/db/query.js")])

        all_items = findings.find_by_analysis("a1")
        assert [f.title for f in all_items] == ["SQL injection", "XSS", "Unused var"]
        assert all(f.analysis_id == "a1" for f in all_items)

        by_file = findings.find_by_analysis("a1", file_pattern="db/query")
        assert [f.title for f in by_file] == ["SQL injection"]
        assert by_file[0].line == 12

        assert [f.title for f in findings.find_by_analysis("a1", severity="high")] == ["XSS"]

    def test_rejects_unknown_severity(self, store: GraphStore):
        with pytest.raises(FindingsFormatError):
            FindingStore(store).add_findings("a1", [Finding(severity="urgent", title="x")])

    def test_delete_analysis_removes_findings(self, store: GraphStore):
        store.record_analysis("a1", "/tmp/p")
        FindingStore(store).add_findings("a1", [Finding(severity="high", title="x", file="a.py")])

        store.delete_analysis("a1")

        assert FindingStore(store).find_by_analysis("a1") == []


class TestLoadFindingsFile:

    def test_list_and_object_forms(self, temp_dir: Path):
        entries = [
            {"severity": "HIGH", "title": "XSS", "file": "a.js", "line": "3", "ruleId": "js/xss"},
            {"severity": "info", "title": "Note"},
        ]
        as_list = temp_dir / "list.json"
        as_list.write_text(json.dumps(entries))
        as_object = temp_dir / "object.json"
        as_object.write_text(json.dumps({"findings": entries}))

        for path in (as_list, as_object):
            findings = load_findings_file(path)
            assert [f.severity for f in findings] == ["high", "info"]
            assert findings[0].line == 3
            assert findings[0].rule_id == "js/xss"
            assert findings[1].file is None

    @pytest.mark.parametrize("payload", [
        "not json",
        json.dumps({"findings": "nope"}),
        json.dumps([{"title": "missing severity"}]),
        json.dumps([{"severity": "urgent", "title": "bad severity"}]),
        json.dumps([{"severity": "high", "title": "bad line", "line": "twelve"}]),
        json.dumps([{"severity": "high", "title": "list line", "line": [12]}]),
    ])
    def test_invalid_files(self, temp_dir: Path, payload: str):
        path = temp_dir / "bad.json"
        path.write_text(payload)
        with pytest.raises(FindingsFormatError):
            load_findings_file(path)
