"""Graph export helpers for DOT and JSON outputs."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List

from .models import CodeGraph, GraphEdge, GraphNode


def export_dot(graph: CodeGraph, output_file: Path, focus: str = "") -> None:
    nodes = {n.node_id: n for n in graph.nodes}
    selected = _focused_subgraph(nodes, graph.edges, focus)

    lines = ["digraph KnowledgeGraph {"]
    lines.append("  rankdir=LR;")

    for node_id in selected["nodes"]:
        node = nodes[node_id]
        label = f"{node.node_type}\\n{node.name}"
        style = ", style=dashed" if node.is_external else ""
        lines.append(f'  "{node_id}" [label="{_esc(label)}"{style}];')

    for edge in selected["edges"]:
        lines.append(
            f'  "{edge.source_id}" -> "{edge.target_id}" [label="{_esc(edge.edge_type)}"];'
        )

    lines.append("}")
    output_file.write_text("\n".join(lines), encoding="utf-8")


def export_json(graph: CodeGraph, output_file: Path, focus: str = "") -> None:
    nodes = {n.node_id: n for n in graph.nodes}
    selected = _focused_subgraph(nodes, graph.edges, focus)
    payload = {
        "analysisId": graph.analysis_id,
        "stats": {
            "totalNodes": graph.stats.total_nodes,
            "totalEdges": graph.stats.total_edges,
            "nodesByType": graph.stats.nodes_by_type,
            "edgesByType": graph.stats.edges_by_type,
        },
        "nodes": [
            {
                "id": nodes[nid].node_id,
                "type": nodes[nid].node_type,
                "name": nodes[nid].name,
                "file": nodes[nid].file,
                "lineStart": nodes[nid].line_start,
                "lineEnd": nodes[nid].line_end,
                "metadata": nodes[nid].metadata,
            }
            for nid in selected["nodes"]
        ],
        "edges": [
            {
                "id": e.edge_id,
                "sourceId": e.source_id,
                "targetId": e.target_id,
                "type": e.edge_type,
                "metadata": e.metadata,
            }
            for e in selected["edges"]
        ],
    }
    output_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _focused_subgraph(
    nodes: Dict[str, GraphNode],
    edges: List[GraphEdge],
    focus: str,
) -> Dict[str, List]:
    """Nodes matching *focus* (by name or file) plus their one-hop neighbours."""
    if not focus:
        return {"nodes": list(nodes), "edges": list(edges)}

    focus_ids = {
        node_id
        for node_id, node in nodes.items()
        if focus in node.name or (node.file and focus in node.file)
    }

    if not focus_ids:
        return {"nodes": list(nodes), "edges": list(edges)}

    edge_subset = [e for e in edges if e.source_id in focus_ids or e.target_id in focus_ids]
    node_subset = set(focus_ids)
    for e in edge_subset:
        node_subset.add(e.source_id)
        node_subset.add(e.target_id)
    return {"nodes": [nid for nid in nodes if nid in node_subset], "edges": edge_subset}


def _esc(text: str) -> str:
    return text.replace('"', '\\"')
