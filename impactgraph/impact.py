"""Impact analysis over a loaded knowledge graph.

``ImpactAnalyzer.load_graph`` reads one analysis's graph from the store and
builds an immutable :class:`GraphSnapshot` (node index, file index and
forward/reverse adjacency).  Every query reads that single snapshot
reference, so concurrent queries are safe while a reload swaps in a new one.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Deque, Dict, List, Mapping, Optional, Set, Tuple

from .config import DEFAULT_CHAIN_DEPTH, DEFAULT_MAX_DEPTH
from .errors import GraphNotLoadedError
from .models import (
    CodeGraph,
    GraphNode,
    ImpactAnalysisResult,
    VulnerabilityPropagation,
)
from .storage import FindingStore, GraphStore

logger = logging.getLogger(__name__)

PROPAGATING_SEVERITIES = ("critical", "high")
MAX_PROPAGATION_FILES = 5
_NEVER_DEAD = ("module", "import", "export")


@dataclass(frozen=True)
class GraphSnapshot:
    analysis_id: str
    nodes: Mapping[str, GraphNode]
    by_file: Mapping[str, Tuple[str, ...]]
    forward: Mapping[str, Tuple[str, ...]]
    reverse: Mapping[str, Tuple[str, ...]]

    @classmethod
    def from_graph(cls, graph: CodeGraph) -> "GraphSnapshot":
        nodes: Dict[str, GraphNode] = {}
        by_file: Dict[str, List[str]] = {}
        for node in graph.nodes:
            nodes[node.node_id] = node
            if node.file:
                by_file.setdefault(node.file, []).append(node.node_id)

        # dict keys keep the first-seen order and drop parallel edges
        forward: Dict[str, Dict[str, None]] = {}
        reverse: Dict[str, Dict[str, None]] = {}
        for edge in graph.edges:
            forward.setdefault(edge.source_id, {})[edge.target_id] = None
            reverse.setdefault(edge.target_id, {})[edge.source_id] = None

        return cls(
            analysis_id=graph.analysis_id,
            nodes=MappingProxyType(nodes),
            by_file=MappingProxyType({k: tuple(v) for k, v in by_file.items()}),
            forward=MappingProxyType({k: tuple(v) for k, v in forward.items()}),
            reverse=MappingProxyType({k: tuple(v) for k, v in reverse.items()}),
        )


def impact_score(affected: int, total: int) -> int:
    """Percentage of *total* nodes affected, rounded half up, within 0-100.

    Any non-zero fan-in scores at least 1 so a score of 0 always means
    "no dependents".
    """
    if total <= 0 or affected <= 0:
        return 0
    score = int(math.floor(100 * affected / total + 0.5))
    return min(100, max(1, score))


def _same_file(finding_file: Optional[str], target_file: str) -> bool:
    """The feed matches by substring; keep only the target itself.

    Scanners may report paths with an extra prefix, so ``src/a.js`` still
    matches ``a.js`` while ``lib.py`` does not match ``b.py``.
    """
    if not finding_file:
        return False
    return finding_file == target_file or finding_file.endswith("/" + target_file)


class ImpactAnalyzer:
    """Answers impact, dead-code and dependency-chain queries."""

    def __init__(self, store: GraphStore, findings: Optional[FindingStore] = None) -> None:
        self.store = store
        self.findings = findings
        self._snapshot: Optional[GraphSnapshot] = None
        self._load_lock = threading.Lock()

    @property
    def loaded_analysis(self) -> Optional[str]:
        snapshot = self._snapshot
        return snapshot.analysis_id if snapshot else None

    def load_graph(self, analysis_id: str) -> GraphSnapshot:
        with self._load_lock:
            graph = self.store.get_full_graph(analysis_id)
            snapshot = GraphSnapshot.from_graph(graph)
            self._snapshot = snapshot
        logger.info(
            "Loaded graph for analysis %s: %d nodes, %d edges",
            analysis_id, graph.stats.total_nodes, graph.stats.total_edges,
        )
        return snapshot

    def _require(self, analysis_id: Optional[str] = None) -> GraphSnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise GraphNotLoadedError(analysis_id or "<analysis>", None)
        if analysis_id is not None and snapshot.analysis_id != analysis_id:
            raise GraphNotLoadedError(analysis_id, snapshot.analysis_id)
        return snapshot

    # ------------------------------------------------------------------
    # Impact
    # ------------------------------------------------------------------

    def analyze_file_impact(
        self,
        analysis_id: str,
        target_file: str,
        target_function: Optional[str] = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> ImpactAnalysisResult:
        """Who depends on *target_file* (or one function in it), and how far.

        Direct dependents are one hop away over incoming edges; transitive
        dependents are reached by reverse BFS from them, at most *max_depth*
        hops past the direct set.
        """
        snap = self._require(analysis_id)
        logger.info(
            "Analyzing impact for %s%s",
            target_file, f" -> {target_function}" if target_function else "",
        )

        targets = list(snap.by_file.get(target_file, ()))
        if target_function:
            targets = [
                nid for nid in targets
                if snap.nodes[nid].node_type == "function" and snap.nodes[nid].name == target_function
            ]
        if not targets:
            logger.warning("No nodes found for %s", target_file)
            return ImpactAnalysisResult(target_file=target_file, target_function=target_function)

        target_set = set(targets)
        direct: List[str] = []
        visited: Set[str] = set(target_set)
        for target in targets:
            for source in snap.reverse.get(target, ()):
                if source not in visited:
                    visited.add(source)
                    direct.append(source)

        transitive: List[str] = []
        queue: Deque[Tuple[str, int]] = deque((nid, 1) for nid in direct)
        while queue:
            current, hops = queue.popleft()
            if hops > max_depth:
                continue
            for source in snap.reverse.get(current, ()):
                if source in visited:
                    continue
                visited.add(source)
                transitive.append(source)
                queue.append((source, hops + 1))

        direct_files = self._files(snap, direct, exclude={target_file})
        transitive_files = self._files(snap, transitive, exclude={target_file, *direct_files})
        score = impact_score(len(direct) + len(transitive), len(snap.nodes))

        result = ImpactAnalysisResult(
            target_file=target_file,
            target_function=target_function,
            direct_dependents=direct_files,
            transitive_dependents=transitive_files,
            affected_files=sorted(set(direct_files) | set(transitive_files)),
            impact_score=score,
            vulnerability_propagation=self._propagation(analysis_id, target_file, direct_files),
            direct_dependent_nodes=direct,
            transitive_dependent_nodes=transitive,
        )
        logger.info(
            "Impact analysis complete: score=%d, affected files=%d",
            score, len(result.affected_files),
        )
        return result

    @staticmethod
    def _files(snap: GraphSnapshot, node_ids: List[str], exclude: Set[str]) -> List[str]:
        files = {snap.nodes[nid].file for nid in node_ids}
        return sorted(f for f in files if f and f not in exclude)

    def _propagation(
        self,
        analysis_id: str,
        target_file: str,
        direct_files: List[str],
    ) -> List[VulnerabilityPropagation]:
        if self.findings is None:
            return []
        try:
            findings = self.findings.find_by_analysis(analysis_id, file_pattern=target_file)
        except Exception as exc:  # the findings feed is advisory
            logger.warning("Could not read findings for %s: %s", target_file, exc)
            return []

        path = [target_file, *direct_files[:MAX_PROPAGATION_FILES]]
        return [
            VulnerabilityPropagation(finding=f.title, severity=f.severity, propagation_path=list(path))
            for f in findings
            if f.severity in PROPAGATING_SEVERITIES and _same_file(f.file, target_file)
        ]

    # ------------------------------------------------------------------
    # Dead code
    # ------------------------------------------------------------------

    def find_dead_code(self, analysis_id: str) -> List[GraphNode]:
        """Unexported declarations with no incoming edge of any kind."""
        snap = self._require(analysis_id)
        dead = [
            node for node in snap.nodes.values()
            if node.node_type not in _NEVER_DEAD
            and not node.is_exported
            and not snap.reverse.get(node.node_id)
        ]
        logger.info("Found %d potentially dead code nodes", len(dead))
        return dead

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def get_dependency_chain(self, node_id: str, max_depth: int = DEFAULT_CHAIN_DEPTH) -> List[str]:
        """Forward BFS from *node_id*, as ``type:name (file)`` labels."""
        snap = self._require()
        chain: List[str] = []
        visited: Set[str] = set()
        queue: Deque[Tuple[str, int]] = deque([(node_id, 0)])
        while queue:
            current, depth = queue.popleft()
            if current in visited or depth > max_depth:
                continue
            visited.add(current)
            node = snap.nodes.get(current)
            if node is not None:
                chain.append(node.label())
            for target in snap.forward.get(current, ()):
                queue.append((target, depth + 1))
        return chain

    def dependents_of(self, node_id: str) -> List[GraphNode]:
        snap = self._require()
        return [snap.nodes[nid] for nid in snap.reverse.get(node_id, ())]

    def dependencies_of(self, node_id: str) -> List[GraphNode]:
        snap = self._require()
        return [snap.nodes[nid] for nid in snap.forward.get(node_id, ())]

    def find_nodes(self, name: str, file: Optional[str] = None) -> List[GraphNode]:
        """Nodes named *name* (optionally in *file*), in declaration order."""
        snap = self._require()
        return [
            n for n in snap.nodes.values()
            if n.name == name and (file is None or n.file == file)
        ]
