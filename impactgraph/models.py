"""Core data models shared by the parser, builder, store and analyzer."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

NODE_TYPES = ("module", "class", "function", "variable", "import", "export")
EDGE_TYPES = (
    "imports",
    "calls",
    "inherits",
    "implements",
    "uses",
    "defines",
    "contains",
    "depends_on",
)
SEVERITIES = ("critical", "high", "medium", "low", "info")


# ---------------------------------------------------------------------------
# Persisted graph
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GraphNode:
    node_id: str
    analysis_id: str
    node_type: str
    name: str
    file: Optional[str] = None
    line_start: Optional[int] = None
    line_end: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    @property
    def is_external(self) -> bool:
        return self.metadata.get("external") is True

    @property
    def is_exported(self) -> bool:
        return bool(self.metadata.get("exported"))

    def label(self) -> str:
        """Return ``type:name (file)``, or ``type:name`` for fileless nodes."""
        if self.file:
            return f"{self.node_type}:{self.name} ({self.file})"
        return f"{self.node_type}:{self.name}"


@dataclass(frozen=True)
class GraphEdge:
    edge_id: str
    analysis_id: str
    source_id: str
    target_id: str
    edge_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = ""


@dataclass
class NewNode:
    """Node insert payload; the store assigns the durable ID."""

    analysis_id: str
    node_type: str
    name: str
    file: Optional[str] = None
    line_start: Optional[int] = None
    line_end: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NewEdge:
    analysis_id: str
    source_id: str
    target_id: str
    edge_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphStats:
    total_nodes: int
    total_edges: int
    nodes_by_type: Dict[str, int]
    edges_by_type: Dict[str, int]


@dataclass
class CodeGraph:
    analysis_id: str
    nodes: List[GraphNode]
    edges: List[GraphEdge]
    stats: GraphStats

    @classmethod
    def from_parts(
        cls,
        analysis_id: str,
        nodes: List[GraphNode],
        edges: List[GraphEdge],
    ) -> "CodeGraph":
        nodes_by_type = {t: 0 for t in NODE_TYPES}
        for node in nodes:
            nodes_by_type[node.node_type] = nodes_by_type.get(node.node_type, 0) + 1
        edges_by_type = {t: 0 for t in EDGE_TYPES}
        for edge in edges:
            edges_by_type[edge.edge_type] = edges_by_type.get(edge.edge_type, 0) + 1
        stats = GraphStats(
            total_nodes=len(nodes),
            total_edges=len(edges),
            nodes_by_type=nodes_by_type,
            edges_by_type=edges_by_type,
        )
        return cls(analysis_id=analysis_id, nodes=nodes, edges=edges, stats=stats)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Extraction (intermediate, never persisted)
# ---------------------------------------------------------------------------

@dataclass
class ExtractedElement:
    node_type: str
    name: str
    line_start: int
    line_end: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractedEdge:
    """Symbolic edge: refs are bare names or file paths, never node IDs."""

    source_ref: str
    target_ref: str
    edge_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractionResult:
    file: str
    language: str
    nodes: List[ExtractedElement] = field(default_factory=list)
    edges: List[ExtractedEdge] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def skipped(self) -> bool:
        return self.language == "unknown"


# ---------------------------------------------------------------------------
# Findings feed
# ---------------------------------------------------------------------------

@dataclass
class Finding:
    severity: str
    title: str
    file: Optional[str] = None
    line: Optional[int] = None
    scanner: str = ""
    rule_id: Optional[str] = None
    description: str = ""
    finding_id: str = ""
    analysis_id: str = ""


# ---------------------------------------------------------------------------
# Builder / analyzer outputs
# ---------------------------------------------------------------------------

@dataclass
class FileDiscovery:
    files: List[str] = field(default_factory=list)
    skipped_large: List[str] = field(default_factory=list)
    cap_reached: bool = False
    warnings: List[str] = field(default_factory=list)


@dataclass
class BuildReport:
    analysis_id: str
    graph: CodeGraph
    discovery: FileDiscovery
    files_parsed: int = 0
    files_with_errors: int = 0
    parse_errors: Dict[str, List[str]] = field(default_factory=dict)
    placeholders_created: int = 0
    edges_dropped: int = 0
    duration_ms: int = 0


@dataclass
class VulnerabilityPropagation:
    finding: str
    severity: str
    propagation_path: List[str]


@dataclass
class ImpactAnalysisResult:
    target_file: str
    target_function: Optional[str] = None
    direct_dependents: List[str] = field(default_factory=list)
    transitive_dependents: List[str] = field(default_factory=list)
    affected_files: List[str] = field(default_factory=list)
    impact_score: int = 0
    vulnerability_propagation: List[VulnerabilityPropagation] = field(default_factory=list)
    direct_dependent_nodes: List[str] = field(default_factory=list)
    transitive_dependent_nodes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
