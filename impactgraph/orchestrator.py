"""Orchestrator wiring the builder, analyzer and findings feed together."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from .builder import BuildOptions, CancellationToken, GraphBuilder, ResolutionPolicy
from .config import DEFAULT_CHAIN_DEPTH, DEFAULT_MAX_DEPTH
from .config_manager import GraphSettings, load_graph_config
from .errors import ImpactGraphError
from .impact import ImpactAnalyzer
from .models import BuildReport, CodeGraph, GraphNode, ImpactAnalysisResult
from .parser import ParserDispatcher
from .storage import FindingStore, GraphStore

logger = logging.getLogger(__name__)


class GraphOrchestrator:
    """Coordinates graph builds and impact queries against one store."""

    def __init__(
        self,
        store: GraphStore,
        settings: Optional[GraphSettings] = None,
        dispatcher: Optional[ParserDispatcher] = None,
    ):
        self.store = store
        self.settings = settings or load_graph_config()
        self.findings = FindingStore(store)
        self.builder = GraphBuilder(
            store,
            dispatcher=dispatcher,
            max_workers=self.settings.workers,
            policy=ResolutionPolicy(self.settings.resolution_policy),
        )
        self.analyzer = ImpactAnalyzer(store, self.findings)
        logger.debug("Orchestrator settings: %s", self.settings)

    def build_graph(
        self,
        project_path: Path,
        analysis_id: Optional[str] = None,
        include: Optional[List[str]] = None,
        exclude: Optional[List[str]] = None,
        max_file_size: Optional[int] = None,
        max_files: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> BuildReport:
        project_path = Path(project_path).resolve()
        if not project_path.is_dir():
            raise ImpactGraphError(f"Project path is not a directory: {project_path}")
        analysis_id = analysis_id or project_path.name

        options = BuildOptions(
            analysis_id=analysis_id,
            project_path=project_path,
            include_patterns=list(include or []),
            exclude_patterns=[*self.settings.exclude, *(exclude or [])],
            max_file_size=max_file_size or self.settings.max_file_size,
            max_files=max_files or self.settings.max_files,
        )
        self.store.record_analysis(analysis_id, str(project_path))
        report = self.builder.build(options, cancel)
        if self.analyzer.loaded_analysis == analysis_id:
            self.analyzer.load_graph(analysis_id)
        return report

    def get_graph(self, analysis_id: str) -> CodeGraph:
        self._require_analysis(analysis_id)
        return self.store.get_full_graph(analysis_id)

    def analyze_impact(
        self,
        analysis_id: str,
        target_file: str,
        target_function: Optional[str] = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> ImpactAnalysisResult:
        self._ensure_loaded(analysis_id)
        return self.analyzer.analyze_file_impact(analysis_id, target_file, target_function, max_depth)

    def find_dead_code(self, analysis_id: str) -> List[GraphNode]:
        self._ensure_loaded(analysis_id)
        return self.analyzer.find_dead_code(analysis_id)

    def dependency_chain(self, analysis_id: str, node_id: str, max_depth: int = DEFAULT_CHAIN_DEPTH) -> List[str]:
        self._ensure_loaded(analysis_id)
        return self.analyzer.get_dependency_chain(node_id, max_depth)

    def find_nodes(self, analysis_id: str, name: str, file: Optional[str] = None) -> List[GraphNode]:
        self._ensure_loaded(analysis_id)
        return self.analyzer.find_nodes(name, file)

    def _require_analysis(self, analysis_id: str) -> None:
        if self.store.get_analysis(analysis_id) is None:
            raise ImpactGraphError(f"Unknown analysis '{analysis_id}'. Run 'ig build' first.")

    def _ensure_loaded(self, analysis_id: str) -> None:
        if self.analyzer.loaded_analysis != analysis_id:
            self._require_analysis(analysis_id)
            self.analyzer.load_graph(analysis_id)
