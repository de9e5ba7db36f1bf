"""Knowledge-graph builder: walk, parse, persist, resolve.

A build for one analysis runs in a fixed order:

1. delete the analysis's previous graph (rebuilds are idempotent)
2. walk the project under admission limits
3. parse admitted files in parallel through the dispatcher
4. persist nodes, then build the name index over their durable IDs
5. resolve symbolic edges, creating external placeholders where needed
6. persist placeholders and edges

Steps 4-6 run inside a single storage transaction, so a storage failure
leaves the analysis with no graph rather than half of one.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import posixpath
import threading
import time
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import config
from .errors import BuildCancelledError
from .models import (
    BuildReport,
    CodeGraph,
    ExtractedEdge,
    ExtractionResult,
    FileDiscovery,
    GraphNode,
    NewEdge,
    NewNode,
)
from .parser import ParserDispatcher
from .storage import GraphStore

logger = logging.getLogger(__name__)

JS_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs")
PY_EXTENSIONS = (".py", ".pyw")

# Node types each edge kind may land on.  Edge kinds not listed accept any.
_TARGET_TYPES: Dict[str, Tuple[str, ...]] = {
    "imports": ("module",),
    "calls": ("function", "class"),
    "inherits": ("class",),
    "implements": ("class",),
}
_SOURCE_TYPES = ("module", "class", "function")


# ===================================================================
# Options / cancellation
# ===================================================================

@dataclass
class BuildOptions:
    analysis_id: str
    project_path: Path
    include_patterns: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)
    max_file_size: int = config.DEFAULT_MAX_FILE_SIZE
    max_files: int = config.DEFAULT_MAX_FILES


class CancellationToken:
    """Cooperative cancellation flag, checked between files."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, analysis_id: str) -> None:
        if self._event.is_set():
            raise BuildCancelledError(f"Build for analysis {analysis_id} was cancelled")


# ===================================================================
# Name index
# ===================================================================

class ResolutionPolicy(str, Enum):
    """Tie-break when several nodes share a lookup key."""

    FIRST_DECLARED = "first_declared"
    LAST_WRITER = "last_writer"


class NameIndex:
    """Lookup table from ``name`` and ``file:name`` to candidate nodes.

    Candidates are kept in insertion order; the policy picks one only at
    lookup time, after filtering by node type.
    """

    def __init__(self, policy: ResolutionPolicy = ResolutionPolicy.FIRST_DECLARED) -> None:
        self.policy = ResolutionPolicy(policy)
        self._candidates: Dict[str, List[GraphNode]] = defaultdict(list)

    def add(self, node: GraphNode) -> None:
        self._candidates[node.name].append(node)
        if node.file:
            self._candidates[f"{node.file}:{node.name}"].append(node)

    def add_all(self, nodes: Iterable[GraphNode]) -> None:
        for node in nodes:
            self.add(node)

    def candidates(self, key: str) -> List[GraphNode]:
        return list(self._candidates.get(key, ()))

    def lookup(self, key: str, allowed_types: Optional[Sequence[str]] = None) -> Optional[GraphNode]:
        matches = [
            n for n in self._candidates.get(key, ())
            if allowed_types is None or n.node_type in allowed_types
        ]
        if not matches:
            return None
        if self.policy is ResolutionPolicy.LAST_WRITER:
            return matches[-1]
        return matches[0]

    def resolve(
        self,
        ref: str,
        file: str,
        allowed_types: Optional[Sequence[str]] = None,
    ) -> Optional[GraphNode]:
        """Same-file match first, then any file."""
        return self.lookup(f"{file}:{ref}", allowed_types) or self.lookup(ref, allowed_types)

    def __len__(self) -> int:
        return len(self._candidates)


def module_path_candidates(specifier: str, importing_file: str) -> List[str]:
    """Project-relative file paths an import specifier may refer to."""
    if importing_file.endswith(PY_EXTENSIONS):
        return _python_module_paths(specifier, importing_file)
    return _js_module_paths(specifier, importing_file)


def _js_module_paths(specifier: str, importing_file: str) -> List[str]:
    if specifier.startswith("/"):
        base = specifier.lstrip("/")
    elif specifier.startswith(("./", "../")) or specifier in (".", ".."):
        base = posixpath.join(posixpath.dirname(importing_file), specifier)
    else:
        # bare package specifier
        return []
    base = posixpath.normpath(base)
    if base in (".", "") or base.startswith("../"):
        return []
    paths = [base] if posixpath.splitext(base)[1] in JS_EXTENSIONS else []
    paths.extend(base + ext for ext in JS_EXTENSIONS)
    paths.extend(f"{base}/index{ext}" for ext in JS_EXTENSIONS)
    return paths


def _python_module_paths(specifier: str, importing_file: str) -> List[str]:
    dots = len(specifier) - len(specifier.lstrip("."))
    rest = specifier[dots:].replace(".", "/")
    here = posixpath.dirname(importing_file)

    if dots:
        base = here
        for _ in range(dots - 1):
            base = posixpath.dirname(base)
        roots = [base]
    else:
        roots = [""] if not here else ["", here]

    paths: List[str] = []
    for root in roots:
        stem = posixpath.join(root, rest) if rest else root
        if stem:
            paths.extend([f"{stem}.py", f"{stem}/__init__.py"])
        else:
            paths.append("__init__.py")
    return paths


# ===================================================================
# Builder
# ===================================================================

class GraphBuilder:
    """Builds and persists the knowledge graph for one analysis at a time."""

    def __init__(
        self,
        store: GraphStore,
        dispatcher: Optional[ParserDispatcher] = None,
        max_workers: Optional[int] = None,
        policy: ResolutionPolicy = ResolutionPolicy.FIRST_DECLARED,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher or ParserDispatcher()
        self.max_workers = max_workers or config.default_workers()
        self.policy = ResolutionPolicy(policy)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _analysis_lock(self, analysis_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(analysis_id)
            if lock is None:
                lock = self._locks[analysis_id] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build_graph(
        self,
        options: BuildOptions,
        cancel: Optional[CancellationToken] = None,
    ) -> CodeGraph:
        return self.build(options, cancel).graph

    def build(
        self,
        options: BuildOptions,
        cancel: Optional[CancellationToken] = None,
    ) -> BuildReport:
        """Rebuild the graph for ``options.analysis_id`` from scratch.

        Raises:
            BuildCancelledError: *cancel* fired before persistence started.
            StorageError: a batch write or delete failed.
        """
        started = time.perf_counter()
        analysis_id = options.analysis_id
        with self._analysis_lock(analysis_id):
            logger.info("Building knowledge graph for analysis %s", analysis_id)
            self.store.delete_by_analysis(analysis_id)

            discovery = self.discover_files(options)
            logger.info("Found %d files to analyze", len(discovery.files))

            results = self._parse_files(analysis_id, Path(options.project_path), discovery.files, cancel)
            parse_errors = {r.file: list(r.errors) for r in results if r.errors}

            with self.store.transaction():
                nodes = self.store.create_nodes(_new_nodes(analysis_id, results))
                logger.info("Created %d nodes", len(nodes))

                index = NameIndex(self.policy)
                index.add_all(nodes)
                new_edges, placeholders, dropped = self._resolve_edges(analysis_id, results, index)
                edges = self.store.create_edges(new_edges)
                logger.info(
                    "Created %d edges (%d external placeholders, %d dropped)",
                    len(edges), placeholders, dropped,
                )

            graph = self.store.get_full_graph(analysis_id)

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Knowledge graph built in %dms: %d nodes, %d edges",
            duration_ms, graph.stats.total_nodes, graph.stats.total_edges,
        )
        return BuildReport(
            analysis_id=analysis_id,
            graph=graph,
            discovery=discovery,
            files_parsed=sum(1 for r in results if not r.skipped),
            files_with_errors=len(parse_errors),
            parse_errors=parse_errors,
            placeholders_created=placeholders,
            edges_dropped=dropped,
            duration_ms=duration_ms,
        )

    # ------------------------------------------------------------------
    # Walk
    # ------------------------------------------------------------------

    def discover_files(self, options: BuildOptions) -> FileDiscovery:
        """Depth-first walk in sorted order, applying admission limits."""
        root = Path(options.project_path)
        excludes = list(config.DEFAULT_EXCLUDES) + list(options.exclude_patterns)
        discovery = FileDiscovery()
        logger.debug("Exclude patterns: %s", ", ".join(excludes))

        def excluded(name: str, rel: str) -> bool:
            return any(
                name == p or fnmatch.fnmatch(name, p) or fnmatch.fnmatch(rel, p)
                for p in excludes
            )

        def included(name: str, rel: str) -> bool:
            if not options.include_patterns:
                return True
            return any(
                fnmatch.fnmatch(rel, p) or fnmatch.fnmatch(name, p)
                for p in options.include_patterns
            )

        def walk(directory: Path) -> None:
            try:
                with os.scandir(directory) as it:
                    entries = sorted(it, key=lambda e: e.name)
            except OSError as exc:
                logger.debug("Cannot read directory %s: %s", directory, exc)
                return

            for entry in entries:
                if discovery.cap_reached:
                    return
                rel = Path(entry.path).relative_to(root).as_posix()
                if excluded(entry.name, rel):
                    continue
                try:
                    if entry.is_dir(follow_symlinks=False):
                        walk(Path(entry.path))
                        continue
                    if not entry.is_file():
                        continue
                    if not self.dispatcher.supports(entry.name) or not included(entry.name, rel):
                        continue
                    size = entry.stat().st_size
                except OSError as exc:
                    logger.debug("Cannot stat %s: %s", entry.path, exc)
                    continue
                if size > options.max_file_size:
                    logger.debug("Skipping large file: %s (%d bytes)", rel, size)
                    discovery.skipped_large.append(rel)
                    continue
                if len(discovery.files) >= options.max_files:
                    discovery.cap_reached = True
                    return
                discovery.files.append(rel)

        walk(root)

        if discovery.cap_reached:
            message = f"Reached max files limit ({options.max_files}), some files may be skipped"
            logger.warning(message)
            discovery.warnings.append(message)
        return discovery

    # ------------------------------------------------------------------
    # Parse
    # ------------------------------------------------------------------

    def _parse_files(
        self,
        analysis_id: str,
        root: Path,
        files: List[str],
        cancel: Optional[CancellationToken],
    ) -> List[ExtractionResult]:
        results: List[ExtractionResult] = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures: List[Future] = []
            try:
                for rel in files:
                    if cancel is not None:
                        cancel.raise_if_cancelled(analysis_id)
                    futures.append(pool.submit(self._parse_one, root, rel))
                for future in futures:
                    if cancel is not None:
                        cancel.raise_if_cancelled(analysis_id)
                    results.append(future.result())
            except BuildCancelledError:
                for future in futures:
                    future.cancel()
                logger.warning("Build for analysis %s cancelled after %d files", analysis_id, len(results))
                raise

        for result in results:
            if result.errors and not result.skipped:
                logger.debug("Errors in %s: %s", result.file, "; ".join(result.errors))
        return results

    def _parse_one(self, root: Path, rel: str) -> ExtractionResult:
        try:
            content = (root / rel).read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("Cannot read %s: %s", rel, exc)
            return ExtractionResult(
                file=rel,
                language=self.dispatcher.language_for(rel) or "unknown",
                errors=[f"Cannot read file: {exc}"],
            )
        return self.dispatcher.parse_file(rel, content)

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    def _resolve_edges(
        self,
        analysis_id: str,
        results: List[ExtractionResult],
        index: NameIndex,
    ) -> Tuple[List[NewEdge], int, int]:
        """Turn symbolic edges into ID edges.

        Returns ``(edges, placeholders_created, edges_dropped)``.  Placeholder
        nodes are persisted here, one per unresolved target name.
        """
        pending: List[Tuple[str, Optional[str], ExtractedEdge]] = []
        missing: List[str] = []
        seen_missing = set()
        dropped = 0

        for result in results:
            for edge in result.edges:
                source = index.resolve(edge.source_ref, result.file, _SOURCE_TYPES)
                if source is None:
                    logger.debug(
                        "Dropping %s edge from unresolved source %s in %s",
                        edge.edge_type, edge.source_ref, result.file,
                    )
                    dropped += 1
                    continue
                target = self._resolve_target(edge, result.file, index)
                if target is None and edge.target_ref not in seen_missing:
                    seen_missing.add(edge.target_ref)
                    missing.append(edge.target_ref)
                pending.append((source.node_id, target.node_id if target else None, edge))

        placeholders = self.store.create_nodes(
            NewNode(
                analysis_id=analysis_id,
                node_type="module",
                name=name,
                metadata={"external": True},
            )
            for name in missing
        )
        placeholder_ids = {p.name: p.node_id for p in placeholders}
        index.add_all(placeholders)
        if placeholders:
            logger.debug("Created %d external placeholder nodes", len(placeholders))

        edges: List[NewEdge] = []
        for source_id, target_id, edge in pending:
            metadata = dict(edge.metadata)
            if target_id is None:
                target_id = placeholder_ids[edge.target_ref]
                metadata["unresolvedTarget"] = True
            edges.append(NewEdge(
                analysis_id=analysis_id,
                source_id=source_id,
                target_id=target_id,
                edge_type=edge.edge_type,
                metadata=metadata,
            ))
        return edges, len(placeholders), dropped

    @staticmethod
    def _resolve_target(edge: ExtractedEdge, file: str, index: NameIndex) -> Optional[GraphNode]:
        allowed = _TARGET_TYPES.get(edge.edge_type)
        if edge.edge_type == "imports":
            for path in module_path_candidates(edge.target_ref, file):
                node = index.lookup(path, allowed)
                if node is not None:
                    return node
        return index.resolve(edge.target_ref, file, allowed)


def _new_nodes(analysis_id: str, results: Iterable[ExtractionResult]) -> Iterable[NewNode]:
    for result in results:
        for element in result.nodes:
            yield NewNode(
                analysis_id=analysis_id,
                node_type=element.node_type,
                name=element.name,
                file=result.file,
                line_start=element.line_start,
                line_end=element.line_end,
                metadata={**element.metadata, "language": result.language},
            )
