"""Language-pluggable source parser built on Tree-sitter.

The :class:`ParserDispatcher` maps file extensions to
:class:`LanguageExtractor` implementations and turns one file's text into an
:class:`~impactgraph.models.ExtractionResult`: typed declarations plus
*unresolved*, name-based edges.  Resolution into node IDs happens later in
the graph builder.

Tree-sitter is error tolerant, so a file with syntax errors still yields the
declarations that could be recovered; the result just carries an error
marker.
"""

from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from pathlib import PurePosixPath
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from tree_sitter import Language, Parser as TSParser

from .models import ExtractedEdge, ExtractedElement, ExtractionResult

logger = logging.getLogger(__name__)

PARSE_ERROR_MARKER = "Parse errors detected"


# ===================================================================
# Extractor interface
# ===================================================================

class LanguageExtractor(ABC):
    """Capability object for one language: grammar + node/edge extraction."""

    #: Language name reported on the extraction result.
    language: str = ""
    #: File extensions (with leading dot) handled by this extractor.
    extensions: Tuple[str, ...] = ()
    #: ``(module, function)`` that returns the tree-sitter language capsule.
    grammar: Tuple[str, str] = ("", "language")

    @abstractmethod
    def extract_nodes(self, tree: Any, file_path: str) -> List[ExtractedElement]:
        """Return declarations found in *tree*."""
        ...

    @abstractmethod
    def extract_edges(
        self,
        tree: Any,
        nodes: List[ExtractedElement],
        file_path: str,
    ) -> List[ExtractedEdge]:
        """Return symbolic (name-based) relationships found in *tree*."""
        ...


# ===================================================================
# Dispatcher
# ===================================================================

class ParserDispatcher:
    """Immutable extension -> extractor table plus per-file parse entry point.

    Grammars are loaded once at construction.  A language whose grammar
    package is missing is skipped with a warning, so the dispatcher only
    advertises extensions it can actually parse.
    """

    def __init__(self, extractors: Optional[Sequence[LanguageExtractor]] = None) -> None:
        if extractors is None:
            from .languages import default_extractors

            extractors = default_extractors()

        table: Dict[str, Tuple[LanguageExtractor, Language]] = {}
        for extractor in extractors:
            language = self._load_grammar(extractor)
            if language is None:
                continue
            for ext in extractor.extensions:
                table[ext.lower()] = (extractor, language)
            logger.debug(
                "Registered %s extractor for %s",
                extractor.language, ", ".join(extractor.extensions),
            )
        self._table: Mapping[str, Tuple[LanguageExtractor, Language]] = MappingProxyType(table)

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    @staticmethod
    def _load_grammar(extractor: LanguageExtractor) -> Optional[Language]:
        mod_name, func_name = extractor.grammar
        try:
            mod = importlib.import_module(mod_name)
            return Language(getattr(mod, func_name)())
        except ImportError:
            logger.warning(
                "Grammar package '%s' not installed for language '%s'. "
                "Install with: pip install %s",
                mod_name, extractor.language, mod_name.replace("_", "-"),
            )
        except (AttributeError, TypeError, ValueError) as exc:
            logger.warning("Could not load tree-sitter grammar for %s: %s", extractor.language, exc)
        return None

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def supported_extensions(self) -> List[str]:
        return sorted(self._table)

    def extractor_for(self, file_path: str) -> Optional[LanguageExtractor]:
        entry = self._table.get(file_extension(file_path))
        return entry[0] if entry else None

    def language_for(self, file_path: str) -> Optional[str]:
        extractor = self.extractor_for(file_path)
        return extractor.language if extractor else None

    def supports(self, file_path: str) -> bool:
        return file_extension(file_path) in self._table

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_file(self, file_path: str, content: str) -> ExtractionResult:
        """Parse one file end-to-end.  Never raises for per-file problems.

        Args:
            file_path: Project-relative path; used for extension lookup and
                as the module node name.
            content:   Source text.
        """
        ext = file_extension(file_path)
        entry = self._table.get(ext)
        if entry is None:
            logger.debug("No parser available for file: %s", file_path)
            return ExtractionResult(
                file=file_path,
                language="unknown",
                errors=[f"No parser available for file extension: {ext or '(none)'}"],
            )

        extractor, language = entry
        logger.debug("Parsing %s with %s extractor", file_path, extractor.language)
        try:
            # Parser instances are not shared between threads.
            tree = TSParser(language).parse(content.encode("utf-8"))
            errors: List[str] = []
            if tree.root_node.has_error:
                logger.warning("Parse errors in file: %s", file_path)
                errors.append(PARSE_ERROR_MARKER)

            nodes = extractor.extract_nodes(tree, file_path)
            edges = extractor.extract_edges(tree, nodes, file_path)
            logger.debug("Extracted %d nodes, %d edges from %s", len(nodes), len(edges), file_path)
            return ExtractionResult(
                file=file_path,
                language=extractor.language,
                nodes=nodes,
                edges=edges,
                errors=errors,
            )
        except Exception as exc:  # extractor bugs must not abort the build
            logger.error("Error parsing file %s: %s", file_path, exc)
            return ExtractionResult(
                file=file_path,
                language=extractor.language,
                errors=[f"{type(exc).__name__}: {exc}"],
            )


# ===================================================================
# Shared helpers
# ===================================================================

def file_extension(file_path: str) -> str:
    return PurePosixPath(file_path.replace("\\", "/")).suffix.lower()


def node_text(node: Any) -> str:
    if node is None or node.text is None:
        return ""
    return node.text.decode("utf-8", errors="replace")


def line_span(node: Any) -> Tuple[int, int]:
    """1-based ``(start, end)`` lines of *node*."""
    return node.start_point[0] + 1, node.end_point[0] + 1


def traverse(root: Any) -> Iterator[Any]:
    """Pre-order traversal without recursion (deep trees are common)."""
    stack = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


def walk_events(root: Any) -> Iterator[Tuple[Any, bool]]:
    """Yield ``(node, True)`` on entry and ``(node, False)`` on exit."""
    stack: List[Tuple[Any, bool]] = [(root, True)]
    while stack:
        node, entering = stack.pop()
        yield node, entering
        if entering:
            stack.append((node, False))
            for child in reversed(node.children):
                stack.append((child, True))


def strip_quotes(text: str) -> str:
    for q in ('"""', "'''", '"', "'", "`"):
        if len(text) >= 2 * len(q) and text.startswith(q) and text.endswith(q):
            return text[len(q):-len(q)]
    return text


class ElementCollector:
    """Accumulate extracted elements, de-duplicated on (type, name, line)."""

    def __init__(self) -> None:
        self.elements: List[ExtractedElement] = []
        self._seen: Dict[Tuple[str, str, int], ExtractedElement] = {}

    def add(
        self,
        node_type: str,
        name: str,
        line_start: int,
        line_end: int,
        **metadata: Any,
    ) -> Optional[ExtractedElement]:
        key = (node_type, name, line_start)
        if key in self._seen:
            return None
        element = ExtractedElement(
            node_type=node_type,
            name=name,
            line_start=line_start,
            line_end=line_end,
            metadata=metadata,
        )
        self._seen[key] = element
        self.elements.append(element)
        return element
