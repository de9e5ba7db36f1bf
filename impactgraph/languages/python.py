"""Python syntax extractor (tree-sitter-python)."""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Any, List, Optional, Set, Tuple

from ..models import ExtractedEdge, ExtractedElement
from ..parser import (
    ElementCollector,
    LanguageExtractor,
    line_span,
    node_text,
    strip_quotes,
    traverse,
    walk_events,
)

logger = logging.getLogger(__name__)

_SCOPE_TYPES = ("function_definition", "class_definition")
_NESTED_SCOPES = ("function_definition", "class_definition", "lambda", "decorated_definition")


class PythonExtractor(LanguageExtractor):
    language = "python"
    extensions = (".py", ".pyw")
    grammar = ("tree_sitter_python", "language")

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def extract_nodes(self, tree: Any, file_path: str) -> List[ExtractedElement]:
        root = tree.root_node
        collector = ElementCollector()
        exported = _dunder_all(root)

        basename = PurePosixPath(file_path).name
        collector.add(
            "module", file_path, 1, root.end_point[0] + 1,
            isEntryPoint=basename in ("__main__.py", "main.py"),
            hasAll=exported is not None,
        )
        exported = exported or set()

        for node in traverse(root):
            if node.type == "function_definition":
                self._function(node, collector, exported)
            elif node.type == "class_definition":
                self._class(node, collector, exported)
            elif node.type == "import_statement":
                self._import(node, collector)
            elif node.type == "import_from_statement":
                self._from_import(node, collector)
            elif node.type == "assignment" and _is_top_level_assignment(node):
                self._assignment(node, collector, exported)

        logger.debug("Extracted %d elements from %s", len(collector.elements), file_path)
        return collector.elements

    def _function(self, node: Any, collector: ElementCollector, exported: Set[str]) -> None:
        name_node = node.child_by_field_name("name")
        if name_node is None:
            return
        name = node_text(name_node)
        start, end = line_span(node)
        class_name = _enclosing_class(node)
        metadata = {
            "async": any(c.type == "async" for c in node.children),
            "generator": _contains_yield(node.child_by_field_name("body")),
            "decorators": _decorators(node),
            "parameters": _parameters(node.child_by_field_name("parameters")),
            "isMethod": class_name is not None,
            "className": class_name,
            "exported": class_name is None and name in exported,
        }
        collector.add("function", name, start, end, **metadata)

    def _class(self, node: Any, collector: ElementCollector, exported: Set[str]) -> None:
        name_node = node.child_by_field_name("name")
        if name_node is None:
            return
        name = node_text(name_node)
        start, end = line_span(node)
        collector.add(
            "class", name, start, end,
            baseClasses=[text for text, _ in _base_classes(node)],
            decorators=_decorators(node),
            exported=name in exported,
        )

    def _import(self, node: Any, collector: ElementCollector) -> None:
        start, end = line_span(node)
        for child in node.named_children:
            if child.type == "dotted_name":
                collector.add("import", node_text(child), start, end, importType="import", alias=None)
            elif child.type == "aliased_import":
                name = child.child_by_field_name("name")
                alias = child.child_by_field_name("alias")
                if name is not None:
                    collector.add(
                        "import", node_text(name), start, end,
                        importType="import",
                        alias=node_text(alias) if alias is not None else None,
                    )

    def _from_import(self, node: Any, collector: ElementCollector) -> None:
        module_node = node.child_by_field_name("module_name")
        if module_node is None:
            return
        module = node_text(module_node)
        start, end = line_span(node)
        collector.add(
            "import", module, start, end,
            importType="from",
            importedNames=_from_imported_names(node, module_node),
            isWildcard=any(c.type == "wildcard_import" for c in node.children),
            relative=module.startswith("."),
        )

    def _assignment(self, node: Any, collector: ElementCollector, exported: Set[str]) -> None:
        left = node.child_by_field_name("left")
        if left is None or left.type != "identifier":
            return
        name = node_text(left)
        if name.startswith("__") and name.endswith("__"):
            return
        start, end = line_span(node)
        right = node.child_by_field_name("right")
        if right is not None and right.type == "lambda":
            metadata = {
                "async": False,
                "generator": False,
                "lambda": True,
                "decorators": [],
                "parameters": _parameters(right.child_by_field_name("parameters")),
                "isMethod": False,
                "className": None,
                "exported": name in exported,
            }
            collector.add("function", name, start, end, **metadata)
            return
        collector.add(
            "variable", name, start, end,
            isConstant=name == name.upper(),
            exported=name in exported,
        )

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def extract_edges(
        self,
        tree: Any,
        nodes: List[ExtractedElement],
        file_path: str,
    ) -> List[ExtractedEdge]:
        edges: List[ExtractedEdge] = []
        scopes: List[str] = []

        for node, entering in walk_events(tree.root_node):
            if node.type in _SCOPE_TYPES:
                name_node = node.child_by_field_name("name")
                if name_node is None:
                    continue
                if not entering:
                    scopes.pop()
                    continue
                name = node_text(name_node)
                if node.type == "class_definition":
                    for _text, target in _base_classes(node):
                        edges.append(ExtractedEdge(
                            source_ref=name,
                            target_ref=target,
                            edge_type="inherits",
                            metadata={"line": node.start_point[0] + 1},
                        ))
                scopes.append(name)
                continue

            if not entering:
                continue

            if node.type == "call":
                callee = _callee_name(node.child_by_field_name("function"))
                if callee:
                    edges.append(ExtractedEdge(
                        source_ref=scopes[-1] if scopes else file_path,
                        target_ref=callee,
                        edge_type="calls",
                        metadata={"line": node.start_point[0] + 1},
                    ))
            elif node.type in ("import_statement", "import_from_statement"):
                for specifier in _import_specifiers(node):
                    edges.append(ExtractedEdge(
                        source_ref=file_path,
                        target_ref=specifier,
                        edge_type="imports",
                        metadata={"line": node.start_point[0] + 1},
                    ))

        logger.debug("Extracted %d edges from %s", len(edges), file_path)
        return edges


# ===================================================================
# Helpers
# ===================================================================

def _is_top_level_assignment(node: Any) -> bool:
    parent = node.parent
    return (
        parent is not None
        and parent.type == "expression_statement"
        and parent.parent is not None
        and parent.parent.type == "module"
    )


def _dunder_all(root: Any) -> Optional[Set[str]]:
    """Names listed in a module-level ``__all__``; ``None`` when absent."""
    names: Optional[Set[str]] = None
    for stmt in root.named_children:
        if stmt.type != "expression_statement" or not stmt.named_children:
            continue
        expr = stmt.named_children[0]
        if expr.type not in ("assignment", "augmented_assignment"):
            continue
        left = expr.child_by_field_name("left")
        right = expr.child_by_field_name("right")
        if left is None or node_text(left) != "__all__" or right is None:
            continue
        if right.type not in ("list", "tuple"):
            continue
        # ``__all__ = [...]`` resets, ``__all__ += [...]`` extends.
        if names is None or expr.type == "assignment":
            names = set()
        for item in right.named_children:
            if item.type == "string":
                names.add(strip_quotes(node_text(item)))
    return names


def _enclosing_class(node: Any) -> Optional[str]:
    """Class name when *node* is defined directly in a class body."""
    parent = node.parent
    if parent is not None and parent.type == "decorated_definition":
        parent = parent.parent
    if parent is None or parent.type != "block":
        return None
    owner = parent.parent
    if owner is None or owner.type != "class_definition":
        return None
    name = owner.child_by_field_name("name")
    return node_text(name) if name is not None else None


def _decorators(node: Any) -> List[str]:
    parent = node.parent
    if parent is None or parent.type != "decorated_definition":
        return []
    return [node_text(c) for c in parent.named_children if c.type == "decorator"]


def _contains_yield(body: Any) -> bool:
    if body is None:
        return False
    stack = list(body.children)
    while stack:
        current = stack.pop()
        if current.type == "yield":
            return True
        if current.type in _NESTED_SCOPES:
            continue
        stack.extend(current.children)
    return False


def _parameters(params: Any) -> List[str]:
    if params is None:
        return []
    names: List[str] = []
    for param in params.named_children:
        name = _parameter_name(param)
        if name:
            names.append(name)
    return names


def _parameter_name(param: Any) -> Optional[str]:
    if param.type == "identifier":
        return node_text(param)
    name = param.child_by_field_name("name")
    if name is not None:
        return node_text(name)
    for child in param.named_children:
        if child.type == "identifier":
            return node_text(child)
        if child.type in ("list_splat_pattern", "dictionary_splat_pattern"):
            return _parameter_name(child)
    return None


def _base_classes(class_node: Any) -> List[Tuple[str, str]]:
    """``(declared text, target name)`` per base class; keyword args skipped."""
    supers = class_node.child_by_field_name("superclasses")
    if supers is None:
        return []
    bases: List[Tuple[str, str]] = []
    for arg in supers.named_children:
        target = _rightmost_name(arg)
        if target:
            bases.append((node_text(arg), target))
    return bases


def _rightmost_name(expr: Any) -> Optional[str]:
    if expr is None:
        return None
    if expr.type == "identifier":
        return node_text(expr)
    if expr.type == "attribute":
        attr = expr.child_by_field_name("attribute")
        return node_text(attr) if attr is not None else None
    if expr.type in ("subscript", "generic_type"):
        return _rightmost_name(expr.child_by_field_name("value") or expr.named_children[0])
    return None


def _callee_name(func: Any) -> Optional[str]:
    """Callee of a call; attribute calls keep only the rightmost name."""
    if func is None:
        return None
    if func.type in ("identifier", "attribute"):
        return _rightmost_name(func)
    if func.type == "call":
        return _callee_name(func.child_by_field_name("function"))
    return None


def _from_imported_names(stmt: Any, module_node: Any) -> List[str]:
    names: List[str] = []
    for child in stmt.named_children:
        if child == module_node:
            continue
        if child.type == "dotted_name":
            names.append(node_text(child))
        elif child.type == "aliased_import":
            name = child.child_by_field_name("name")
            if name is not None:
                names.append(node_text(name))
    return names


def _import_specifiers(stmt: Any) -> List[str]:
    """Module specifiers an import statement depends on."""
    if stmt.type == "import_statement":
        specs: List[str] = []
        for child in stmt.named_children:
            if child.type == "dotted_name":
                specs.append(node_text(child))
            elif child.type == "aliased_import":
                name = child.child_by_field_name("name")
                if name is not None:
                    specs.append(node_text(name))
        return specs

    module_node = stmt.child_by_field_name("module_name")
    if module_node is None:
        return []
    module = node_text(module_node)
    # ``from . import a, b`` depends on the sibling modules themselves.
    if module and set(module) == {"."}:
        return [module + name for name in _from_imported_names(stmt, module_node)] or [module]
    return [module]
