"""JavaScript / TypeScript syntax extractor.

One extractor class serves three grammars (JavaScript, TypeScript, TSX); the
node shapes that matter here are shared, with TypeScript adding interfaces
and ``implements`` clauses.
"""

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

_FUNCTION_DECLS = ("function_declaration", "generator_function_declaration")
_FUNCTION_VALUES = ("arrow_function", "function_expression", "function", "generator_function")
_CLASS_DECLS = ("class_declaration", "abstract_class_declaration", "class")
_VARIABLE_DECLS = ("lexical_declaration", "variable_declaration")
_SCOPE_BOUNDARIES = ("statement_block", "program")


class JavaScriptExtractor(LanguageExtractor):
    language = "javascript"
    extensions = (".js", ".jsx", ".mjs", ".cjs")
    grammar = ("tree_sitter_javascript", "language")

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def extract_nodes(self, tree: Any, file_path: str) -> List[ExtractedElement]:
        root = tree.root_node
        collector = ElementCollector()
        stem = PurePosixPath(file_path).stem
        collector.add(
            "module", file_path, 1, root.end_point[0] + 1,
            isEntryPoint=stem in ("index", "main"),
        )

        clause_exports: Set[str] = set()
        for node in traverse(root):
            kind = node.type
            if kind in _FUNCTION_DECLS:
                self._function_declaration(node, collector)
            elif kind == "method_definition":
                self._method(node, collector)
            elif kind == "variable_declarator":
                self._declarator(node, collector)
            elif kind in _CLASS_DECLS or kind == "interface_declaration":
                self._class(node, collector)
            elif kind == "import_statement":
                self._import(node, collector)
            elif kind == "call_expression":
                self._require(node, collector)
            elif kind == "export_statement":
                clause_exports.update(self._export(node, collector))

        # ``export { helper }`` exports a declaration made elsewhere in the file.
        if clause_exports:
            for element in collector.elements:
                if element.node_type in ("function", "class", "variable") and element.name in clause_exports:
                    element.metadata["exported"] = True

        logger.debug("Extracted %d elements from %s", len(collector.elements), file_path)
        return collector.elements

    def _function_declaration(self, node: Any, collector: ElementCollector) -> None:
        name_node = node.child_by_field_name("name")
        if name_node is None:
            return
        start, end = line_span(node)
        metadata = {
            "async": _has_token(node, "async"),
            "generator": node.type == "generator_function_declaration" or _has_token(node, "*"),
            "exported": _is_exported(node),
        }
        collector.add("function", node_text(name_node), start, end, **metadata)

    def _method(self, node: Any, collector: ElementCollector) -> None:
        name_node = node.child_by_field_name("name")
        if name_node is None:
            return
        start, end = line_span(node)
        metadata = {
            "async": _has_token(node, "async"),
            "generator": _has_token(node, "*"),
            "static": _has_token(node, "static"),
            "isMethod": True,
            "className": _owning_class_name(node),
            "exported": _is_exported(node),
        }
        collector.add("function", node_text(name_node), start, end, **metadata)

    def _declarator(self, node: Any, collector: ElementCollector) -> None:
        name_node = node.child_by_field_name("name")
        value = node.child_by_field_name("value")
        if name_node is None or name_node.type != "identifier":
            return
        name = node_text(name_node)
        start, end = line_span(node)

        if value is not None and value.type in _FUNCTION_VALUES:
            metadata = {
                "arrowFunction": value.type == "arrow_function",
                "async": _has_token(value, "async"),
                "generator": value.type == "generator_function" or _has_token(value, "*"),
                "exported": _is_exported(node),
            }
            collector.add("function", name, start, end, **metadata)
            return

        declaration = node.parent
        if declaration is None or not _is_top_level(declaration):
            return
        if value is not None and _require_specifier(value) is not None:
            return
        kind = declaration.children[0].type if declaration.children else None
        collector.add("variable", name, start, end, kind=kind, exported=_is_exported(node))

    def _class(self, node: Any, collector: ElementCollector) -> None:
        name_node = node.child_by_field_name("name")
        if name_node is None:
            return
        supers, implements = _heritage(node)
        start, end = line_span(node)
        metadata = {
            "superclass": supers[0][0] if supers else None,
            "implements": [text for text, _ in implements],
            "interface": node.type == "interface_declaration",
            "abstract": node.type == "abstract_class_declaration",
            "exported": _is_exported(node),
        }
        collector.add("class", node_text(name_node), start, end, **metadata)

    def _import(self, node: Any, collector: ElementCollector) -> None:
        source = node.child_by_field_name("source")
        if source is None:
            return
        names: List[str] = []
        is_default = False
        is_namespace = False
        for clause in node.named_children:
            if clause.type != "import_clause":
                continue
            for part in clause.named_children:
                if part.type == "identifier":
                    is_default = True
                    names.append(node_text(part))
                elif part.type == "namespace_import":
                    is_namespace = True
                    names.extend(node_text(c) for c in part.named_children if c.type == "identifier")
                elif part.type == "named_imports":
                    for spec in part.named_children:
                        if spec.type == "import_specifier":
                            spec_name = spec.child_by_field_name("name")
                            if spec_name is not None:
                                names.append(node_text(spec_name))
        start, end = line_span(node)
        collector.add(
            "import", strip_quotes(node_text(source)), start, end,
            importedNames=names,
            isDefault=is_default,
            isNamespace=is_namespace,
            commonjs=False,
        )

    def _require(self, node: Any, collector: ElementCollector) -> None:
        specifier = _require_specifier(node)
        if specifier is None:
            return
        names: List[str] = []
        parent = node.parent
        if parent is not None and parent.type == "variable_declarator":
            target = parent.child_by_field_name("name")
            if target is not None and target.type == "identifier":
                names.append(node_text(target))
            elif target is not None:
                names.extend(
                    node_text(n) for n in traverse(target)
                    if n.type in ("identifier", "shorthand_property_identifier_pattern")
                )
        start, end = line_span(node)
        collector.add(
            "import", specifier, start, end,
            importedNames=names,
            isDefault=False,
            isNamespace=False,
            commonjs=True,
        )

    def _export(self, node: Any, collector: ElementCollector) -> List[str]:
        """Emit export nodes; return names exported through a clause."""
        start, end = line_span(node)
        is_default = _has_token(node, "default")
        clause_names: List[str] = []

        declaration = node.child_by_field_name("declaration")
        if declaration is not None:
            for name in _declared_names(declaration):
                collector.add("export", name, start, end, isDefault=is_default)
            return clause_names

        value = node.child_by_field_name("value")
        if value is not None and value.type == "identifier":
            name = node_text(value)
            collector.add("export", name, start, end, isDefault=True)
            clause_names.append(name)
            return clause_names

        reexport = node.child_by_field_name("source") is not None
        for clause in node.named_children:
            if clause.type != "export_clause":
                continue
            for spec in clause.named_children:
                if spec.type != "export_specifier":
                    continue
                local = spec.child_by_field_name("name")
                alias = spec.child_by_field_name("alias")
                if local is None:
                    continue
                exported_as = node_text(alias) if alias is not None else node_text(local)
                collector.add("export", exported_as, start, end, isDefault=False, reexport=reexport)
                if not reexport:
                    clause_names.append(node_text(local))
        return clause_names

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
        scopes: List[Tuple[Any, str]] = []

        for node, entering in walk_events(tree.root_node):
            scope_name = _scope_name(node)
            if scope_name is not None:
                if entering:
                    scopes.append((node, scope_name))
                    if node.type in _CLASS_DECLS or node.type == "interface_declaration":
                        edges.extend(_heritage_edges(node, scope_name))
                elif scopes and scopes[-1][0] == node:
                    scopes.pop()
                continue

            if not entering:
                continue
            line = node.start_point[0] + 1
            current = scopes[-1][1] if scopes else file_path

            if node.type == "call_expression":
                specifier = _require_specifier(node)
                if specifier is not None:
                    edges.append(ExtractedEdge(file_path, specifier, "imports", {"line": line}))
                    continue
                callee = _callee_name(node.child_by_field_name("function"))
                if callee:
                    edges.append(ExtractedEdge(current, callee, "calls", {"line": line}))
            elif node.type == "new_expression":
                callee = _callee_name(node.child_by_field_name("constructor"))
                if callee:
                    edges.append(ExtractedEdge(current, callee, "calls", {"line": line, "constructor": True}))
            elif node.type in ("import_statement", "export_statement"):
                source = node.child_by_field_name("source")
                if source is not None:
                    edges.append(ExtractedEdge(
                        file_path, strip_quotes(node_text(source)), "imports", {"line": line},
                    ))

        logger.debug("Extracted %d edges from %s", len(edges), file_path)
        return edges


class TypeScriptExtractor(JavaScriptExtractor):
    language = "typescript"
    extensions = (".ts",)
    grammar = ("tree_sitter_typescript", "language_typescript")


class TSXExtractor(JavaScriptExtractor):
    language = "tsx"
    extensions = (".tsx",)
    grammar = ("tree_sitter_typescript", "language_tsx")


# ===================================================================
# Helpers
# ===================================================================

def _has_token(node: Any, token: str) -> bool:
    return any(c.type == token for c in node.children)


def _is_exported(node: Any) -> bool:
    """True when *node* sits under an ``export`` without crossing a body."""
    current = node.parent
    while current is not None:
        if current.type == "export_statement":
            return True
        if current.type in _SCOPE_BOUNDARIES:
            return False
        current = current.parent
    return False


def _is_top_level(declaration: Any) -> bool:
    parent = declaration.parent
    if parent is not None and parent.type == "export_statement":
        parent = parent.parent
    return parent is not None and parent.type == "program"


def _owning_class_name(method: Any) -> Optional[str]:
    body = method.parent
    owner = body.parent if body is not None else None
    if owner is None or owner.type not in _CLASS_DECLS:
        return None
    name = owner.child_by_field_name("name")
    return node_text(name) if name is not None else None


def _declared_names(declaration: Any) -> List[str]:
    if declaration.type in _VARIABLE_DECLS:
        names = []
        for child in declaration.named_children:
            if child.type == "variable_declarator":
                name = child.child_by_field_name("name")
                if name is not None and name.type == "identifier":
                    names.append(node_text(name))
        return names
    name = declaration.child_by_field_name("name")
    return [node_text(name)] if name is not None else []


def _rightmost_name(expr: Any) -> Optional[str]:
    if expr is None:
        return None
    if expr.type in ("identifier", "type_identifier", "property_identifier"):
        return node_text(expr)
    if expr.type == "member_expression":
        return _rightmost_name(expr.child_by_field_name("property"))
    if expr.type == "nested_type_identifier":
        return _rightmost_name(expr.child_by_field_name("name"))
    if expr.type == "generic_type":
        return _rightmost_name(expr.child_by_field_name("name") or expr.named_children[0])
    return None


def _callee_name(func: Any) -> Optional[str]:
    """Callee of a call; member calls keep only the rightmost property."""
    if func is None:
        return None
    if func.type == "call_expression":
        return _callee_name(func.child_by_field_name("function"))
    if func.type == "parenthesized_expression" and func.named_children:
        return _callee_name(func.named_children[0])
    return _rightmost_name(func)


def _require_specifier(node: Any) -> Optional[str]:
    """Module specifier of ``require("x")`` or ``import("x")``, else None."""
    if node.type != "call_expression":
        return None
    func = node.child_by_field_name("function")
    if func is None or not (
        (func.type == "identifier" and node_text(func) == "require") or func.type == "import"
    ):
        return None
    args = node.child_by_field_name("arguments")
    if args is None or not args.named_children:
        return None
    first = args.named_children[0]
    if first.type != "string":
        return None
    return strip_quotes(node_text(first))


def _scope_name(node: Any) -> Optional[str]:
    kind = node.type
    if kind in _FUNCTION_DECLS or kind == "method_definition" or kind in _CLASS_DECLS \
            or kind == "interface_declaration":
        name = node.child_by_field_name("name")
        return node_text(name) if name is not None else None
    if kind == "variable_declarator":
        value = node.child_by_field_name("value")
        name = node.child_by_field_name("name")
        if value is not None and value.type in _FUNCTION_VALUES and name is not None \
                and name.type == "identifier":
            return node_text(name)
    return None


def _heritage(node: Any) -> Tuple[List[Tuple[str, str]], List[Tuple[str, str]]]:
    """``(extends, implements)`` as ``(declared text, target name)`` pairs."""
    supers: List[Tuple[str, str]] = []
    implements: List[Tuple[str, str]] = []

    def _add(target: List[Tuple[str, str]], expr: Any) -> None:
        name = _rightmost_name(expr)
        if name:
            target.append((node_text(expr), name))

    for child in node.children:
        if child.type == "class_heritage":
            for clause in child.named_children:
                if clause.type == "extends_clause":
                    value = clause.child_by_field_name("value")
                    _add(supers, value if value is not None else clause.named_children[0])
                elif clause.type == "implements_clause":
                    for item in clause.named_children:
                        _add(implements, item)
                else:
                    _add(supers, clause)
        elif child.type == "extends_type_clause":
            for item in child.named_children:
                _add(supers, item)
    return supers, implements


def _heritage_edges(node: Any, class_name: str) -> List[ExtractedEdge]:
    supers, implements = _heritage(node)
    line = node.start_point[0] + 1
    edges = [
        ExtractedEdge(class_name, target, "inherits", {"line": line})
        for _text, target in supers
    ]
    edges.extend(
        ExtractedEdge(class_name, target, "implements", {"line": line})
        for _text, target in implements
    )
    return edges
