"""Tests for the parser dispatcher and the per-language extractors."""

import logging
from typing import Any, List

import pytest

from impactgraph.languages import PythonExtractor
from impactgraph.models import ExtractedEdge, ExtractedElement
from impactgraph.parser import PARSE_ERROR_MARKER, ElementCollector, ParserDispatcher


def _named(result, node_type: str, name: str) -> ExtractedElement:
    matches = [n for n in result.nodes if n.node_type == node_type and n.name == name]
    assert len(matches) == 1, f"expected one {node_type} named {name}, got {len(matches)}"
    return matches[0]


def _edge_pairs(result, edge_type: str):
    return {(e.source_ref, e.target_ref) for e in result.edges if e.edge_type == edge_type}


# ===================================================================
# Dispatcher
# ===================================================================

class TestDispatcher:
    """Extension lookup and the per-file error contract."""

    def test_supported_extensions(self, dispatcher: ParserDispatcher):
        exts = dispatcher.supported_extensions()
        for ext in (".py", ".js", ".jsx", ".mjs", ".ts", ".tsx"):
            assert ext in exts
        assert dispatcher.language_for("src/app.ts") == "typescript"
        assert dispatcher.language_for("App.TSX") == "tsx"
        assert dispatcher.supports("README.md") is False

    def test_unknown_extension_is_skip_not_failure(self, dispatcher: ParserDispatcher):
        result = dispatcher.parse_file("notes/readme.rb", "puts 'hi'")

        assert result.language == "unknown"
        assert result.skipped
        assert result.nodes == [] and result.edges == []
        assert result.errors == ["No parser available for file extension: .rb"]

    def test_syntax_error_keeps_partial_nodes(self, dispatcher: ParserDispatcher):
        source = "def broken(:\n    pass\n\n\ndef fine():\n    return 1\n"
        result = dispatcher.parse_file("broken.py", source)

        assert PARSE_ERROR_MARKER in result.errors
        assert not result.ok
        assert any(n.node_type == "module" for n in result.nodes)

    def test_extractor_exception_becomes_error(self):
        class ExplodingExtractor(PythonExtractor):
            def extract_nodes(self, tree: Any, file_path: str) -> List[ExtractedElement]:
                raise RuntimeError("boom")

        result = ParserDispatcher([ExplodingExtractor()]).parse_file("x.py", "x = 1\n")

        assert result.language == "python"
        assert result.errors == ["RuntimeError: boom"]
        assert result.nodes == [] and result.edges == []

    def test_missing_grammar_is_skipped(self, caplog):
        class GhostExtractor(PythonExtractor):
            language = "ghost"
            extensions = (".ghost",)
            grammar = ("tree_sitter_ghost_does_not_exist", "language")

        with caplog.at_level(logging.WARNING):
            dispatcher = ParserDispatcher([GhostExtractor(), PythonExtractor()])

        assert dispatcher.supports("a.ghost") is False
        assert dispatcher.supports("a.py") is True
        assert "not installed" in caplog.text

    def test_table_is_read_only(self, dispatcher: ParserDispatcher):
        with pytest.raises(TypeError):
            dispatcher._table[".rb"] = None  # type: ignore[index]


def test_element_collector_dedups_on_type_name_line():
    collector = ElementCollector()
    first = collector.add("function", "f", 3, 5, exported=False)
    again = collector.add("function", "f", 3, 9)
    other_line = collector.add("function", "f", 7, 8)

    assert first is not None and other_line is not None
    assert again is None
    assert [e.line_start for e in collector.elements] == [3, 7]


# ===================================================================
# Python
# ===================================================================

class TestPythonExtractor:

    @pytest.fixture
    def result(self, dispatcher: ParserDispatcher, sample_python_code: str):
        return dispatcher.parse_file("pkg/sample.py", sample_python_code)

    def test_parses_cleanly(self, result):
        assert result.ok
        assert result.language == "python"

    def test_module_node(self, result):
        module = _named(result, "module", "pkg/sample.py")
        assert module.line_start == 1
        assert module.metadata["hasAll"] is True
        assert module.metadata["isEntryPoint"] is False

    def test_entry_point_heuristic(self, dispatcher: ParserDispatcher):
        for path in ("main.py", "tool/__main__.py"):
            result = dispatcher.parse_file(path, "pass\n")
            assert _named(result, "module", path).metadata["isEntryPoint"] is True

    def test_functions(self, result):
        hello = _named(result, "function", "hello")
        assert hello.metadata["exported"] is True
        assert hello.metadata["parameters"] == ["name"]
        assert hello.metadata["isMethod"] is False

        fetch = _named(result, "function", "fetch")
        assert fetch.metadata["async"] is True
        assert fetch.metadata["parameters"] == ["url", "timeout"]
        assert fetch.metadata["exported"] is False

        assert _named(result, "function", "numbers").metadata["generator"] is True
        assert _named(result, "function", "decorated").metadata["decorators"] == ["@staticmethod"]

    def test_methods(self, result):
        add = _named(result, "function", "add")
        assert add.metadata["isMethod"] is True
        assert add.metadata["className"] == "Calculator"
        assert add.metadata["parameters"] == ["self", "a", "b"]
        assert add.metadata["exported"] is False

    def test_lambda_assignment_is_function(self, result):
        square = _named(result, "function", "square")
        assert square.metadata["lambda"] is True
        assert not [n for n in result.nodes if n.node_type == "variable" and n.name == "square"]

    def test_classes(self, result):
        calc = _named(result, "class", "Calculator")
        assert calc.metadata["baseClasses"] == ["Base"]
        assert calc.metadata["exported"] is True
        assert _named(result, "class", "Base").metadata["exported"] is False

    def test_variables(self, result):
        max_size = _named(result, "variable", "MAX_SIZE")
        assert max_size.metadata["isConstant"] is True
        assert max_size.metadata["exported"] is True
        assert _named(result, "variable", "counter").metadata["isConstant"] is False
        assert not [n for n in result.nodes if n.name == "__all__"]

    def test_imports(self, result):
        assert _named(result, "import", "os").metadata["importType"] == "import"
        assert _named(result, "import", "os.path").metadata["alias"] == "osp"

        helpers = _named(result, "import", ".helpers")
        assert helpers.metadata["importType"] == "from"
        assert helpers.metadata["relative"] is True
        assert helpers.metadata["importedNames"] == ["slugify", "titleize"]
        assert _named(result, "import", "typing").metadata["relative"] is False

    def test_edges(self, result):
        assert _edge_pairs(result, "inherits") == {("Calculator", "Base")}

        calls = _edge_pairs(result, "calls")
        assert ("hello", "slugify") in calls
        assert ("fetch", "get") in calls
        assert ("multiply", "add") in calls
        # module-level calls are attributed to the module
        assert ("pkg/sample.py", "hello") in calls

        imports = _edge_pairs(result, "imports")
        assert imports == {
            ("pkg/sample.py", "os"),
            ("pkg/sample.py", "os.path"),
            ("pkg/sample.py", "typing"),
            ("pkg/sample.py", ".helpers"),
        }

    def test_from_dot_import_targets_sibling_modules(self, dispatcher: ParserDispatcher):
        result = dispatcher.parse_file("pkg/__init__.py", "from . import alpha, beta\n")
        assert _edge_pairs(result, "imports") == {
            ("pkg/__init__.py", ".alpha"),
            ("pkg/__init__.py", ".beta"),
        }

    def test_dunder_all_augmented(self, dispatcher: ParserDispatcher):
        source = '__all__ = ["a"]\n__all__ += ["b"]\n\ndef a():\n    pass\n\ndef b():\n    pass\n\ndef c():\n    pass\n'
        result = dispatcher.parse_file("m.py", source)
        exported = {n.name for n in result.nodes if n.node_type == "function" and n.metadata["exported"]}
        assert exported == {"a", "b"}

    def test_edges_are_symbolic(self, result):
        assert all(isinstance(e, ExtractedEdge) for e in result.edges)
        assert all(isinstance(e.target_ref, str) for e in result.edges)


# ===================================================================
# JavaScript / TypeScript
# ===================================================================

JS_SOURCE = """import React, { useState } from 'react';
import * as path from 'path';
const fs = require('fs');

export function loadUser(id) {
  return fetchUser(id);
}

async function* stream() {}

export const handler = async (event) => {
  await loadUser(event.id);
};

const VERSION = '1.0';

class Animal {}

export class Dog extends Animal {
  static create() {
    return new Dog();
  }

  bark() {
    this.speak();
  }
}

function helper() {}

export { helper };
"""

TS_SOURCE = """interface Shape {
  area(): number;
}

abstract class Base {}

export class Square extends Base implements Shape {
  area(): number {
    return 1;
  }
}
"""


class TestJavaScriptExtractor:

    @pytest.fixture
    def result(self, dispatcher: ParserDispatcher):
        return dispatcher.parse_file("src/index.js", JS_SOURCE)

    def test_parses_cleanly(self, result):
        assert result.ok
        assert result.language == "javascript"

    def test_module_node(self, result):
        assert _named(result, "module", "src/index.js").metadata["isEntryPoint"] is True

    def test_imports(self, result):
        react = _named(result, "import", "react")
        assert react.metadata["isDefault"] is True
        assert react.metadata["importedNames"] == ["React", "useState"]

        path = _named(result, "import", "path")
        assert path.metadata["isNamespace"] is True

        fs = _named(result, "import", "fs")
        assert fs.metadata["commonjs"] is True
        assert fs.metadata["importedNames"] == ["fs"]
        # require() bindings are imports, not variables
        assert not [n for n in result.nodes if n.node_type == "variable" and n.name == "fs"]

    def test_functions(self, result):
        assert _named(result, "function", "loadUser").metadata["exported"] is True

        stream = _named(result, "function", "stream")
        assert stream.metadata["async"] is True
        assert stream.metadata["generator"] is True

        handler = _named(result, "function", "handler")
        assert handler.metadata["arrowFunction"] is True
        assert handler.metadata["async"] is True
        assert handler.metadata["exported"] is True

    def test_methods(self, result):
        create = _named(result, "function", "create")
        assert create.metadata["static"] is True
        assert create.metadata["isMethod"] is True
        assert create.metadata["className"] == "Dog"
        assert _named(result, "function", "bark").metadata["static"] is False

    def test_classes_and_variables(self, result):
        dog = _named(result, "class", "Dog")
        assert dog.metadata["superclass"] == "Animal"
        assert dog.metadata["exported"] is True
        assert _named(result, "class", "Animal").metadata["exported"] is False

        version = _named(result, "variable", "VERSION")
        assert version.metadata["kind"] == "const"
        assert version.metadata["exported"] is False

    def test_exports(self, result):
        exported = {n.name for n in result.nodes if n.node_type == "export"}
        assert {"loadUser", "handler", "Dog", "helper"} <= exported
        # ``export { helper }`` marks the declaration itself
        assert _named(result, "function", "helper").metadata["exported"] is True

    def test_edges(self, result):
        calls = _edge_pairs(result, "calls")
        assert ("loadUser", "fetchUser") in calls
        assert ("handler", "loadUser") in calls
        assert ("create", "Dog") in calls
        assert ("bark", "speak") in calls

        constructor_calls = [e for e in result.edges if e.metadata.get("constructor")]
        assert [(e.source_ref, e.target_ref) for e in constructor_calls] == [("create", "Dog")]

        assert _edge_pairs(result, "inherits") == {("Dog", "Animal")}
        assert _edge_pairs(result, "imports") == {
            ("src/index.js", "react"),
            ("src/index.js", "path"),
            ("src/index.js", "fs"),
        }


class TestTypeScriptExtractor:

    @pytest.fixture
    def result(self, dispatcher: ParserDispatcher):
        return dispatcher.parse_file("shapes.ts", TS_SOURCE)

    def test_interfaces_and_abstract_classes(self, result):
        assert result.ok
        assert result.language == "typescript"
        assert _named(result, "class", "Shape").metadata["interface"] is True
        assert _named(result, "class", "Base").metadata["abstract"] is True

        square = _named(result, "class", "Square")
        assert square.metadata["superclass"] == "Base"
        assert square.metadata["implements"] == ["Shape"]

    def test_heritage_edges(self, result):
        assert _edge_pairs(result, "inherits") == {("Square", "Base")}
        assert _edge_pairs(result, "implements") == {("Square", "Shape")}

    def test_tsx_uses_tsx_grammar(self, dispatcher: ParserDispatcher):
        source = "export function App() {\n  return <div>{render()}</div>;\n}\n"
        result = dispatcher.parse_file("App.tsx", source)

        assert result.ok
        assert result.language == "tsx"
        assert ("App", "render") in _edge_pairs(result, "calls")
