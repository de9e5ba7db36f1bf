"""Pytest configuration and fixtures for impactgraph tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Callable, Dict, Generator

import pytest

from impactgraph.builder import BuildOptions, GraphBuilder
from impactgraph.parser import ParserDispatcher
from impactgraph.storage import GraphStore


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture(autouse=True)
def isolated_home(temp_dir: Path, monkeypatch) -> Path:
    """Point the database and config file at a per-test directory."""
    home = temp_dir / "home"
    monkeypatch.setattr("impactgraph.config.BASE_DIR", home)
    monkeypatch.setattr("impactgraph.config.DB_PATH", home / "graph.db")
    monkeypatch.setattr("impactgraph.config.CONFIG_FILE", home / "config.toml")
    # Keep CLI output free of INFO log lines.
    monkeypatch.setenv("IMPACTGRAPH_LOG_LEVEL", "WARNING")
    return home


@pytest.fixture(scope="session")
def dispatcher() -> ParserDispatcher:
    return ParserDispatcher()


@pytest.fixture
def store(temp_dir: Path) -> Generator[GraphStore, None, None]:
    """GraphStore backed by a temporary SQLite file."""
    graph_store = GraphStore(temp_dir / "test.db")
    yield graph_store
    graph_store.close()


@pytest.fixture
def builder(store: GraphStore, dispatcher: ParserDispatcher) -> GraphBuilder:
    return GraphBuilder(store, dispatcher, max_workers=2)


@pytest.fixture
def write_project(temp_dir: Path) -> Callable[[Dict[str, str]], Path]:
    """Return a factory that writes ``{relative path: source}`` to disk."""

    def _write(files: Dict[str, str], name: str = "project") -> Path:
        root = temp_dir / name
        for rel, content in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        root.mkdir(parents=True, exist_ok=True)
        return root

    return _write


@pytest.fixture
def build_options() -> Callable[..., BuildOptions]:
    def _options(project: Path, analysis_id: str = "test-analysis", **kwargs) -> BuildOptions:
        return BuildOptions(analysis_id=analysis_id, project_path=project, **kwargs)

    return _options


@pytest.fixture
def sample_project_path() -> Path:
    """Get path to the mixed Python/JS sample project."""
    return Path(__file__).parent / "fixtures" / "sample_project"


# Two-file JavaScript project: a.js imports b.js and foo() calls bar().
SCENARIO_A = {
    "a.js": "import { bar } from './b.js';\n\nfunction foo() {\n  bar();\n}\n",
    "b.js": "function bar() {}\n",
}


@pytest.fixture
def scenario_a() -> Dict[str, str]:
    return dict(SCENARIO_A)


@pytest.fixture
def sample_python_code() -> str:
    """Sample Python code for testing the extractor."""
    return '''"""Sample module for testing."""

import os
import os.path as osp
from typing import List
from .helpers import slugify, titleize

__all__ = ["hello", "Calculator", "MAX_SIZE"]

MAX_SIZE = 100
counter = 0
square = lambda x: x * x


def hello(name: str) -> str:
    """Say hello."""
    return slugify(name)


async def fetch(url, timeout=5):
    return await os.get(url)


def numbers():
    yield 1


@staticmethod
def decorated():
    pass


class Base:
    pass


class Calculator(Base):
    """Simple calculator."""

    def add(self, a: int, b: int) -> int:
        return a + b

    def multiply(self, a: int, b: int) -> int:
        result = self.add(a, 0)
        return result


if __name__ == "__main__":
    hello("world")
'''
