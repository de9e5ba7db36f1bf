"""Typer-based CLI for impactgraph."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, NoReturn, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__, config
from .config_manager import (
    GraphSettings,
    load_graph_config,
    parse_setting,
    reset_graph_config,
    save_graph_config,
    settings_as_dict,
)
from .errors import ConfigError, ImpactGraphError
from .graph_export import export_dot, export_json
from .models import CodeGraph, GraphNode
from .orchestrator import GraphOrchestrator
from .storage import FindingStore, GraphStore, load_findings_file

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    help="Knowledge graph and change-impact analysis for JS/TS and Python projects.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

findings_app = typer.Typer(help="Security findings attached to an analysis.", no_args_is_help=True)
config_app = typer.Typer(help="Show and edit [graph] settings.", no_args_is_help=True)
app.add_typer(findings_app, name="findings")
app.add_typer(config_app, name="config")


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"impactgraph v{__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    try:
        configured: Optional[str] = load_graph_config().log_level
    except ConfigError:
        configured = None
    level = "DEBUG" if verbose else config.log_level(configured)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
):
    """impactgraph: build a code knowledge graph and ask what a change touches."""
    _configure_logging(verbose)


# ===================================================================
# Helpers
# ===================================================================

def _fail(message: str) -> NoReturn:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


@contextmanager
def _open_store() -> Iterator[GraphStore]:
    store = GraphStore()
    try:
        yield store
    except ImpactGraphError as exc:
        _fail(str(exc))
    finally:
        store.close()


def _settings() -> GraphSettings:
    try:
        return load_graph_config()
    except ConfigError as exc:
        _fail(str(exc))


def _print_stats(graph: CodeGraph) -> None:
    nodes = Table(title="Nodes by type")
    nodes.add_column("Type")
    nodes.add_column("Count", justify="right")
    for node_type, count in graph.stats.nodes_by_type.items():
        nodes.add_row(node_type, str(count))

    edges = Table(title="Edges by type")
    edges.add_column("Type")
    edges.add_column("Count", justify="right")
    for edge_type, count in graph.stats.edges_by_type.items():
        edges.add_row(edge_type, str(count))

    console.print(nodes)
    console.print(edges)


def _location(node: GraphNode) -> str:
    if not node.file:
        return "(external)"
    return f"{node.file}:{node.line_start}" if node.line_start else node.file


# ===================================================================
# Graph commands
# ===================================================================

@app.command("build")
def build(
    project_path: Path = typer.Argument(..., exists=True, file_okay=False, help="Path to source project."),
    analysis_id: Optional[str] = typer.Option(
        None, "--id", help="Analysis ID (defaults to the project directory name)."
    ),
    exclude: Optional[List[str]] = typer.Option(
        None, "--exclude", "-e", help="Extra exclude pattern; repeatable."
    ),
    include: Optional[List[str]] = typer.Option(
        None, "--include", "-i", help="Only admit files matching this glob; repeatable."
    ),
    max_files: Optional[int] = typer.Option(None, min=1, help="Stop walking after N files."),
    max_file_size: Optional[int] = typer.Option(None, min=1, help="Skip files larger than B bytes."),
    workers: Optional[int] = typer.Option(None, min=1, help="Parser worker threads."),
):
    """Parse a project and (re)build its knowledge graph."""
    settings = _settings()
    if workers:
        settings.workers = workers

    with _open_store() as store:
        orchestrator = GraphOrchestrator(store, settings)
        report = orchestrator.build_graph(
            project_path,
            analysis_id=analysis_id,
            include=include,
            exclude=exclude,
            max_file_size=max_file_size,
            max_files=max_files,
        )

    typer.echo(
        f"Built graph '{report.analysis_id}' from {report.files_parsed} files "
        f"in {report.duration_ms}ms."
    )
    typer.echo(f"Nodes: {report.graph.stats.total_nodes} | Edges: {report.graph.stats.total_edges}")
    if report.placeholders_created or report.edges_dropped:
        typer.echo(
            f"External placeholders: {report.placeholders_created} | "
            f"Dropped edges: {report.edges_dropped}"
        )
    if report.discovery.skipped_large:
        typer.echo(f"Skipped {len(report.discovery.skipped_large)} oversized files.")
    for warning in report.discovery.warnings:
        typer.echo(f"Warning: {warning}", err=True)
    if report.files_with_errors:
        typer.echo(f"{report.files_with_errors} files had parse errors:", err=True)
        for file, errors in sorted(report.parse_errors.items()):
            typer.echo(f"  {file}: {'; '.join(errors)}", err=True)
    _print_stats(report.graph)


@app.command("stats")
def stats(analysis_id: str = typer.Argument(..., help="Analysis ID.")):
    """Show node and edge counts for an analysis."""
    with _open_store() as store:
        graph = GraphOrchestrator(store, _settings()).get_graph(analysis_id)
    typer.echo(f"Analysis '{analysis_id}': {graph.stats.total_nodes} nodes, {graph.stats.total_edges} edges")
    _print_stats(graph)


@app.command("impact")
def impact(
    analysis_id: str = typer.Argument(..., help="Analysis ID."),
    target_file: str = typer.Argument(..., help="Project-relative file path."),
    function: Optional[str] = typer.Option(None, "--function", "-f", help="Limit to one function."),
    depth: int = typer.Option(config.DEFAULT_MAX_DEPTH, min=1, max=20, help="Maximum hops."),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON."),
):
    """Show which files depend on FILE, directly and transitively."""
    with _open_store() as store:
        result = GraphOrchestrator(store, _settings()).analyze_impact(
            analysis_id, target_file, function, max_depth=depth
        )

    if as_json:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return

    target = f"{target_file}::{function}" if function else target_file
    typer.echo(f"Target: {target}")
    typer.echo(f"Impact score: {result.impact_score}/100")
    typer.echo("Direct dependents:")
    for file in result.direct_dependents or ["(none)"]:
        typer.echo(f"- {file}")
    typer.echo("Transitive dependents:")
    for file in result.transitive_dependents or ["(none)"]:
        typer.echo(f"- {file}")

    if result.vulnerability_propagation:
        table = Table(title="Vulnerability propagation")
        table.add_column("Severity")
        table.add_column("Finding")
        table.add_column("Path")
        for item in result.vulnerability_propagation:
            table.add_row(item.severity, item.finding, " -> ".join(item.propagation_path))
        console.print(table)


@app.command("dead-code")
def dead_code(analysis_id: str = typer.Argument(..., help="Analysis ID.")):
    """List unexported declarations nothing refers to."""
    with _open_store() as store:
        nodes = GraphOrchestrator(store, _settings()).find_dead_code(analysis_id)

    if not nodes:
        typer.echo("No dead code candidates found.")
        raise typer.Exit(code=0)

    table = Table(title=f"Dead code candidates ({len(nodes)})")
    table.add_column("Type")
    table.add_column("Name")
    table.add_column("Location")
    for node in nodes:
        table.add_row(node.node_type, node.name, _location(node))
    console.print(table)


@app.command("chain")
def chain(
    analysis_id: str = typer.Argument(..., help="Analysis ID."),
    node: str = typer.Argument(..., help="Node ID, or a declaration name."),
    file: Optional[str] = typer.Option(None, "--file", help="Disambiguate a name by file."),
    depth: int = typer.Option(config.DEFAULT_CHAIN_DEPTH, min=1, max=50, help="Maximum hops."),
):
    """Print what NODE depends on, breadth first."""
    with _open_store() as store:
        orchestrator = GraphOrchestrator(store, _settings())
        start = store.get_node(node)
        if start is None or start.analysis_id != analysis_id:
            matches = orchestrator.find_nodes(analysis_id, node, file)
            if not matches:
                _fail(f"Node '{node}' not found in analysis '{analysis_id}'.")
            if len(matches) > 1:
                typer.echo(f"{len(matches)} nodes named '{node}'; using {_location(matches[0])}.", err=True)
            start = matches[0]
        trace = orchestrator.dependency_chain(analysis_id, start.node_id, max_depth=depth)

    for idx, label in enumerate(trace):
        typer.echo(label if idx == 0 else f"  -> {label}")


@app.command("export")
def export(
    analysis_id: str = typer.Argument(..., help="Analysis ID."),
    fmt: str = typer.Option("dot", "--format", "-f", help="Export format: dot or json."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output file path."),
    focus: str = typer.Option("", "--focus", help="Only nodes matching this name or file, plus neighbours."),
):
    """Export the graph to Graphviz DOT or JSON."""
    fmt = fmt.lower()
    if fmt not in {"dot", "json"}:
        raise typer.BadParameter("Format must be one of: dot, json")

    if output is None:
        output = Path.cwd() / f"{analysis_id}_graph.{fmt}"

    with _open_store() as store:
        graph = GraphOrchestrator(store, _settings()).get_graph(analysis_id)

    if fmt == "dot":
        export_dot(graph, output, focus=focus)
    else:
        export_json(graph, output, focus=focus)
    typer.echo(f"Exported graph to {output}")


# ===================================================================
# Analyses
# ===================================================================

@app.command("analyses")
def analyses():
    """List stored analyses."""
    with _open_store() as store:
        rows = store.list_analyses()

    if not rows:
        typer.echo("No analyses yet. Run 'ig build <path>'.")
        raise typer.Exit(code=0)

    table = Table(title="Analyses")
    table.add_column("ID")
    table.add_column("Project")
    table.add_column("Nodes", justify="right")
    table.add_column("Edges", justify="right")
    table.add_column("Updated")
    for row in rows:
        table.add_row(
            row["id"], row["project_path"], str(row["node_count"]),
            str(row["edge_count"]), row["updated_at"],
        )
    console.print(table)


@app.command("delete")
def delete(analysis_id: str = typer.Argument(..., help="Analysis to delete.")):
    """Delete an analysis with its graph and findings."""
    with _open_store() as store:
        deleted = store.delete_analysis(analysis_id)
    if not deleted:
        raise typer.BadParameter(f"Analysis '{analysis_id}' not found.")
    typer.echo(f"Deleted analysis '{analysis_id}'.")


# ===================================================================
# Findings
# ===================================================================

@findings_app.command("import")
def findings_import(
    analysis_id: str = typer.Argument(..., help="Analysis ID."),
    findings_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON findings export."),
):
    """Attach scanner findings to an analysis."""
    with _open_store() as store:
        if store.get_analysis(analysis_id) is None:
            _fail(f"Unknown analysis '{analysis_id}'. Run 'ig build' first.")
        stored = FindingStore(store).add_findings(analysis_id, load_findings_file(findings_file))
    typer.echo(f"Imported {len(stored)} findings into '{analysis_id}'.")


@findings_app.command("list")
def findings_list(
    analysis_id: str = typer.Argument(..., help="Analysis ID."),
    file: Optional[str] = typer.Option(None, "--file", help="Substring of the file path."),
    severity: Optional[str] = typer.Option(None, "--severity", help="Only this severity."),
):
    """List findings, most severe first."""
    with _open_store() as store:
        items = FindingStore(store).find_by_analysis(analysis_id, file_pattern=file, severity=severity)

    if not items:
        typer.echo("No findings.")
        raise typer.Exit(code=0)

    table = Table(title=f"Findings ({len(items)})")
    table.add_column("Severity")
    table.add_column("Title")
    table.add_column("Location")
    table.add_column("Scanner")
    for f in items:
        location = f"{f.file}:{f.line}" if f.file and f.line else (f.file or "")
        table.add_row(f.severity, f.title, location, f.scanner)
    console.print(table)


# ===================================================================
# Config
# ===================================================================

@config_app.command("show")
def config_show():
    """Print the effective [graph] settings."""
    values = settings_as_dict(_settings())
    for key, value in values.items():
        if isinstance(value, list):
            value = ", ".join(value) or "(none)"
        typer.echo(f"{key} = {value}")
    typer.echo(f"config file: {config.CONFIG_FILE}")


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Setting name."),
    value: str = typer.Argument(..., help="New value; comma-separated for exclude."),
):
    """Persist one [graph] setting."""
    try:
        name, parsed = parse_setting(key, value)
        save_graph_config(**{name: parsed})
    except ConfigError as exc:
        _fail(str(exc))
    typer.echo(f"Set {key}.")


@config_app.command("reset")
def config_reset():
    """Drop all [graph] settings back to defaults."""
    reset_graph_config()
    typer.echo("Reset [graph] settings to defaults.")


if __name__ == "__main__":
    app()
