"""CodeGraph Lite CLI with Rich output.

Provides commands for:
- Indexing a project into the knowledge graph
- Keyword and semantic search
- Pattern detection and statistics
- Path and community queries
- Store status

Usage:
    codegraph index --path .        # Index a project
    codegraph search "config"       # Search the graph
    codegraph patterns --detect     # Detect code patterns
    codegraph path <from> <to>      # Shortest path between two nodes
    codegraph info                  # Show store availability
"""

from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.text import Text

from codegraph_lite.config import Config
from codegraph_lite.errors import CodeGraphError
from codegraph_lite.knowledge_graph import KnowledgeGraph
from codegraph_lite.schema import NodeType

app = typer.Typer(
    name="codegraph",
    help="CodeGraph Lite - Code knowledge graph with conversational memory",
    rich_markup_mode="rich",
    no_args_is_help=True,
)
console = Console()

# Persistence file of the embedded store when none is configured
DEFAULT_GRAPH_FILE = "graph.json"

_PRIORITY_STYLES = {"critical": "bold red", "high": "yellow", "medium": "cyan", "low": "dim"}


def print_banner():
    """Print CodeGraph banner."""
    banner = Text()
    banner.append("CodeGraph", style="bold cyan")
    banner.append(" Lite", style="cyan")
    console.print(Panel(banner, border_style="cyan", box=box.ROUNDED))


def _open_graph(path: Path, embeddings: bool = True) -> KnowledgeGraph:
    """Build and initialize a knowledge graph for the project path."""
    config = Config()
    if not config.embedded_graph_file:
        config.embedded_graph_file = DEFAULT_GRAPH_FILE
    if not embeddings:
        config.embeddings_enabled = False
    config.data_dir.mkdir(parents=True, exist_ok=True)
    kg = KnowledgeGraph(path, config)
    kg.initialize()
    return kg


def _parse_types(types: Optional[str]) -> list[NodeType] | None:
    if not types:
        return None
    try:
        return [NodeType(t.strip()) for t in types.split(",") if t.strip()]
    except ValueError as e:
        valid = ", ".join(t.value for t in NodeType)
        console.print(f"[red]{e}[/red] (valid types: {valid})")
        raise typer.Exit(1)


@app.command()
def index(
    path: Path = typer.Option(Path("."), "--path", "-p", help="Project path to index"),
    clear: bool = typer.Option(False, "--clear", help="Clear the graph before indexing"),
    embeddings: bool = typer.Option(True, "--embeddings/--no-embeddings", help="Generate embeddings"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Stop after this many seconds"),
):
    """Index a project into the knowledge graph."""
    print_banner()
    kg = _open_graph(path, embeddings)
    try:
        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console) as progress:
            if clear:
                progress.add_task("Clearing existing graph...", total=None)
                kg.clear_graph()
            progress.add_task(f"Indexing {kg.project_path}...", total=None)
            report = kg.index_project(timeout=timeout)
    finally:
        kg.close()

    result = report.indexing
    table = Table(title="Indexing Results", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Files indexed", str(result.files_indexed))
    table.add_row("Functions found", str(result.functions_found))
    table.add_row("Classes found", str(result.classes_found))
    table.add_row("Relationships created", str(result.relationships_created))
    table.add_row("Nodes embedded", str(report.embedded))
    table.add_row("Patterns detected", str(report.patterns))
    table.add_row("Insights generated", str(report.insights))
    table.add_row("Duration", f"{result.duration:.2f}s")
    console.print(table)

    if result.errors:
        console.print(f"\n[yellow]{len(result.errors)} errors encountered:[/yellow]")
        for err in result.errors[:5]:
            console.print(f"  [yellow]- {err}[/yellow]")
    if result.timed_out:
        console.print("[yellow]Indexing stopped at the timeout; the graph is partial.[/yellow]")


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    types: Optional[str] = typer.Option(None, "--types", "-t", help="Comma-separated node types"),
    limit: int = typer.Option(10, "--limit", "-l", help="Maximum results"),
    semantic: bool = typer.Option(False, "--semantic", help="Semantic search only"),
    context: bool = typer.Option(False, "--context", help="Include related nodes"),
    path: Path = typer.Option(Path("."), "--path", "-p", help="Project path"),
):
    """Search the knowledge graph."""
    node_types = _parse_types(types)
    kg = _open_graph(path)
    try:
        if semantic:
            hits = kg.semantic_search(query, node_types, limit, include_context=context)
            rows = [(hit.node, hit.similarity) for hit in hits]
        else:
            rows = [(node, None) for node in kg.search(query, node_types, limit, include_related=context)]
    except CodeGraphError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    finally:
        kg.close()

    if not rows:
        console.print("[yellow]No results found[/yellow]")
        return

    table = Table(title=f"Results for '{query}'", box=box.ROUNDED)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Location", style="dim")
    table.add_column("Similarity", justify="right")
    for i, (node, similarity) in enumerate(rows, 1):
        if node.type == NodeType.FILE:
            location = node.path
        elif node.type in (NodeType.FUNCTION, NodeType.METHOD, NodeType.CLASS):
            location = f"{node.file_path}:{node.line_start}-{node.line_end}"
        else:
            location = "-"
        score = f"{similarity * 100:.1f}%" if similarity is not None else "-"
        table.add_row(str(i), node.name or node.id, node.type.value, location, score)
    console.print(table)


@app.command()
def patterns(
    detect: bool = typer.Option(False, "--detect", help="Run pattern detection first"),
    path: Path = typer.Option(Path("."), "--path", "-p", help="Project path"),
):
    """Detect code patterns and show pattern statistics."""
    kg = _open_graph(path, embeddings=False)
    try:
        if detect:
            matches = kg.detect_patterns()
            console.print(f"[green]Detected {len(matches)} pattern matches[/green]\n")
            for match in matches:
                console.print(f"[bold cyan]{match.pattern.name}[/bold cyan] [dim]({match.pattern.category})[/dim]")
                console.print(f"  Instances: {len(match.matches)}")
                console.print(f"  [dim]{match.pattern.description}[/dim]")
                for rec in match.pattern.recommendations:
                    console.print(f"  [yellow]- {rec}[/yellow]")
        stats = kg.get_statistics()["patterns"]
    finally:
        kg.close()

    console.print(f"\n[bold]Total patterns:[/bold] {stats['total_patterns']}")
    console.print(f"[bold]Total insights:[/bold] {stats['total_insights']}")
    if stats["top_patterns"]:
        console.print("\n[bold]Top patterns:[/bold]")
        for p in stats["top_patterns"]:
            console.print(f"  - {p['name']}: {p['count']} instances")
    if stats["recent_insights"]:
        console.print("\n[bold]Recent insights:[/bold]")
        for i in stats["recent_insights"]:
            style = _PRIORITY_STYLES.get(i["priority"], "dim")
            console.print(f"  [{style}]- [{i['priority'].upper()}] {i['title']} ({i['type']})[/{style}]")


@app.command()
def stats(
    path: Path = typer.Option(Path("."), "--path", "-p", help="Project path"),
):
    """Display knowledge graph statistics."""
    kg = _open_graph(path, embeddings=False)
    try:
        data = kg.get_statistics()
    finally:
        kg.close()

    db = data["database"]
    table = Table(title=f"Knowledge Graph ({db.get('backend', 'unknown')})", box=box.ROUNDED)
    table.add_column("Kind", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("[bold]Total nodes[/bold]", str(db["total_nodes"]))
    for node_type, count in sorted(db.get("nodes_by_type", {}).items()):
        table.add_row(f"  {node_type}", str(count))
    table.add_row("[bold]Total relationships[/bold]", str(db["total_relationships"]))
    for rel_type, count in sorted(db.get("relationships_by_type", {}).items()):
        table.add_row(f"  {rel_type}", str(count))
    console.print(table)

    memory = data["memory"]
    console.print(
        f"\n[bold]Memory:[/bold] active {memory['active_memory']['nodes']} nodes "
        f"({memory['active_memory']['tokens']} tokens), working {memory['working_memory']['nodes']} nodes "
        f"({memory['working_memory']['tokens']} tokens)"
    )


@app.command()
def path(
    start: str = typer.Argument(..., help="Start node id"),
    end: str = typer.Argument(..., help="End node id"),
    max_depth: int = typer.Option(10, "--max-depth", help="Maximum path length"),
    project: Path = typer.Option(Path("."), "--path", "-p", help="Project path"),
):
    """Show the shortest path between two nodes."""
    kg = _open_graph(project, embeddings=False)
    try:
        found = kg.traversal.find_shortest_path(start, end, max_depth=max_depth)
        names = {}
        if found is not None:
            for node_id in found.nodes:
                node = kg.store.get_node(node_id)
                names[node_id] = node.name if node is not None and node.name else node_id
    finally:
        kg.close()

    if found is None:
        console.print(f"[yellow]No path from {start} to {end} within {max_depth} hops[/yellow]")
        raise typer.Exit(1)

    parts = [f"[cyan]{names[found.nodes[0]]}[/cyan]"]
    for edge, node_id in zip(found.edges, found.nodes[1:]):
        parts.append(f"-[dim]{edge.type.value}[/dim]-> [cyan]{names[node_id]}[/cyan]")
    console.print(" ".join(parts))
    console.print(f"[dim]Length: {found.length}[/dim]")


@app.command()
def communities(
    node_type: Optional[str] = typer.Option(None, "--type", "-t", help="Restrict to one node type"),
    min_size: int = typer.Option(3, "--min-size", help="Minimum community size"),
    project: Path = typer.Option(Path("."), "--path", "-p", help="Project path"),
):
    """List communities of densely connected nodes."""
    types = _parse_types(node_type)
    kg = _open_graph(project, embeddings=False)
    try:
        found = kg.traversal.find_communities(types[0] if types else None, min_size)
    finally:
        kg.close()

    if not found:
        console.print("[yellow]No communities found[/yellow]")
        return

    table = Table(title="Communities", box=box.ROUNDED)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Size", justify="right")
    table.add_column("Most central", style="cyan")
    for i, community in enumerate(found, 1):
        central = sorted(community.nodes, key=lambda n: community.centrality.get(n.id, 0.0), reverse=True)[:3]
        table.add_row(str(i), str(len(community.nodes)), ", ".join(n.name or n.id for n in central))
    console.print(table)


@app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    project: Path = typer.Option(Path("."), "--path", "-p", help="Project path"),
):
    """Clear the entire knowledge graph."""
    if not yes and not typer.confirm("Are you sure you want to clear the entire knowledge graph?"):
        console.print("[dim]Cancelled[/dim]")
        raise typer.Exit(0)
    kg = _open_graph(project, embeddings=False)
    try:
        kg.clear_graph()
    finally:
        kg.close()
    console.print("[green]Knowledge graph cleared[/green]")


@app.command()
def info():
    """Show configuration and graph store availability."""
    from codegraph_lite.db.graph_factory import get_backend_info

    print_banner()
    config = Config()
    backends = get_backend_info(config)

    table = Table(title="Graph Stores", box=box.ROUNDED)
    table.add_column("Store", style="cyan")
    table.add_column("Available", justify="center")
    table.add_column("Location", style="dim")
    memgraph = backends["memgraph"]
    table.add_row(
        "Memgraph/Neo4j",
        "[green]Yes[/green]" if memgraph["available"] else "[yellow]No[/yellow]",
        memgraph["address"],
    )
    table.add_row("Embedded", "[green]Yes[/green]", backends["embedded"]["path"] or "in-memory")
    console.print(table)

    settings = Table(title="Configuration", box=box.ROUNDED)
    settings.add_column("Property", style="cyan")
    settings.add_column("Value")
    settings.add_row("Data Dir", str(config.data_dir))
    settings.add_row("Backend", config.graph_backend)
    settings.add_row("Embedding Model", config.local_model if config.use_local_embeddings else config.embedding_model)
    settings.add_row("Embeddings", "enabled" if config.embeddings_enabled else "disabled")
    settings.add_row("Memory Budgets", f"active={config.active_memory_tokens}, working={config.working_memory_tokens}")
    console.print(settings)

    if backends.get("env_override"):
        console.print(f"[dim]Override: CODEGRAPH_GRAPH_BACKEND={backends['env_override']}[/dim]")


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
