import asyncio
import json
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from qroute.config import Config
from qroute.logging import UVICORN_LOG_CONFIG, configure_logging
from qroute.models import WorkflowOptions, WorkflowResult, WorkflowStatus

console = Console()

STATUS_STYLES = {
    WorkflowStatus.SUCCESS: "green",
    WorkflowStatus.PARTIAL: "yellow",
    WorkflowStatus.FAILED: "red",
}


def _require_config(ctx) -> Config:
    if "config_error" in ctx.obj:
        console.print(f"[red]Error:[/red] {ctx.obj['config_error']}")
        raise SystemExit(1)
    return ctx.obj["config"]


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx):
    """qroute - retrieval strategy orchestrator"""
    try:
        ctx.ensure_object(dict)
        ctx.obj["config"] = Config()
    except ValueError as e:
        # Only fail if we're running a command that needs config
        ctx.obj["config_error"] = str(e)

    if ctx.invoked_subcommand is None:
        console.print("[bold]qroute[/bold] - retrieval strategy orchestrator\n")
        console.print("Run [cyan]qroute serve[/cyan] to start the server.")
        console.print("\nUse [cyan]qroute --help[/cyan] for all commands.")


@main.command()
@click.pass_context
def status(ctx):
    """Show current configuration."""
    if "config_error" in ctx.obj:
        console.print(f"[red]Error:[/red] {ctx.obj['config_error']}")
        console.print()
        console.print("[bold]Environment variables:[/bold]")
        console.print("  OPENAI_API_KEY - LLM and embedding provider key")
        console.print("  QROUTE_DATABASE_PATH - SQLite database queries run against")
        console.print("  QROUTE_QDRANT_URL, QDRANT_API_KEY - vector index")
        raise SystemExit(1)

    config = ctx.obj["config"]

    console.print("[bold]qroute status[/bold]")
    console.print()
    console.print(f"Database: [cyan]{config.database_path}[/cyan]")
    console.print(f"LLM model: {config.llm_model}")
    console.print(f"Embedding model: {config.embedding_model}")
    console.print(f"Vector index: {config.vector_backend} ({config.qdrant_url})")
    cache_state = config.cache_backend if config.cache_enabled else "disabled"
    console.print(f"Cache: {cache_state}")
    console.print(f"Fusion: k_field={config.rrf_k_field} k_modality={config.rrf_k_modality}")


@main.command()
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
@click.pass_context
def serve(ctx, host: str | None, port: int | None, reload: bool):
    """Start the qroute API server."""
    config = _require_config(ctx)
    host = host or config.host
    port = port or config.port

    import uvicorn

    console.print(f"[bold]qroute server[/bold] starting on http://{host}:{port}")
    console.print("[dim]Press Ctrl+C to stop[/dim]")
    console.print()

    uvicorn.run(
        "qroute.server.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_config=UVICORN_LOG_CONFIG,
    )


def _print_result(result: WorkflowResult) -> None:
    style = STATUS_STYLES[result.status]
    console.print(
        f"[{style}]{result.status}[/{style}] strategy=[cyan]{result.strategy}[/cyan] "
        f"rows={result.row_count} [dim]{result.total_ms}ms[/dim]"
    )
    if result.error:
        console.print(f"[red]Error:[/red] {result.error}")
    for suggestion in result.suggestions or []:
        console.print(f"  [dim]-[/dim] {suggestion}")
    if result.sql_text:
        console.print(f"\n[bold]SQL[/bold]\n{result.sql_text}")

    if result.rows:
        table = Table(show_header=True, header_style="bold")
        columns = list(result.rows[0])
        for column in columns:
            table.add_column(column)
        for row in result.rows:
            table.add_row(*(str(row.get(c, "")) for c in columns))
        console.print()
        console.print(table)

    steps = Table(title="Steps", show_header=True, header_style="bold")
    for column in ("step", "status", "ms", "cache", "error"):
        steps.add_column(column)
    for step in result.steps:
        name = step.name if step.attempt == 1 else f"{step.name} #{step.attempt}"
        steps.add_row(name, step.status, str(step.duration_ms), "hit" if step.cache_hit else "", step.error or "")
    console.print()
    console.print(steps)


@main.command()
@click.argument("query")
@click.option("--schema", "schema_path", required=True, type=click.Path(exists=True, path_type=Path), help="Database schema JSON file")
@click.option("--vectorized", "vectorized_path", type=click.Path(exists=True, path_type=Path), help="Vectorized fields JSON file")
@click.option("--max-rows", default=None, type=int, help="Maximum rows to return")
@click.option("--json", "as_json", is_flag=True, help="Print the raw result as JSON")
@click.pass_context
def ask(ctx, query: str, schema_path: Path, vectorized_path: Path | None, max_rows: int | None, as_json: bool):
    """Answer QUERY once (headless, non-interactive mode)."""
    config = _require_config(ctx)
    configure_logging(config.log_level)

    payload = {
        "query": query,
        "database_schema": schema_path.read_text(),
        "vectorized_fields": json.loads(vectorized_path.read_text()) if vectorized_path else {},
        "options": WorkflowOptions(max_rows=max_rows or config.max_rows, timeout_ms=config.timeout_ms),
    }
    result = asyncio.run(_ask(config, payload))

    if as_json:
        console.print_json(result.model_dump_json())
    else:
        _print_result(result)
    if result.status == WorkflowStatus.FAILED:
        raise SystemExit(1)


async def _ask(config: Config, payload: dict) -> WorkflowResult:
    from qroute.runtime import Runtime

    runtime = Runtime(config)
    await runtime.connect()
    try:
        return await runtime.query(payload)
    finally:
        await runtime.close()


@main.command()
@click.argument("collection")
@click.argument("text")
@click.option("--field", "vector_fields", multiple=True, required=True, help="Named vector to search (repeatable)")
@click.option("--keyword", "keyword_fields", multiple=True, help="Payload field to keyword-match TEXT against (repeatable)")
@click.option("--limit", default=10, type=click.IntRange(min=1), help="Maximum hits to return")
@click.pass_context
def search(ctx, collection: str, text: str, vector_fields: tuple[str, ...], keyword_fields: tuple[str, ...], limit: int):
    """Hybrid keyword and vector search for TEXT inside COLLECTION."""
    from qroute.search import HybridQuery

    config = _require_config(ctx)
    configure_logging(config.log_level)

    query = HybridQuery(
        collection=collection,
        text=text,
        vector_fields=list(vector_fields),
        keyword_fields=list(keyword_fields),
        limit=limit,
    )
    hits = asyncio.run(_search(config, query))
    if not hits:
        console.print("[dim]No matches[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    for column in ("id", "score", "sources", "payload"):
        table.add_column(column)
    for hit in hits:
        sources = ", ".join(sorted(hit.contributing_sources))
        table.add_row(str(hit.candidate_id), f"{hit.score:.2f}", sources, json.dumps(hit.payload, default=str))
    console.print(table)


async def _search(config: Config, query):
    from qroute.runtime import Runtime

    runtime = Runtime(config)
    await runtime.connect()
    try:
        return await runtime.search(query)
    finally:
        await runtime.close()


@main.group()
def cache():
    """Inspect and clear the result cache."""


@cache.command("stats")
@click.pass_context
def cache_stats(ctx):
    """Show per-namespace cache counters."""
    config = _require_config(ctx)
    stats = asyncio.run(_with_cache(config, lambda c: c.stats()))

    table = Table(title=f"Cache ({stats['backend']})", show_header=True, header_style="bold")
    for column in ("namespace", "ttl", "size", "hits", "misses", "writes", "errors"):
        table.add_column(column)
    for namespace, ns in stats["namespaces"].items():
        size = "-" if ns["size"] is None else str(ns["size"])
        table.add_row(namespace, str(ns["ttl"]), size, str(ns["hits"]), str(ns["misses"]), str(ns["writes"]), str(ns["errors"]))
    console.print(table)


@cache.command("clear")
@click.option("--namespace", type=click.Choice(["embedding", "classification", "field_selection", "sql_text"]), help="Only clear this namespace")
@click.pass_context
def cache_clear(ctx, namespace: str | None):
    """Invalidate cached entries."""
    config = _require_config(ctx)
    if namespace:
        removed = asyncio.run(_with_cache(config, lambda c: c.invalidate_namespace(namespace)))
    else:
        removed = asyncio.run(_with_cache(config, lambda c: c.invalidate_all()))
    console.print(f"Removed [cyan]{removed}[/cyan] entries from {namespace or 'all namespaces'}")


async def _with_cache(config: Config, action):
    from qroute.cache import ResultCache
    from qroute.runtime import create_cache_backend

    cache = ResultCache(create_cache_backend(config), ttls=config.cache_ttls, prefix=config.cache_prefix)
    await cache.backend.connect()
    try:
        return await action(cache)
    finally:
        await cache.close()


if __name__ == "__main__":
    main()
