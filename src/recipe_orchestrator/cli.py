"""CLI interface for the recipe orchestrator."""

import asyncio
import json

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

app = typer.Typer(
    name="recipe-orchestrator",
    help="Polite multi-source recipe aggregation",
    add_completion=False,
)
blocked_app = typer.Typer(help="Inspect and manage blocked domains", add_completion=False)
app.add_typer(blocked_app, name="blocked")

console = Console()


def get_settings():
    """Load settings from the environment (and a .env file if present)."""
    from dotenv import load_dotenv

    from .config import OrchestratorSettings
    from .logging import configure_logging

    load_dotenv()
    settings = OrchestratorSettings.from_env()
    configure_logging(settings.log_level)
    return settings


def get_registry(settings):
    from .blocks import BlockRegistry, open_store

    store = open_store(settings.blocks.store, settings.blocks.path)
    return BlockRegistry(store=store, settings=settings.blocks)


@app.command()
def aggregate(
    query: str = typer.Argument("", help="Recipe name to look up"),
    url: str = typer.Option(None, "--url", "-u", help="Recipe page URL; names the recipe when QUERY is empty"),
    as_json: bool = typer.Option(False, "--json", help="Print the merged recipe as JSON"),
):
    """Look a recipe up across all sources and merge the results."""
    from .errors import NoCandidatesFound
    from .orchestrator import build_orchestrator

    settings = get_settings()

    if not query and not url:
        console.print("[red]Error: give a QUERY or --url.[/red]")
        raise typer.Exit(1)

    async def run():
        async with build_orchestrator(settings) as orchestrator:
            return await orchestrator.aggregate(query, hint_url=url)

    try:
        result = asyncio.run(run())
    except NoCandidatesFound as e:
        console.print(f"[yellow]{e}[/yellow]")
        for attempt in e.attempts:
            console.print(f"  {attempt.source_id}: {attempt.outcome.value} {attempt.detail or ''}")
        raise typer.Exit(1)

    if as_json:
        payload = {
            "recipe": result.recipe.model_dump(mode="json"),
            "sources": result.sources,
            "combined_confidence": result.combined_confidence,
            "combined_completeness": result.combined_completeness,
            "processing_time_ms": result.processing_time_ms,
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    recipe = result.recipe
    console.print(Panel(
        f"[bold]{recipe.title}[/bold]\n"
        f"Sources: {', '.join(result.sources)}\n"
        f"Confidence: {result.combined_confidence:.0f}  Completeness: {result.combined_completeness}%",
        title="Aggregated Recipe",
    ))

    table = Table(title="Ingredients")
    table.add_column("#", style="dim")
    table.add_column("Ingredient")
    for i, ingredient in enumerate(recipe.ingredients, 1):
        table.add_row(str(i), ingredient.text)
    console.print(table)

    attempts = Table(title="Source Attempts")
    attempts.add_column("Source")
    attempts.add_column("Outcome")
    attempts.add_column("Latency")
    attempts.add_column("Detail")
    for attempt in result.attempts:
        attempts.add_row(
            attempt.source_id,
            attempt.outcome.value,
            f"{attempt.latency_ms:.0f}ms",
            attempt.detail or "",
        )
    console.print(attempts)


@blocked_app.command("list")
def blocked_list(
    active: bool = typer.Option(False, "--active", help="Only domains currently blocked"),
):
    """List tracked domains and their block state."""
    registry = get_registry(get_settings())
    records = registry.get_all_blocked(active_only=active)

    if not records:
        console.print("[green]No blocked domains.[/green]")
        return

    table = Table(title="Blocked Domains")
    table.add_column("Domain")
    table.add_column("Type")
    table.add_column("Failures")
    table.add_column("State")
    table.add_column("Cooldown Until", style="dim")
    for r in records:
        state = "permanent" if not r.is_temporary else ("cooldown" if r.cooldown_until else "tracking")
        table.add_row(
            r.domain,
            r.error_type.value,
            str(r.attempt_count),
            state,
            r.cooldown_until.isoformat() if r.cooldown_until else "",
        )
    console.print(table)

    stats = registry.get_stats()
    console.print(f"Total: {stats.total}  Temporary: {stats.temporary}  Permanent: {stats.permanent}")


@blocked_app.command("report")
def blocked_report():
    """Print a Markdown report of blocked domains."""
    registry = get_registry(get_settings())
    typer.echo(registry.export_report())


@blocked_app.command("unblock")
def blocked_unblock(domain: str = typer.Argument(..., help="Domain to forget")):
    """Manually unblock a domain."""
    registry = get_registry(get_settings())
    if registry.unblock(domain):
        console.print(f"[green]Unblocked {domain}[/green]")
    else:
        console.print(f"[yellow]{domain} was not blocked[/yellow]")


@blocked_app.command("reset")
def blocked_reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Forget every blocked domain."""
    if not yes:
        typer.confirm("Clear the whole block registry?", abort=True)
    registry = get_registry(get_settings())
    removed = registry.reset()
    console.print(f"[green]Cleared {removed} domain(s)[/green]")


def main():
    app()


if __name__ == "__main__":
    main()
