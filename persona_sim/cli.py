import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from persona_sim.config import get_settings

app = typer.Typer()
console = Console()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level")):
    _setup_logging("DEBUG" if verbose else get_settings().log_level)


@app.command()
def personas():
    """List the persona catalog."""
    from persona_sim.personas.catalog import PersonaCatalog

    catalog = PersonaCatalog.load(get_settings().personas_dir)
    table = Table(title=f"{len(catalog)} personas")
    for column in ("id", "name", "category", "price range", "description"):
        table.add_column(column)
    for p in catalog:
        table.add_row(p.user_id, p.name, p.category or "", p.price_range or "", p.description)
    console.print(table)


@app.command()
def analyze(
    image_url: str = typer.Argument(help="Publicly reachable URL of the image to analyze"),
    count: Optional[int] = typer.Option(None, "--count", "-n", help="Number of personas (default: all)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Save the full result as JSON instead of printing"),
):
    """Run the persona fan-out against one image, without the API or record store."""
    from persona_sim.analyzers.evaluator import analyze_content
    from persona_sim.gateway.chat import make_chat_gateway
    from persona_sim.gateway.pools import make_pool_registry
    from persona_sim.personas.catalog import PersonaCatalog

    settings = get_settings()
    try:
        gateway = make_chat_gateway(settings)
        registry = make_pool_registry(settings)
    except ValueError as exc:
        console.print(f"[bold red]Error:[/] {exc}")
        raise typer.Exit(1)
    catalog = PersonaCatalog.load(settings.personas_dir)

    async def _run():
        try:
            return await analyze_content(
                image_url,
                catalog.all(),
                gateway=gateway,
                registry=registry,
                persona_count=count,
                object_key=image_url.split("?", 1)[0],
                concurrency=settings.analysis_concurrency,
            )
        finally:
            await gateway.aclose()

    with console.status("[bold green]Running persona analysis..."):
        result = asyncio.run(_run())

    if output:
        output.write_text(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        console.print(f"[bold green]✓[/] Result saved to [cyan]{output}[/]")
        return

    metrics = result.metrics
    console.print(
        f"[bold]interest[/] {metrics.interest}  [bold]open[/] {metrics.open}%  "
        f"[bold]like[/] {metrics.like}%  [bold]comment[/] {metrics.comment}%  "
        f"[bold]purchase[/] {metrics.purchase}%"
    )

    funnel = Table(title="Funnel")
    funnel.add_column("stage")
    funnel.add_column("share", justify="right")
    funnel.add_column("count", justify="right")
    for step in result.journey_steps:
        funnel.add_row(step.label, step.value, str(step.count))
    console.print(funnel)

    users = Table(title="Personas")
    for column in ("id", "name", "status", "interest", "browse (s)", "fallback"):
        users.add_column(column)
    for u in sorted(result.users, key=lambda r: r.user_id):
        users.add_row(u.user_id, u.name, u.status, str(u.interest), str(u.browse_time), "yes" if u.used_fallback else "")
    console.print(users)

    summary = result.summary
    console.print(
        f"[dim]{summary.success_count} analysed, {summary.failed_count} fell back; "
        f"avg browse time {summary.avg_browse_time}s[/]"
    )


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
):
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("persona_sim.api.server:app", host=host, port=port, log_config=None)
