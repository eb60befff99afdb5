"""Command-line interface for Hypnos."""

import asyncio
import json
import sys
from typing import Optional, Tuple

import click
from loguru import logger

from hypnos.config.settings import Settings
from hypnos.core.engine import MemoryEngine
from hypnos.utils.logging import configure_logging


def _load_settings(db_path: Optional[str], debug: bool) -> Settings:
    settings = Settings()
    if db_path:
        settings.storage.db_path = db_path
    if debug:
        settings.logging.level = "DEBUG"
    configure_logging(settings.logging)
    return settings


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2))


@click.group()
@click.option(
    "--db",
    "db_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="SQLite database path (overrides settings)",
)
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, db_path: Optional[str], debug: bool) -> None:
    """
    Hypnos - persistent memory with sleep consolidation.

    Examples:

        # Serve the MCP tools over stdio
        hypnos serve

        # Query stored memories
        hypnos recall "exam schedule" --limit 3
    """
    ctx.obj = _load_settings(db_path, debug)


@main.command()
@click.option("--no-sleep", is_flag=True, help="Disable the background sleep loop")
@click.pass_obj
def serve(settings: Settings, no_sleep: bool) -> None:
    """Run the MCP server on stdio."""
    from hypnos.server import initialize, run_server

    if no_sleep:
        settings.sleep.enabled = False
    try:
        initialize(settings=settings)
        asyncio.run(run_server())
    except KeyboardInterrupt:
        print("\nServer stopped by user", file=sys.stderr)
    except Exception as e:
        logger.exception("Server error")
        print(f"Server error: {e}", file=sys.stderr)
        sys.exit(1)


@main.command()
@click.argument("query")
@click.option("--limit", default=5, show_default=True, type=click.IntRange(min=1))
@click.pass_obj
def recall(settings: Settings, query: str, limit: int) -> None:
    """Retrieve memories relevant to QUERY."""

    async def _recall():
        async with MemoryEngine.from_settings(settings) as engine:
            return await engine.retrieve_context(query, limit)

    results = asyncio.run(_recall())
    if not results:
        click.echo("No memories found.")
        return
    for result in results:
        reasons = ", ".join(f"{r.label}={r.score:.2f}" for r in result.reasons)
        click.echo(f"[{result.id}] ({result.kind.value}, {result.activation:.3f}) {result.text_snippet}")
        if reasons:
            click.echo(f"      {reasons}")


@main.command()
@click.option("--budget", type=float, default=None, help="Synthesis budget in seconds")
@click.pass_obj
def consolidate(settings: Settings, budget: Optional[float]) -> None:
    """Run one sleep consolidation pass."""

    async def _consolidate():
        async with MemoryEngine.from_settings(settings) as engine:
            return await engine.nightly_consolidate(budget)

    _echo_json(asyncio.run(_consolidate()).to_dict())


@main.command()
@click.pass_obj
def stats(settings: Settings) -> None:
    """Show memory and edge counts."""

    async def _stats():
        async with MemoryEngine.from_settings(settings) as engine:
            return await engine.stats()

    _echo_json(asyncio.run(_stats()))


@main.command("add-rule")
@click.argument("text")
@click.option("--tag", "tags", multiple=True, help="Rule tag (repeatable)")
@click.pass_obj
def add_rule(settings: Settings, text: str, tags: Tuple[str, ...]) -> None:
    """Insert or refresh the procedural rule TEXT."""

    async def _add():
        async with MemoryEngine.from_settings(settings) as engine:
            return await engine.upsert_procedural_rule(text, list(tags))

    try:
        rule_id = asyncio.run(_add())
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="TEXT")
    click.echo(f"Stored rule {rule_id}")


if __name__ == "__main__":
    main()
