"""CLI commands for the portfolio chat core."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from cli.config import load_config_model
from cli.logging_config import setup_logging
from llm.base import NoProvidersAvailable, ProviderError, ProviderExhaustedError
from observability import log_run_summary
from orchestration import OrchestrationContext, OrchestrationPipeline, TurnRequest
from portfolio.models import FactKind
from portfolio.store import SessionStore

console = Console()


def _load_config(config_path: Optional[str]):
    try:
        return load_config_model(Path(config_path) if config_path else None)
    except ValueError as e:
        console.print(f"[red]Config error:[/] {e}")
        sys.exit(1)


@click.group()
@click.version_option(version="0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option("-c", "--config", "config_path", type=click.Path(dir_okay=False), help="Config file")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Optional[str]):
    """Portfolio chat - provider failover and conversational data consistency."""
    config = _load_config(config_path)
    if verbose:
        config.logging.level = "DEBUG"
    setup_logging(json_mode=config.logging.json_mode, level=config.logging.level)
    ctx.obj = config


@cli.command("providers")
@click.pass_obj
def providers(config):
    """List configured providers and their health."""

    async def _run():
        context = OrchestrationContext.from_config(config)
        try:
            return context.registry, context.health.report()
        finally:
            await context.aclose()

    registry, report = asyncio.run(_run())
    if not len(registry):
        console.print("[yellow]No providers configured.[/] Add llm.providers to config.yaml.")
        return

    table = Table(show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Vendor", style="green")
    table.add_column("Tools", justify="center")
    table.add_column("Stream", justify="center")
    table.add_column("Price in/out per 1M", justify="right")
    table.add_column("State")
    for d in registry:
        health = report[d.id]
        price = "free" if d.free else f"${d.pricing.input_per_million:g} / ${d.pricing.output_per_million:g}"
        state = "[green]active[/]" if health.active else "[red]inactive[/]"
        table.add_row(
            d.id,
            d.name,
            d.vendor,
            "yes" if d.supports_tools else "-",
            "yes" if d.supports_streaming else "-",
            price,
            state,
        )
    console.print(table)


@cli.command("ask")
@click.argument("message")
@click.option("-s", "--session", "session_id", default="cli", help="Session id")
@click.option(
    "--history",
    "history_file",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file with prior turns [{role, content}]",
)
@click.option("--no-stream", is_flag=True, help="Print the answer once complete")
@click.pass_obj
def ask(config, message: str, session_id: str, history_file: Optional[str], no_stream: bool):
    """Ask one question, streaming the answer."""
    history = []
    if history_file:
        try:
            history = json.loads(Path(history_file).read_text())
        except json.JSONDecodeError as e:
            console.print(f"[red]Invalid history file:[/] {e}")
            sys.exit(1)

    def on_token(fragment: str):
        console.print(fragment, end="", markup=False, highlight=False)

    async def _run():
        context = OrchestrationContext.from_config(config)
        pipeline = OrchestrationPipeline(context, persistence=SessionStore(config.paths.session_db))
        try:
            return await pipeline.run_turn(
                TurnRequest(message=message, history=history, session_id=session_id),
                on_token=None if no_stream else on_token,
            )
        finally:
            await context.aclose()
            log_run_summary(context.metrics)

    try:
        result = asyncio.run(_run())
    except NoProvidersAvailable:
        console.print("[red]All providers are unavailable.[/] The service is in maintenance, try again later.")
        sys.exit(1)
    except ProviderExhaustedError as e:
        console.print(f"[red]No provider answered after {e.attempts} attempts:[/] {e.last_error}")
        sys.exit(1)
    except ProviderError as e:
        console.print(f"\n[red]Provider error:[/] {e}")
        sys.exit(1)

    if no_stream:
        console.print(Markdown(result.content or ""))
    else:
        console.print()

    changed = sorted(result.facts_used.subject_keys("changed"))
    footer = f"{result.provider_used} | {result.usage.total_tokens} tokens"
    if result.usage.estimated:
        footer += " (estimated)"
    if changed:
        footer += f" | updated: {', '.join(changed)}"
    console.print(f"[dim]{footer}[/]")


@cli.group()
def session():
    """Inspect stored session state."""
    pass


@session.command("show")
@click.argument("session_id")
@click.option("--raw", is_flag=True, help="Print the stored JSON")
@click.pass_obj
def session_show(config, session_id: str, raw: bool):
    """Show facts known for a session."""
    from portfolio.session_cache import SessionCache
    from cli.config import cache_ttls

    state = SessionStore(config.paths.session_db).load_session_state(session_id)
    if state is None:
        console.print(f"[yellow]No session state for {session_id}[/]")
        return
    if raw:
        console.print_json(json.dumps(state.to_dict()))
        return

    cache = SessionCache(ttls=cache_ttls(config.cache))
    table = Table(show_header=True, title=f"Session {session_id}")
    table.add_column("Kind", style="green")
    table.add_column("Subject", style="cyan")
    table.add_column("Value", justify="right")
    table.add_column("Source")
    table.add_column("Observed")
    table.add_column("Fresh", justify="center")
    for kind in FactKind:
        for subject, fact in sorted(state.of_kind(kind).items()):
            table.add_row(
                kind.value,
                subject,
                f"{fact.value:,.2f}",
                fact.attributes.get("source", fact.provenance.value),
                f"{fact.observed_at:%Y-%m-%d %H:%M}",
                "[red]stale[/]" if cache.is_stale(fact) else "[green]yes[/]",
            )
    console.print(table)


@session.command("list")
@click.pass_obj
def session_list(config):
    """List stored sessions, most recent first."""
    sessions = SessionStore(config.paths.session_db).list_sessions()
    if not sessions:
        console.print("[yellow]No stored sessions.[/]")
        return
    for session_id, updated_at in sessions:
        console.print(f"[cyan]{session_id}[/]  [dim]{updated_at}[/]")


if __name__ == "__main__":
    cli()
