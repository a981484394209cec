"""CLI entry point for the meme-token agent.

Commands:
  meme-agent run [--mode]     Interactive front end (chat / auto)
  meme-agent market SYMBOL    Show current market data
  meme-agent analyze SYMBOL   Show the decision for a symbol
  meme-agent post SYMBOL      Publish a market update post
  meme-agent auto             Run unattended until SIGINT/SIGTERM
  meme-agent config           Print the effective configuration
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from meme_agent.config import AgentConfig, load_config, required_credentials, validate_environment
from meme_agent.engine.agent import Agent, build_agent
from meme_agent.engine.modes import CommandResponse, Mode, ModeChanged
from meme_agent.errors import FatalConfigError, ModeTransitionError
from meme_agent.observability.logger import configure_logging, get_logger

load_dotenv()

console = Console()
log = get_logger(__name__)

EXIT_CONFIG = 2


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


def _fatal(message: str) -> None:
    console.print(f"[red]❌ {message}[/red]")
    sys.exit(EXIT_CONFIG)


def _require_credentials(cfg: AgentConfig) -> None:
    try:
        validate_environment(cfg)
    except FatalConfigError as e:
        _fatal(str(e))


def _print_response(resp: CommandResponse) -> None:
    style = "green" if resp.ok else "red"
    console.print(f"[{style}]{resp.message}[/{style}]")


def _print_history(agent: Agent) -> None:
    history = agent.cycle_history
    table = Table(title=f"Cycles ({len(history)} recorded)")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Epoch", justify="right")
    table.add_column("Status")
    table.add_column("Action", style="cyan")
    table.add_column("Confidence", justify="right", style="yellow")
    table.add_column("Result")
    table.add_column("Duration", justify="right")
    for c in history[-20:]:
        table.add_row(
            str(c.cycle_id),
            str(c.epoch),
            c.status,
            c.decision.action.value if c.decision else "-",
            f"{c.decision.confidence:.2f}" if c.decision else "-",
            c.result.status.value if c.result else "-",
            f"{c.duration_secs:.2f}s",
        )
    console.print(table)


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Meme-token market agent."""
    ctx.ensure_object(dict)
    try:
        cfg = load_config(config_path)
    except FatalConfigError as e:
        _fatal(str(e))
    ctx.obj["config"] = cfg
    configure_logging(
        level=cfg.observability.log_level,
        fmt="console",  # CLI always uses console format
        log_file=cfg.observability.log_file,
        force=True,
    )


# ─── ONE-OFF COMMANDS ────────────────────────────────────────────────

def _one_off(cfg: AgentConfig, command: str, symbol: str) -> CommandResponse:
    async def _go() -> CommandResponse:
        agent = build_agent(cfg)
        try:
            await agent.start()
            agent.modes.enter_chat()
            return await agent.modes.dispatch(command, [symbol])
        finally:
            await agent.close()

    return _run(_go())


@cli.command()
@click.argument("symbol", required=False)
@click.pass_context
def market(ctx: click.Context, symbol: str | None) -> None:
    """Show current market data for SYMBOL."""
    cfg: AgentConfig = ctx.obj["config"]
    resp = _one_off(cfg, "market", symbol or cfg.trading.symbol)
    _print_response(resp)
    if not resp.ok:
        sys.exit(1)


@cli.command()
@click.argument("symbol", required=False)
@click.pass_context
def analyze(ctx: click.Context, symbol: str | None) -> None:
    """Show the decision the engine would take for SYMBOL."""
    cfg: AgentConfig = ctx.obj["config"]
    resp = _one_off(cfg, "analyze", symbol or cfg.trading.symbol)
    _print_response(resp)
    if not resp.ok:
        sys.exit(1)


@cli.command()
@click.argument("symbol", required=False)
@click.pass_context
def post(ctx: click.Context, symbol: str | None) -> None:
    """Publish a market update post for SYMBOL."""
    cfg: AgentConfig = ctx.obj["config"]
    _require_credentials(cfg)
    resp = _one_off(cfg, "post", symbol or cfg.trading.symbol)
    _print_response(resp)
    if not resp.ok:
        sys.exit(1)


# ─── AUTO ────────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def auto(ctx: click.Context) -> None:
    """Run the autonomous loop until interrupted."""
    cfg: AgentConfig = ctx.obj["config"]
    _require_credentials(cfg)

    console.print("[bold cyan]🤖 Starting autonomous mode[/bold cyan]")
    console.print(f"  Symbol: {cfg.trading.symbol}")
    console.print(f"  Cycle interval: {cfg.engine.cycle_interval_ms / 1000:g}s")
    console.print(f"  Min confidence: {cfg.trading.min_confidence}")
    console.print(f"  Dry run: {cfg.execution.dry_run}")
    console.print()

    async def _auto() -> Agent:
        agent = build_agent(cfg)
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass  # Windows
        try:
            await agent.start()
            agent.modes.enter_auto()
            await stop.wait()
        finally:
            await agent.close()
        return agent

    agent = _run(_auto())
    console.print("\n[yellow]Autonomous mode stopped.[/yellow]")
    _print_history(agent)


# ─── INTERACTIVE ─────────────────────────────────────────────────────

_MODE_WORDS = {"chat": Mode.CHAT, "auto": Mode.AUTO, "stop": Mode.IDLE}


async def _interactive(agent: Agent, initial: str | None) -> None:
    def _announce(event: ModeChanged) -> None:
        if event.reason:
            console.print(f"[yellow]Auto mode {event.reason}.[/yellow]")
            return
        welcome = agent.modes.spec(event.current).welcome
        console.print(f"[bold cyan]→ {event.current.value} mode[/bold cyan] {welcome}")

    agent.modes.subscribe(_announce)

    if initial is None:
        console.print("Available modes: [bold]chat[/bold], [bold]auto[/bold]. "
                      "Type a mode name to start, 'exit' to quit.")
    else:
        agent.modes.transition(_MODE_WORDS[initial])

    while True:
        try:
            line = await asyncio.to_thread(console.input, f"[dim]{agent.modes.mode.value}[/dim]> ")
        except (EOFError, KeyboardInterrupt):
            break
        words = line.strip().split()
        if not words:
            continue
        command, args = words[0].lower(), words[1:]
        if command in ("exit", "quit"):
            break
        if command in _MODE_WORDS:
            try:
                agent.modes.transition(_MODE_WORDS[command])
            except ModeTransitionError as e:
                console.print(f"[red]{e}[/red]")
            continue
        _print_response(await agent.modes.dispatch(command, args))


@cli.command()
@click.option("--mode", type=click.Choice(["chat", "auto"]), default=None, help="Start in this mode")
@click.pass_context
def run(ctx: click.Context, mode: str | None) -> None:
    """Interactive front end with chat and auto modes."""
    cfg: AgentConfig = ctx.obj["config"]
    _require_credentials(cfg)

    async def _go() -> None:
        agent = build_agent(cfg)
        try:
            await agent.start()
            await _interactive(agent, mode)
        finally:
            await agent.close()

    _run(_go())
    console.print("Goodbye.")


# ─── CONFIG ──────────────────────────────────────────────────────────

@cli.command("config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Print the effective configuration and credential status."""
    cfg: AgentConfig = ctx.obj["config"]
    console.print_json(json.dumps(cfg.model_dump(), default=str))

    table = Table(title="Credentials")
    table.add_column("Variable")
    table.add_column("Status")
    for name in required_credentials(cfg):
        present = bool(os.environ.get(name))
        table.add_row(name, "[green]set[/green]" if present else "[red]missing[/red]")
    console.print(table)


if __name__ == "__main__":
    cli()
