"""CLI commands for g-bridge."""

import asyncio
import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from g_bridge import __brand__, __logo__, __version__

app = typer.Typer(
    name="g-bridge",
    help=f"{__logo__} {__brand__} - Chat platform bridge for AI assistants",
    no_args_is_help=True,
)

console = Console()


def _cli_fail(cause: str, fix: str | None = None, *, exit_code: int = 1) -> None:
    """Print a consistent CLI error block and exit."""
    console.print(f"[red]{cause}[/red]")
    if fix:
        console.print(f"[dim]Fix: {fix}[/dim]")
    raise typer.Exit(exit_code)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} {__brand__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
):
    """g-bridge - Chat platform bridge for AI assistants."""
    pass


@app.command("version")
def version_command():
    """Show g-bridge version."""
    console.print(f"{__logo__} {__brand__} v{__version__}")


@app.command("status")
def status_command():
    """Show configured assistants, channels and access policies."""
    from g_bridge.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} {__brand__} status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Default model: {config.agents.defaults.model}")

    if not config.assistants:
        console.print("[yellow]No assistants configured[/yellow]")
        return

    table = Table(title="Assistants")
    table.add_column("Assistant", style="cyan")
    table.add_column("Channel", style="magenta")
    table.add_column("Enabled", style="green")
    table.add_column("DM / Group", style="yellow")
    table.add_column("Allow list")

    for assistant in config.assistants:
        for platform in type(assistant.channels).model_fields:
            channel_cfg = getattr(assistant.channels, platform)
            table.add_row(
                f"{assistant.name} ({assistant.id})",
                platform,
                "✓" if channel_cfg.enabled else "✗",
                f"{channel_cfg.dm_policy} / {channel_cfg.group_policy}",
                str(len(channel_cfg.allow_from)) if channel_cfg.allow_from else "[dim]-[/dim]",
            )
    console.print(table)


def _build_runtime(config):
    """State, memory and pool shared by the gateway and send commands."""
    from g_bridge.agent.memory import WorkspaceMemory
    from g_bridge.channels.manager import ChannelPool
    from g_bridge.providers.factory import build_provider, build_title_generator
    from g_bridge.session.manager import InMemorySessionStore, JsonlSessionStore, SessionTracker
    from g_bridge.state.context import BridgeState
    from g_bridge.state.store import ProactiveStateStore

    route = config.resolve_model_route()
    provider = build_provider(route, config)
    store = (
        JsonlSessionStore(config.sessions.directory)
        if config.sessions.persist
        else InMemorySessionStore()
    )
    state = BridgeState.persistent(
        ProactiveStateStore(Path(config.proactive.state_file)),
        sessions=SessionTracker(
            store,
            title_generator=build_title_generator(provider, route.model),
            max_turns=config.agents.defaults.max_history_turns,
        ),
    )
    memory = (
        WorkspaceMemory(config.workspace_path, max_chars=config.memory.max_chars)
        if config.memory.enabled
        else None
    )
    return ChannelPool(config, state=state, memory=memory), route


def _build_scheduler(pool, config, now=None):
    """Scheduled proactive sends, sharing the pool's persisted state."""
    from g_bridge.proactive.scheduler import ProactiveScheduler
    from g_bridge.proactive.sender import ProactiveSender

    return ProactiveScheduler(
        ProactiveSender(pool, now=now),
        config.proactive.schedules,
        store=pool.state.store,
        now=now,
    )


@app.command()
def gateway(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Start every enabled channel connection and run until Ctrl-C."""
    from g_bridge.config.loader import get_config_path, load_config

    _configure_logging(verbose)
    config = load_config()
    if not config.assistants:
        _cli_fail(
            "No assistants configured.",
            f"Add an entry under assistants in {get_config_path()}",
        )

    pool, route = _build_runtime(config)
    if not route.api_key and route.provider == "unresolved":
        _cli_fail(
            f"No API key configured for model '{route.model}'.",
            f"Set providers.<name>.apiKey in {get_config_path()}",
        )

    console.print(f"{__logo__} Starting {__brand__} gateway...")

    scheduler = _build_scheduler(pool, config)

    async def run():
        try:
            failures = await pool.start_all()
            for (assistant_id, platform), error in failures.items():
                console.print(f"[red]✗[/red] {platform} for {assistant_id}: {error}")
            for key, info in pool.status().items():
                console.print(f"[green]✓[/green] {key}: {info['status']}")
            if not pool.channels:
                console.print("[yellow]No channel connected; exiting.[/yellow]")
                return
            scheduler.start()
            if scheduler.schedules:
                console.print(f"[green]✓[/green] proactive scheduler: {len(scheduler.schedules)} schedule(s)")
            await asyncio.Event().wait()
        except KeyboardInterrupt:
            console.print("\nShutting down...")
        finally:
            await scheduler.stop()
            await pool.stop_all()
            await pool.state.sessions.drain()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\nGateway stopped.")


@app.command()
def send(
    assistant_id: str = typer.Argument(..., help="Assistant id"),
    text: str = typer.Argument(..., help="Message text"),
    platform: str = typer.Option("dingtalk", "--platform", "-p", help="dingtalk|telegram|feishu"),
    target: list[str] = typer.Option(None, "--target", "-t", help="user:<id> or group:<id>; repeatable"),
    title: str = typer.Option("", "--title", help="Markdown title (DingTalk)"),
    force: bool = typer.Option(False, "--force", help="Send even during quiet hours"),
):
    """Send a proactive message as an assistant."""
    from g_bridge.config.loader import load_config
    from g_bridge.proactive.sender import ProactiveSender

    config = load_config()
    if config.get_assistant(assistant_id) is None:
        _cli_fail(f"Unknown assistant: {assistant_id}", "Run `g-bridge status` to list assistants")

    pool, _ = _build_runtime(config)
    sender = ProactiveSender(pool)
    result = asyncio.run(
        sender.send(
            assistant_id,
            text,
            platform=platform,
            targets=list(target or []),
            title=title,
            force=force,
        )
    )

    for target_id in result.sent:
        console.print(f"[green]✓[/green] sent to {target_id}")
    for target_id in result.skipped:
        console.print(f"[yellow]-[/yellow] skipped {target_id} (flagged as risky)")
    if not result.ok:
        _cli_fail(f"Send failed: {result.error}")
