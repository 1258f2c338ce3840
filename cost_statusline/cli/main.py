"""
CLI interface for the cost statusline.

Invoked without a command it reads the hook document from stdin and prints
one statusline. ``init`` and ``status`` help set up and inspect the caches.
"""

import logging
import os
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from cost_statusline.cli.hook_input import HookInputError, parse_hook_input
from cost_statusline.cli.render import render_json, render_text
from cost_statusline.config.loader import StatuslineConfig, apply_env_overrides, load_config
from cost_statusline.config.log_setup import configure_logging
from cost_statusline.core.engine import LATEST_RESET_KEY, UsageEngine
from cost_statusline.core.pricing import resolve_pricing_table
from cost_statusline.core.transcripts import claude_roots
from cost_statusline.storage.repository import SCHEMA_VERSION, PersistentCache

app = typer.Typer()
console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)

logger = logging.getLogger(__name__)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1  # Fatal input error, nothing printed on stdout


def _load_config(config_path: Optional[str], log_level: Optional[str]) -> StatuslineConfig:
    """Load configuration, falling back to defaults when the file is unusable."""
    configure_logging(log_level or os.environ.get("CLAUDE_STATUSLINE_LOG_LEVEL", "WARNING"))
    try:
        config = load_config(config_path)
    except (OSError, yaml.YAMLError, ValueError) as e:
        logger.warning(f"Ignoring statusline config: {e}")
        config = apply_env_overrides(StatuslineConfig(), os.environ)
    configure_logging(log_level or config.log_level)
    return config


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Print the report as one JSON line"),
    no_color: bool = typer.Option(False, "--no-color", help="Disable colour output"),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Diagnostics level on stderr (DEBUG, INFO, WARNING, ERROR)",
    ),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to statusline YAML config"),
):
    """Cost and usage statusline."""
    config = _load_config(config_path, log_level)
    ctx.obj = config
    if ctx.invoked_subcommand is not None:
        return

    try:
        hook = parse_hook_input(sys.stdin.read())
    except HookInputError as e:
        err_console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    report = UsageEngine(config).report(hook)

    if json_output:
        typer.echo(render_json(report))
    else:
        colour = not no_color and not os.environ.get("NO_COLOR")
        output = Console(highlight=False, no_color=not colour, force_terminal=colour or None, soft_wrap=True)
        output.print(render_text(report))
    sys.exit(EXIT_CODE_PASS)


@app.command()
def init(ctx: typer.Context):
    """Initialize the persistent cache database."""
    config: StatuslineConfig = ctx.obj
    if not config.db_enabled:
        console.print("[yellow]![/] Persistent cache is disabled, nothing to initialize")
        sys.exit(EXIT_CODE_PASS)

    cache = PersistentCache(config.db_path)
    if cache.initialize_schema():
        console.print(f"[green]✓[/] Cache database initialized at {config.db_path}")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]Error initializing cache database at {config.db_path}[/]")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show resolved configuration and cache state."""
    config: StatuslineConfig = ctx.obj
    pricing = resolve_pricing_table(configured_path=config.pricing_path)
    roots = claude_roots(config.roots_override)

    table = Table(title="Cost Statusline")
    table.add_column("Setting", style="bold", no_wrap=True)
    table.add_column("Value")

    table.add_row("Transcript roots", ", ".join(str(r) for r in roots) or "(none found)")
    table.add_row("Pricing source", pricing.source)
    table.add_row("Window anchor", config.window_anchor.value)
    table.add_row("Remote usage", "enabled" if config.fetch_usage else "disabled")
    table.add_row("Local cache TTL", f"{config.local_ttl}s")

    if config.db_enabled and os.path.exists(config.db_path):
        cache = PersistentCache(config.db_path)
        state = "ready" if cache.get_metadata("schema_version") == SCHEMA_VERSION else "unavailable"
        table.add_row("Cache database", f"{config.db_path} ({state})")
        table.add_row("Last limit reset", cache.get_metadata(LATEST_RESET_KEY) or "(none seen)")
    elif config.db_enabled:
        table.add_row("Cache database", f"{config.db_path} (not initialized)")
    else:
        table.add_row("Cache database", "disabled")

    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
