"""
CLI interface for shell-ai.

Ask a model from the terminal and inspect the request log.
"""

import json
import logging
import sys
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.markup import escape
from rich.rule import Rule
from rich.table import Table

from shell_ai.config.loader import load_config
from shell_ai.core.pricing import CostEstimator
from shell_ai.sdk.llm_client import LLMClient, TransportError
from shell_ai.storage.ledger import DISABLE_ENV_VAR, ConfigError, RequestLedger, open_ledger
from shell_ai.storage.models import LedgerEntry

app = typer.Typer()
console = Console()
err_console = Console(stderr=True)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

RESPONSE_PREVIEW_CHARS = 500


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """shell-ai: ask a language model from your terminal."""
    if ctx.invoked_subcommand is None:
        console.print("shell-ai - Use --help to see available commands")


@app.command()
def ask(
    query: List[str] = typer.Argument(..., help="Question to send to the model"),
    model: Optional[str] = typer.Option(
        None,
        "--model",
        "-m",
        help="Model profile to use (defaults to preferences.default_model)"
    ),
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file (defaults to ~/.shell-ai/config.yaml)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """Send a query and stream the answer."""
    _configure_logging(verbose)
    text = " ".join(query)

    try:
        app_config = load_config(config_path)
        model_config = app_config.get_model(model)
        client = LLMClient(
            model_config,
            cost_estimator=CostEstimator(app_config.pricing_table())
        )
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        err_console.print(f"[red]Configuration error:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_FAIL)

    with client:
        try:
            with Live(console=console, refresh_per_second=12) as live:
                answer = client.query(text, sink=lambda so_far: live.update(Markdown(so_far)))
                live.update(Markdown(answer))
        except TransportError as e:
            err_console.print(f"[red]Error:[/] {escape(str(e))}")
            sys.exit(EXIT_CODE_FAIL)


@app.command()
def logs(
    limit: int = typer.Option(3, "--limit", "-n", help="Number of recent entries to display"),
    as_json: bool = typer.Option(False, "--json", help="Output in JSON format"),
    show_path: bool = typer.Option(False, "--path", help="Show the path to the logs database"),
    status: bool = typer.Option(False, "--status", help="Show database statistics")
):
    """View recent requests, token usage and costs."""
    try:
        ledger = open_ledger()
    except ConfigError as e:
        err_console.print(f"[red]Error opening logs database:[/] {escape(str(e))}")
        sys.exit(EXIT_CODE_FAIL)

    with ledger:
        if show_path:
            typer.echo(ledger.path())
            return

        if status:
            _display_status(ledger)
            return

        entries = ledger.recent(limit)
        if not entries:
            console.print("No logs found. Make some requests to see them here!")
            return

        if as_json:
            for entry in entries:
                typer.echo(json.dumps(entry.to_dict(), indent=2))
        else:
            _display_entries(entries)


def _format_cost(amount: float) -> str:
    return f"${amount:.6f}"


def _display_entries(entries: List[LedgerEntry]) -> None:
    """Render entries newest first, numbered oldest = 1."""
    for i, entry in enumerate(entries):
        header = (
            f"Entry {len(entries) - i} - "
            f"{entry.timestamp.strftime('%Y-%m-%d %H:%M:%S')} [{entry.model}]"
        )
        console.print(f"[bold blue]{escape(header)}[/]\n")
        console.print(f"[dim]Prompt:[/] {escape(entry.prompt_text)}\n")

        if entry.error:
            console.print(f"[dim]Response:[/] [red]ERROR: {escape(entry.error)}[/]\n")
        else:
            response = entry.response_text
            if len(response) > RESPONSE_PREVIEW_CHARS:
                response = response[:RESPONSE_PREVIEW_CHARS - 3] + "..."
            style = "green" if "```" in response else "default"
            console.print(f"[dim]Response:[/] [{style}]{escape(response)}[/]\n")

        console.print(
            f"[dim]Tokens:[/] {entry.prompt_tokens} input + "
            f"{entry.completion_tokens} output = {entry.total_tokens} total"
        )
        console.print(f"[dim]Cost:[/] {_format_cost(entry.estimated_cost)}")
        if entry.duration_ms > 0:
            console.print(f"[dim]Duration:[/] {entry.duration_ms}ms")
        if entry.id:
            console.print(f"[dim]Request ID:[/] {escape(entry.id)}")

        if i < len(entries) - 1:
            console.print(Rule(style="dim"))
            console.print()


def _display_status(ledger: RequestLedger) -> None:
    console.print(f"Database path: {escape(ledger.path())}")
    if not ledger.enabled:
        console.print(f"[yellow]Request logging is disabled ({DISABLE_ENV_VAR} is set)[/]")

    stats = ledger.stats()
    console.print(f"Total requests: {stats.total_requests}")
    if stats.total_requests == 0:
        return

    console.print(f"Total tokens: {stats.total_tokens}")
    console.print(f"Total estimated cost: {_format_cost(stats.total_cost)}")

    table = Table(title="Requests by model")
    table.add_column("Model")
    table.add_column("Requests", justify="right")
    for model, count in stats.requests_by_model.items():
        table.add_row(escape(model), str(count))
    console.print(table)


if __name__ == "__main__":
    app()
