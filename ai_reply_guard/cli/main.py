"""
CLI interface for AI Reply Guard.

Runs the bot and gives operators access to the spend ledger and prompt.
"""

import logging
import os
import sys
from decimal import Decimal
from typing import Optional, Union

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from ai_reply_guard.config.loader import load_bot_config, update_system_prompt
from ai_reply_guard.storage.ledger import BudgetLedger, utc_day
from ai_reply_guard.storage.models import to_amount

app = typer.Typer()
prompt_app = typer.Typer(help="Show or edit the AI system prompt.")
app.add_typer(prompt_app, name="prompt")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_CONFIG_PATH = "config.yaml"


def _config_option():
    return typer.Option(
        DEFAULT_CONFIG_PATH,
        "--config",
        "-c",
        help="Path to the bot configuration file"
    )


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI Reply Guard CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Reply Guard - Use --help to see available commands")


@app.command()
def init(config: str = _config_option()):
    """Create an empty spend ledger if none exists."""
    try:
        bot_config = load_bot_config(config)
        ledger = BudgetLedger(bot_config.ledger_path)
        ledger.load()
        if not ledger.save():
            console.print(f"[red]Could not write ledger to[/] {bot_config.ledger_path}")
            sys.exit(EXIT_CODE_FAIL)
        console.print(f"[green]✓[/] Ledger ready at {bot_config.ledger_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing ledger:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def usage(
    config: str = _config_option(),
    day: Optional[str] = typer.Option(
        None,
        "--day",
        "-d",
        help="Ledger day (YYYY-MM-DD, UTC); defaults to today"
    ),
    history: bool = typer.Option(
        False,
        "--history",
        help="List every recorded day instead of one day's users"
    )
):
    """Show AI spend for a day against the budget."""
    try:
        bot_config = load_bot_config(config)
        ledger = BudgetLedger(bot_config.ledger_path)
        ledger.load()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    budget = to_amount(bot_config.budget.daily)

    if history:
        recorded = ledger.days()
        if not recorded:
            console.print("[dim]No AI usage recorded.[/]")
            sys.exit(EXIT_CODE_PASS)
        table = Table(title="AI usage by day")
        table.add_column("Day")
        table.add_column("Spend", justify="right")
        table.add_column("Users", justify="right")
        for recorded_day in recorded:
            entry = ledger.get_entry(recorded_day)
            table.add_row(recorded_day, _format_currency(entry.total_usd), str(len(entry.users)))
        console.print(table)
        sys.exit(EXIT_CODE_PASS)

    day = day or utc_day()
    entry = ledger.get_entry(day)

    console.print(f"\n[bold]AI usage for {day}[/bold]")
    console.print("-" * 40)
    console.print(f"Total spend: {_format_currency(entry.total_usd)} / {_format_currency(budget)}")
    console.print(f"Remaining: {_format_currency(max(budget - entry.total_usd, Decimal(0)))}")

    if not entry.users:
        console.print("\n[dim]No AI usage recorded for this day.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table()
    table.add_column("User")
    table.add_column("Spend", justify="right")
    for user_id, amount in sorted(entry.users.items(), key=lambda item: item[1], reverse=True):
        table.add_row(user_id, _format_currency(amount))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@prompt_app.command("show")
def prompt_show(config: str = _config_option()):
    """Print the current system prompt."""
    try:
        bot_config = load_bot_config(config)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(bot_config.system_prompt, markup=False)
    sys.exit(EXIT_CODE_PASS)


@prompt_app.command("set")
def prompt_set(
    text: str = typer.Argument(..., help="New system prompt"),
    config: str = _config_option()
):
    """Replace the system prompt; takes effect on the next bot start."""
    try:
        update_system_prompt(config, text)
    except Exception as e:
        console.print(f"[red]Error updating prompt:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print("[green]✓[/] System prompt updated")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def run(
    config: str = _config_option(),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level")
):
    """Connect to Discord and answer mentions."""
    from ai_reply_guard.bot.discord_adapter import MentionBot

    load_dotenv()
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    token = os.getenv("BOT_TOKEN")
    if not token:
        console.print("[red]Error:[/] BOT_TOKEN is not set")
        sys.exit(EXIT_CODE_FAIL)
    try:
        bot_config = load_bot_config(config)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    MentionBot(bot_config).run(token, log_handler=None)


def _format_currency(amount: Union[float, Decimal]) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.4f}"


if __name__ == "__main__":
    app()
