"""
Codepilot command line.

Usage:
    codepilot serve                         # HTTP API on CODEPILOT_HOST:CODEPILOT_PORT
    codepilot budget --max 8192 --system 1200 --messages 5000
    codepilot analyze history.json          # recommendations for a saved history
    codepilot optimize history.json --strategy compress -o smaller.json
    codepilot agent "Build a full app with authentication and database"

History files are JSON lists of {"role": ..., "content": ...} objects;
"-" reads from stdin.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table

from codepilot.agents.manager import AgentManager, format_agent_report
from codepilot.budget import ContextAllocator
from codepilot.config import Settings
from codepilot.context import Message, to_messages
from codepilot.errors import CodepilotError
from codepilot.memory.settings_store import SettingsStore
from codepilot.optimization import ContextOptimizer, OptimizationSettings
from codepilot.tokens import estimate_messages_tokens

logger = logging.getLogger(__name__)

console = Console()

_SEVERITY_STYLES = {"high": "bold red", "medium": "yellow", "low": "dim"}


def setup_logging(level: str = "INFO") -> None:
    """Configure root logger with a readable format."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def load_history(path: str) -> list[Message]:
    raw = sys.stdin.read() if path == "-" else Path(path).read_text(encoding="utf-8")
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("History must be a JSON list of messages")
    return to_messages(data)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    from codepilot.server import start_server

    start_server(host=args.host, port=args.port, reload=args.reload)
    return 0


def cmd_budget(args: argparse.Namespace, settings: Settings) -> int:
    allocator = ContextAllocator(completion_reserve=args.reserve)
    budget = allocator.allocate(args.max, args.system, args.messages, args.files)

    table = Table(title=f"Context budget ({args.max} tokens)", box=box.ROUNDED, border_style="cyan")
    table.add_column("Component")
    table.add_column("Tokens", justify="right")
    table.add_row("System prompt", str(budget.system_tokens))
    table.add_row("Messages", str(budget.message_tokens))
    table.add_row("File context", str(budget.context_tokens))
    table.add_row("Completion reserve", str(budget.completion_tokens))
    table.add_row("[bold]Total[/bold]", f"[bold]{budget.total_used}[/bold]")
    console.print(table)

    if budget.can_fit:
        console.print("[bold green]✓ Fits[/bold green]")
        return 0
    console.print("[bold red]✗ Does not fit[/bold red]")
    return 1


def _optimizer(args: argparse.Namespace, settings: Settings) -> ContextOptimizer:
    if args.max_context:
        return ContextOptimizer(settings=OptimizationSettings(max_context_length=args.max_context))
    return ContextOptimizer(store=SettingsStore(settings.settings_db))


def cmd_analyze(args: argparse.Namespace, settings: Settings) -> int:
    messages = load_history(args.history)
    analysis = _optimizer(args, settings).analyze(messages)

    console.print(Rule("[bold cyan]Context analysis[/bold cyan]", style="cyan"))
    console.print(
        f"  Messages: [bold]{analysis.message_count}[/bold]   "
        f"Tokens: [bold]{analysis.total_tokens}[/bold]   "
        f"Est. cost: [bold]${analysis.estimated_cost:.3f}[/bold]",
        highlight=False,
    )

    if not analysis.recommendations:
        console.print("  [green]✓ No optimization needed[/green]")
        return 0

    table = Table(show_header=True, box=box.ROUNDED, border_style="magenta", padding=(0, 1))
    table.add_column("Strategy")
    table.add_column("Severity")
    table.add_column("Savings", justify="right")
    table.add_column("Description")
    for rec in analysis.recommendations:
        style = _SEVERITY_STYLES[rec.severity.value]
        table.add_row(
            rec.type.value,
            f"[{style}]{rec.severity.value}[/{style}]",
            str(rec.potential_savings),
            escape(rec.description),
        )
    console.print(table)
    return 0


def cmd_optimize(args: argparse.Namespace, settings: Settings) -> int:
    messages = load_history(args.history)
    optimized = _optimizer(args, settings).optimize(messages, args.strategy)

    before = estimate_messages_tokens(messages)
    after = estimate_messages_tokens(optimized)
    payload = json.dumps([m.to_dict() for m in optimized], indent=2, ensure_ascii=False)

    if args.output:
        Path(args.output).write_text(payload, encoding="utf-8")
        console.print(f"  [dim]Wrote:[/dim] [bold]{escape(args.output)}[/bold]", highlight=False)
    else:
        console.print_json(payload)

    console.print(
        f"  [bold green]✓[/bold green] {args.strategy}: {len(messages)} → {len(optimized)} messages, "
        f"{before} → {after} tokens",
        highlight=False,
    )
    return 0


def cmd_agent(args: argparse.Namespace, settings: Settings) -> int:
    from codepilot.llm.client import LLMClient

    agent_config = settings.agents
    if args.timeout:
        agent_config.timeout = args.timeout
    agent_config.enable_agents = True

    manager = AgentManager(agent_config, LLMClient(), history_store=SettingsStore(settings.settings_db))
    messages = [Message(role="user", content=args.request)]

    if not manager.should_use_agents(messages):
        console.print("[dim]Request looks simple; running the agent anyway.[/dim]")

    result = asyncio.run(manager.execute_with_agent(messages))
    console.print(
        Panel(
            escape(format_agent_report(result)),
            title="[bold]Agent result[/bold]",
            border_style="green" if result.success else "red",
        )
    )
    return 0 if result.success else 1


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="codepilot", description="Codepilot runtime tools")
    parser.add_argument("--log-level", default=None, help="Override CODEPILOT_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=cmd_serve)

    budget = sub.add_parser("budget", help="Allocate a context window")
    budget.add_argument("--max", type=int, required=True, help="Model context window")
    budget.add_argument("--system", type=int, required=True, help="System prompt tokens")
    budget.add_argument("--messages", type=int, required=True, help="Message history tokens")
    budget.add_argument("--files", type=int, default=0, help="File context tokens")
    budget.add_argument("--reserve", type=int, default=8000, help="Completion reserve")
    budget.set_defaults(func=cmd_budget)

    analyze = sub.add_parser("analyze", help="Recommend optimizations for a history file")
    analyze.add_argument("history")
    analyze.add_argument("--max-context", type=int, default=None)
    analyze.set_defaults(func=cmd_analyze)

    optimize = sub.add_parser("optimize", help="Apply an optimization strategy to a history file")
    optimize.add_argument("history")
    optimize.add_argument("--strategy", choices=["remove_old", "compress", "summarize"], required=True)
    optimize.add_argument("--max-context", type=int, default=None)
    optimize.add_argument("-o", "--output", default=None)
    optimize.set_defaults(func=cmd_optimize)

    agent = sub.add_parser("agent", help="Run a multi-step agent for a request")
    agent.add_argument("request")
    agent.add_argument("--timeout", type=float, default=None, help="Seconds")
    agent.set_defaults(func=cmd_agent)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    setup_logging(args.log_level or settings.log_level)

    try:
        return args.func(args, settings)
    except CodepilotError as exc:
        console.print(f"[bold red]✗ {escape(exc.user_message)}[/bold red]")
        if exc.suggestion:
            console.print(f"  [dim]{escape(exc.suggestion)}[/dim]")
        return 1
    except (OSError, ValueError) as exc:
        console.print(f"[bold red]✗ {escape(str(exc))}[/bold red]")
        return 2


if __name__ == "__main__":
    sys.exit(main())
