"""
main.py — ForgePilot Entry Point

Usage:
    forgepilot run "Add a dark-mode toggle"               # current directory
    forgepilot run "Fix the failing test" --dir ./webapp
    forgepilot run "Rename utils.js" --atomic --yes       # no approval prompts
    forgepilot run "..." --log-level DEBUG --config path/to/config.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.syntax import Syntax
from rich.table import Table
from rich import box

console = Console()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="forgepilot",
        description="ForgePilot: plan and apply AI-proposed code changes",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Plan and execute a coding task")
    run.add_argument("task", help="Natural-language description of the task")
    run.add_argument(
        "--dir",
        default=".",
        help="Project directory the agent works in (default: current directory)",
    )
    run.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $FORGEPILOT_CONFIG or config/config.yaml)",
    )
    run.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    run.add_argument(
        "--atomic",
        action="store_true",
        default=False,
        help="Apply proposed changes all-or-nothing",
    )
    run.add_argument(
        "--yes",
        action="store_true",
        default=False,
        help="Approve the plan, every gated action and the change batch automatically",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from pydantic import ValidationError

    from forgepilot.config.settings import ConfigError, load_settings
    from forgepilot.observability.logger import get_logger, setup_logging

    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n", file=sys.stderr)
        sys.exit(1)

    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )
    return settings, get_logger("forgepilot.main")


def build_llm_client(settings):
    """Primary provider plus configured fallbacks, wrapped with retry/failover."""
    from forgepilot.brain.llm_client import ResilientLLMClient, create_llm_client

    def _client(provider: str):
        base_url = settings.openai_base_url if provider == "openai" else None
        return create_llm_client(provider, settings.api_key_for(provider), base_url=base_url)

    retry = settings.llm.retry
    return ResilientLLMClient(
        primary=_client(settings.llm.default_provider),
        fallbacks=[_client(p) for p in settings.llm.fallback_providers],
        max_attempts=retry.max_attempts,
        base_delay=retry.base_delay,
        max_delay=retry.max_delay,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Rendering
# ─────────────────────────────────────────────────────────────────────────────


def _render_plan(plan) -> None:
    table = Table(box=box.SIMPLE_HEAVY, show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Step")
    table.add_column("Tool", style="magenta")
    table.add_column("Depends on", style="dim")
    for action in plan.steps:
        table.add_row(
            str(action.id),
            action.description,
            action.tool,
            ", ".join(str(d) for d in action.depends_on) or "-",
        )
    console.print(Panel(table, title=f"[bold]Plan[/]: {plan.summary or 'untitled'}", border_style="cyan"))


def _render_action(action, tool) -> None:
    params = "\n".join(f"{k}: {str(v)[:300]}" for k, v in action.params.items()) or "(no parameters)"
    console.print(
        Panel(
            f"[bold]{action.description}[/]\n\n[magenta]{tool.id}[/]\n{params}",
            title="[bold yellow]⚠ Approval Required[/]",
            border_style="yellow",
            padding=(0, 2),
        )
    )


def _render_changes(changes) -> None:
    for change in changes:
        console.print(f"[bold]{change.summary()}[/]  [dim]{change.description}[/]")
        if change.diff:
            console.print(Syntax(change.diff, "diff", theme="ansi_dark", word_wrap=True))


def _render_summary(summary: dict) -> None:
    progress = summary["progress"]
    colour = "green" if summary["state"] == "complete" else "red"
    console.print(
        f"\n[{colour}]● {summary['state']}[/]  "
        f"{progress['completed']}/{progress['total']} complete, "
        f"{progress['failed']} failed, {progress['rejected']} rejected, "
        f"{progress['pending']} pending\n"
    )


# ─────────────────────────────────────────────────────────────────────────────
# Run
# ─────────────────────────────────────────────────────────────────────────────


async def run_task(args: argparse.Namespace, settings, log) -> int:
    from forgepilot.agent.orchestrator import AgentOrchestrator, AgentState
    from forgepilot.agent.planner import PlanGenerator
    from forgepilot.brain.llm_client import LLMError
    from forgepilot.brain.model_selector import ModelSelector
    from forgepilot.composer.composer import ChangeComposer
    from forgepilot.context.provider import FileStoreContextProvider
    from forgepilot.exceptions import AtomicApplyFailure, ForgePilotError
    from forgepilot.files.store import DirectoryFileStore
    from forgepilot.tools.builtin import TerminalRunner, register_default_tools
    from forgepilot.tools.registry import ToolRegistry

    try:
        llm = build_llm_client(settings)
    except (LLMError, ValueError) as e:
        log.error("forgepilot.llm_init_failed", error=str(e), error_type=type(e).__name__)
        print(f"\n❌  Failed to initialise LLM provider '{settings.default_llm_provider}': {e}\n", file=sys.stderr)
        return 1

    root = Path(args.dir).expanduser().resolve()
    store = DirectoryFileStore(root)
    composer = ChangeComposer.from_settings(
        settings,
        store,
        on_warning=lambda msg: console.print(f"[yellow]⚠ {msg}[/]"),
    )
    if args.atomic:
        composer.atomic_mode = True

    terminal = TerminalRunner(working_dir=root, timeout_seconds=settings.tools.terminal.timeout_seconds)
    registry = register_default_tools(ToolRegistry(), store, composer=composer, terminal=terminal)
    selector = ModelSelector(
        settings.models.tiers(),
        failure_window_seconds=settings.models.failure_window_seconds,
        max_failures_before_skip=settings.models.max_failures_before_skip,
    )
    planner = PlanGenerator.from_settings(settings, llm, selector=selector)

    orchestrator = AgentOrchestrator.from_settings(
        settings,
        planner,
        registry,
        context=FileStoreContextProvider(store),
        on_action_complete=lambda a: console.print(f"  [green]✓[/] {a.id}. {a.description}"),
        on_error=lambda err, action=None: console.print(f"  [red]✗ {err}[/]"),
    )
    if args.yes:
        orchestrator.require_approval = False

    log.info("forgepilot.run", task=args.task[:120], root=str(root), atomic=composer.atomic_mode)

    try:
        with console.status("[cyan]Planning…[/]"):
            plan = await orchestrator.start_task(args.task)
    except (ForgePilotError, LLMError) as e:
        print(f"\n❌  Planning failed: {e}\n", file=sys.stderr)
        return 1

    _render_plan(plan)
    if not args.yes and not Confirm.ask("  Execute this plan?", default=True, console=console):
        await orchestrator.reject_plan("Declined at prompt")
        console.print("[dim]Plan rejected.[/]")
        return 0

    await orchestrator.approve_plan()
    while orchestrator.state == AgentState.AWAITING_APPROVAL and orchestrator.pending_action is not None:
        _render_action(orchestrator.pending_action, orchestrator.pending_tool)
        if Confirm.ask("  Allow this action?", default=False, console=console):
            await orchestrator.approve_action()
        else:
            await orchestrator.reject_action("Denied at prompt")

    if composer.pending:
        console.print(Panel("[bold]Proposed changes[/]", border_style="cyan"))
        _render_changes(composer.ordered_changes())
        if args.yes or Confirm.ask("  Apply these changes?", default=True, console=console):
            try:
                report = await composer.apply_all()
            except AtomicApplyFailure as e:
                console.print(f"[red]✗ {e}[/]\n[dim]All touched files were restored.[/]")
            else:
                console.print(f"[green]Applied {len(report.applied)}/{report.total} change(s)[/]")
                for change in report.failed:
                    console.print(f"  [red]✗ {change.summary()}: {change.error}[/]")
        else:
            composer.reject_all()

    summary = orchestrator.execution_summary()
    _render_summary(summary)
    return 0 if summary["state"] == AgentState.COMPLETE.value else 1


async def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    settings, log = bootstrap(args)
    log.info(
        "forgepilot.starting",
        llm_provider=settings.default_llm_provider,
        llm_model=settings.default_llm_model,
    )
    if args.command == "run":
        return await run_task(args, settings, log)
    return 1


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
