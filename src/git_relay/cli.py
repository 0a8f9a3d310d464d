import argparse
import logging
import sys
from datetime import datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import daemon
from .config import Config, ConfigError, example_config, resolve_config_path
from .constants import APP_NAME, APP_VERSION
from .ledger import (
    STATUS_FAILED,
    STATUS_RUNNING,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    LedgerError,
    TransactionRecord,
)
from .scheduler import JobBusyError, JobNotFoundError, JobStatus
from .sync import RepoOutcome, SyncError

logger = logging.getLogger(APP_NAME)
console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    STATUS_SUCCESS: "green",
    STATUS_FAILED: "bold red",
    STATUS_SKIPPED: "dim",
    STATUS_RUNNING: "blue",
}

STATE_STYLES = {
    "scheduled": "green",
    "running": "bold blue",
    "unscheduled": "yellow",
    "stopped": "red",
}


def _fmt_time(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _fmt_duration(seconds: float | None) -> str:
    return "-" if seconds is None else f"{seconds:.1f}s"


def _styled(value: str, styles: dict[str, str]) -> str:
    style = styles.get(value, "white")
    return f"[{style}]{value}[/{style}]"


def _load_config(args: argparse.Namespace) -> Config:
    """Loads the configuration selected by --config, exiting on failure."""
    path = resolve_config_path(args.config)
    try:
        return Config.load(path)
    except ConfigError as e:
        err_console.print(f"[bold red]Config Error:[/bold red] {e}")
        sys.exit(1)


# --- Commands ---


def cmd_serve(args: argparse.Namespace) -> int:
    config = _load_config(args)
    return daemon.serve(config, initial_run=not getattr(args, "no_initial_run", False))


def cmd_validate(args: argparse.Namespace) -> int:
    config = _load_config(args)
    console.print(
        f"[bold green]Configuration is valid[/bold green] "
        f"({len(config.jobs)} jobs, {len(config.enabled_jobs())} enabled)"
    )
    return 0


def _outcome_table(outcomes: list[RepoOutcome]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Repository", style="cyan")
    table.add_column("Branch")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Commit", style="dim")
    table.add_column("Error", style="red")

    for outcome in outcomes:
        for record in outcome.records:
            table.add_row(
                outcome.repo,
                record.branch,
                record.target,
                _styled(record.status, STATUS_STYLES),
                record.commit_hash[:12],
                record.error or "",
            )
        for error in outcome.errors:
            table.add_row(
                outcome.repo, "-", "-", _styled(STATUS_FAILED, STATUS_STYLES), "", error
            )
        if not outcome.records and not outcome.errors:
            table.add_row(outcome.repo, "-", "-", "[dim]no branches[/dim]", "", "")
    return table


def cmd_run_job(args: argparse.Namespace) -> int:
    config = _load_config(args)
    daemon.setup_logging(config.logging)
    try:
        _, _, scheduler = daemon.build_services(config)
        with console.status(f"Running job '{args.name}'...", spinner="dots"):
            outcomes = scheduler.run_now(args.name)
    except (JobNotFoundError, JobBusyError, LedgerError) as e:
        err_console.print(f"[bold red]ERROR:[/bold red] {e}")
        return 1
    except SyncError as e:
        console.print(_outcome_table(e.outcomes))
        err_console.print(f"[bold red]Job '{args.name}' failed.[/bold red]")
        return 1

    console.print(_outcome_table(outcomes))
    console.print(f"[bold green]✔ Job '{args.name}' completed.[/bold green]")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    config = _load_config(args)
    try:
        ledger, _, _ = daemon.build_services(config)
        stats = ledger.aggregate_stats()
    except LedgerError as e:
        err_console.print(f"[bold red]ERROR:[/bold red] {e}")
        return 1

    table = Table(
        title="Transaction Statistics", show_header=True, header_style="bold magenta"
    )
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Total", str(stats.total))
    table.add_row("Succeeded", f"[green]{stats.succeeded}[/green]")
    table.add_row("Failed", f"[red]{stats.failed}[/red]")
    table.add_row("Skipped", f"[dim]{stats.skipped}[/dim]")
    table.add_row("Avg. push duration", _fmt_duration(stats.avg_duration_seconds))
    console.print(table)
    return 0


def _records_table(
    records: list[TransactionRecord], title: str | None = None
) -> Table:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Started", style="dim")
    table.add_column("Repository", style="cyan")
    table.add_column("Branch")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Commit", style="dim")
    table.add_column("Duration", justify="right")
    table.add_column("Error", style="red")
    for record in records:
        table.add_row(
            _fmt_time(record.start_time),
            record.repo_name,
            record.branch,
            record.target,
            _styled(record.status, STATUS_STYLES),
            record.commit_hash[:12],
            _fmt_duration(record.duration),
            record.error or "",
        )
    return table


def _status_panel(status: JobStatus) -> Panel:
    content = Text()
    content.append("State:     ", style="bold")
    content.append(
        status.state + "\n", style=STATE_STYLES.get(status.state, "white")
    )
    content.append("Schedule:  ", style="bold")
    content.append(f"{status.schedule}\n")
    content.append("Next run:  ", style="bold")
    content.append(f"{_fmt_time(status.next_run)}\n")
    content.append("Last run:  ", style="bold")
    content.append(
        f"{_fmt_time(status.prev_run)} ({_fmt_duration(status.last_duration)})"
    )
    if status.last_error:
        content.append("\nLast error: ", style="bold")
        content.append(status.last_error, style="red")
    title = status.name
    if status.description:
        title = f"{status.name}: {status.description}"
    return Panel(content, title=title, expand=False)


def cmd_status(args: argparse.Namespace) -> int:
    config = _load_config(args)
    try:
        _, _, scheduler = daemon.build_services(config)
        if args.name:
            status = scheduler.job_status(args.name)
            console.print(_status_panel(status))
            if status.recent:
                console.print(
                    _records_table(status.recent, title="Recent Transactions")
                )
            return 0
        statuses = scheduler.all_statuses()
    except (JobNotFoundError, LedgerError) as e:
        err_console.print(f"[bold red]ERROR:[/bold red] {e}")
        return 1

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Job", style="cyan")
    table.add_column("State")
    table.add_column("Schedule", style="dim")
    table.add_column("Next Run", justify="right")
    table.add_column("Last Result")
    for status in statuses:
        if status.recent:
            last = _styled(status.recent[0].status, STATUS_STYLES)
        else:
            last = "[dim]never run[/dim]"
        table.add_row(
            status.name,
            _styled(status.state, STATE_STYLES),
            status.schedule,
            _fmt_time(status.next_run),
            last,
        )
    console.print(table)
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    config = _load_config(args)
    try:
        ledger, _, _ = daemon.build_services(config)
        records = ledger.list_by_job(args.name, args.limit)
    except LedgerError as e:
        err_console.print(f"[bold red]ERROR:[/bold red] {e}")
        return 1
    if not records:
        console.print(f"[yellow]No transactions recorded for '{args.name}'.[/yellow]")
        return 0
    console.print(_records_table(records, title=f"History of {args.name}"))
    return 0


def cmd_example_config(_args: argparse.Namespace) -> int:
    # Plain print so the output can be redirected into a file verbatim.
    print(example_config(), end="")
    return 0


def cmd_version(_args: argparse.Namespace) -> int:
    console.print(f"{APP_NAME} {APP_VERSION}")
    return 0


COMMANDS = {
    "serve": cmd_serve,
    "validate": cmd_validate,
    "run-job": cmd_run_job,
    "stats": cmd_stats,
    "status": cmd_status,
    "history": cmd_history,
    "example-config": cmd_example_config,
    "version": cmd_version,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Mirror git repositories to other remotes on a schedule.",
    )
    parser.add_argument(
        "--config",
        "-c",
        default=None,
        help="Configuration file (default: ./git-relay.toml, "
        "then ~/.config/git-relay/config.toml)",
    )

    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the scheduler (default)")
    serve_parser.add_argument(
        "--no-initial-run",
        action="store_true",
        help="Do not run every enabled job once at startup",
    )
    subparsers.add_parser("validate", help="Validate the configuration file")

    run_parser = subparsers.add_parser("run-job", help="Run one job immediately")
    run_parser.add_argument("name", help="Job name")

    subparsers.add_parser("stats", help="Show transaction statistics")

    status_parser = subparsers.add_parser("status", help="Show job status")
    status_parser.add_argument("name", nargs="?", help="Job name (default: all jobs)")

    history_parser = subparsers.add_parser("history", help="Show recent transactions")
    history_parser.add_argument("name", help="Job name")
    history_parser.add_argument(
        "--limit", "-n", type=int, default=20, help="Maximum records (default: 20)"
    )

    subparsers.add_parser("example-config", help="Print an example configuration")
    subparsers.add_parser("version", help="Show the version")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the git-relay CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Default Action (if no subcommand is run)
    command = COMMANDS[args.command or "serve"]
    code = command(args)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
