"""Command-line interface for worktimer.

CONCEPTS:
---------
- SESSION: A running or paused timer. Each user has at most one.
- LOG:     The immutable record written when a session is stopped.
- REPORT:  Totals, billable time and a member leaderboard for a range.
- EXPORT:  Time logs or a report as CSV (tabular) or JSON (structured).
"""

import argparse
import asyncio
import getpass
import logging
import sys
from typing import Any, NoReturn

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from worktimer import __version__
from worktimer.api import EndpointResult, TimerContext, create_endpoint_registry
from worktimer.clock import format_duration
from worktimer.config import settings
from worktimer.errors import ExportError
from worktimer.export import write_export
from worktimer.ranges import RANGE_NAMES

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.WARNING
    fmt = "%(name)s: %(message)s" if verbose else "%(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        handlers=[RichHandler(rich_tracebacks=True, console=console, show_path=verbose)],
    )


def _user(args: argparse.Namespace) -> str:
    return args.user or settings.default_user or getpass.getuser()


def _context() -> TimerContext:
    return TimerContext.from_settings(settings)


def _call(context: TimerContext, name: str, **kwargs: Any) -> EndpointResult:
    """Run an endpoint, exiting with an error message on failure."""
    registry = create_endpoint_registry(context)
    result = asyncio.run(registry.execute(name, **kwargs))
    if not result.success:
        if result.already_stopped:
            console.print("[yellow]Timer was already stopped.[/yellow]")
            sys.exit(0)
        console.print(f"[red]Error:[/red] {result.error}")
        if result.error_code == "conflict":
            console.print("[dim]Finish or stop your current timer first.[/dim]")
        sys.exit(1)
    return result


def _session_for(context: TimerContext, args: argparse.Namespace) -> str:
    """Resolve --session, defaulting to the user's active timer."""
    if args.session:
        return args.session
    active = context.service.get_active(_user(args))
    if active is None:
        console.print("[yellow]No timer is running.[/yellow]")
        sys.exit(1)
    return active.session_id


def cmd_start(args: argparse.Namespace) -> None:
    """Start a timer."""
    context = _context()
    result = _call(context, "timer_start", user_id=_user(args), task_id=args.task_id, description=args.message)
    console.print(f"[green]Started timer[/green] {result.output['session_id']} on [bold]{args.task_id}[/bold]")


def cmd_pause(args: argparse.Namespace) -> None:
    """Pause the running timer."""
    context = _context()
    result = _call(context, "timer_pause", user_id=_user(args), session_id=_session_for(context, args))
    console.print(f"[yellow]Paused[/yellow] at {format_duration(result.output['accumulated_seconds'])}")


def cmd_resume(args: argparse.Namespace) -> None:
    """Resume the paused timer."""
    context = _context()
    result = _call(context, "timer_resume", user_id=_user(args), session_id=_session_for(context, args))
    console.print(f"[green]Resumed[/green] {result.output['session_id']}")


def cmd_stop(args: argparse.Namespace) -> None:
    """Stop the timer and record the time log."""
    context = _context()
    result = _call(
        context,
        "timer_stop",
        user_id=_user(args),
        session_id=_session_for(context, args),
        description=args.message,
        is_billable=not args.non_billable,
    )
    log = result.output
    console.print(f"[green]Stopped[/green] {log['task_id']}: {log['duration']}")


def cmd_force_stop(args: argparse.Namespace) -> None:
    """Stop another user's timer."""
    context = _context()
    result = _call(context, "timer_force_stop", session_id=args.session_id, description=args.message)
    log = result.output
    console.print(f"[green]Force-stopped[/green] {log['user_id']} on {log['task_id']}: {log['duration']}")


def cmd_active(args: argparse.Namespace) -> None:
    """Show who is working on what right now."""
    context = _context()
    result = _call(
        context,
        "active_sessions",
        task_type=args.type,
        priority=args.priority,
        project_id=args.project,
    )
    sessions = result.output["sessions"]

    if not sessions:
        console.print("[yellow]Nobody is tracking time right now.[/yellow]")
        return

    table = Table(title="Active Timers")
    table.add_column("User", style="cyan")
    table.add_column("Task", style="white")
    table.add_column("State", style="yellow")
    table.add_column("Elapsed", style="green")
    table.add_column("Session", style="dim")

    for s in sessions:
        task = s["task_title"] or s["task_id"]
        table.add_row(s["user_id"], task, s["state"], format_duration(s["elapsed_seconds"]), s["session_id"])

    console.print(table)


def cmd_report(args: argparse.Namespace) -> None:
    """Show totals and the member leaderboard for a range."""
    context = _context()
    result = _call(
        context,
        "aggregate",
        range=args.range,
        start=args.start,
        end=args.end,
        member_id=args.member,
        task_id=args.task,
        project_id=args.project,
    )
    snap = result.output

    console.print(f"[bold]Time Report[/bold] {snap['range_start']} .. {snap['range_end']}")
    console.print(f"  Total:            {format_duration(snap['total_seconds'])}")
    console.print(f"  Billable:         {format_duration(snap['billable_seconds'])}")
    console.print(f"  Tasks completed:  {snap['tasks_completed_count']}")
    console.print(f"  Avg per task:     {format_duration(int(snap['avg_seconds_per_task']))}")
    console.print()

    if not snap["members"]:
        console.print("[yellow]No time logged in this range.[/yellow]")
        return

    table = Table(title="Leaderboard")
    table.add_column("#", style="dim")
    table.add_column("Member", style="cyan")
    table.add_column("Total", style="green")
    table.add_column("Billable", style="green")
    table.add_column("Done", style="magenta")
    table.add_column("Efficiency", style="yellow")

    for rank, m in enumerate(snap["members"], start=1):
        table.add_row(
            str(rank),
            m["user_id"],
            format_duration(m["total_seconds"]),
            format_duration(m["billable_seconds"]),
            str(m["tasks_completed_count"]),
            f"{m['efficiency_score']:.2f}",
        )

    console.print(table)


def cmd_logs(args: argparse.Namespace) -> None:
    """List recorded time logs, newest first."""
    context = _context()
    billable = {"yes": True, "no": False}.get(args.billable)
    result = _call(
        context,
        "time_logs",
        range=args.range,
        start=args.start,
        end=args.end,
        member_id=args.member,
        project_id=args.project,
        task_type=args.type,
        is_billable=billable,
        page=args.page,
        limit=args.limit,
    )
    rows = result.output["data"]
    pagination = result.output["pagination"]

    if not rows:
        console.print("[yellow]No time logs match.[/yellow]")
        return

    table = Table(title=f"Time Logs (page {pagination['page']} of {pagination['total_pages']})")
    table.add_column("Started", style="dim")
    table.add_column("Member", style="cyan")
    table.add_column("Task", style="white")
    table.add_column("Duration", style="green")
    table.add_column("Billable", style="magenta")

    for row in rows:
        table.add_row(
            row["start_time"],
            row["user_id"],
            row["task_title"] or row["task_id"],
            row["duration"],
            "yes" if row["is_billable"] else "no",
        )

    console.print(table)
    console.print(f"[dim]{pagination['total']} logs in total[/dim]")


def cmd_export(args: argparse.Namespace) -> None:
    """Export time logs or a report."""
    context = _context()
    result = _call(
        context,
        "export",
        range=args.range,
        format=args.format,
        kind=args.kind,
        start=args.start,
        end=args.end,
        member_id=args.member,
        with_task_details=not args.no_task_details,
    )
    chunks = result.output["chunks"]

    try:
        if args.output:
            written = write_export(chunks, args.output)
            console.print(f"[green]Exported[/green] to {args.output} ({written} chars)")
            return

        for chunk in chunks:
            sys.stdout.write(chunk)
        sys.stdout.flush()
    except ExportError as e:
        console.print(f"[red]Export failed:[/red] {e}")
        sys.exit(1)


def cmd_version(args: argparse.Namespace) -> None:
    """Show version information."""
    console.print(f"worktimer v{__version__}")


def _add_range_args(parser: argparse.ArgumentParser, default: str) -> None:
    parser.add_argument("--range", "-r", choices=RANGE_NAMES, default=default, help=f"Date range (default: {default})")
    parser.add_argument("--start", help="Custom range start (YYYY-MM-DD or ISO timestamp)")
    parser.add_argument("--end", help="Custom range end (inclusive day or ISO timestamp)")


def main() -> NoReturn:
    """Main entry point for the worktimer CLI."""
    parser = argparse.ArgumentParser(
        prog="worktimer",
        description="worktimer - track work time per task and report on it",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show detailed output")
    parser.add_argument("-u", "--user", help="User id to act as (default: login name)")

    subparsers = parser.add_subparsers(dest="command")

    start_parser = subparsers.add_parser("start", help="Start a timer on a task")
    start_parser.add_argument("task_id", help="Task to track")
    start_parser.add_argument("-m", "--message", help="Note for the time log")
    start_parser.set_defaults(func=cmd_start)

    pause_parser = subparsers.add_parser("pause", help="Pause the running timer")
    pause_parser.add_argument("--session", help="Session id (default: your active timer)")
    pause_parser.set_defaults(func=cmd_pause)

    resume_parser = subparsers.add_parser("resume", help="Resume the paused timer")
    resume_parser.add_argument("--session", help="Session id (default: your active timer)")
    resume_parser.set_defaults(func=cmd_resume)

    stop_parser = subparsers.add_parser("stop", help="Stop the timer and save the time log")
    stop_parser.add_argument("--session", help="Session id (default: your active timer)")
    stop_parser.add_argument("-m", "--message", help="Note for the time log")
    stop_parser.add_argument("--non-billable", action="store_true", help="Mark the time as non-billable")
    stop_parser.set_defaults(func=cmd_stop)

    force_parser = subparsers.add_parser("force-stop", help="Stop another user's timer (admin)")
    force_parser.add_argument("session_id", help="Session to stop")
    force_parser.add_argument("-m", "--message", help="Note for the time log")
    force_parser.set_defaults(func=cmd_force_stop)

    active_parser = subparsers.add_parser("active", help="Show who is working on what")
    active_parser.add_argument("--type", help="Filter by task type")
    active_parser.add_argument("--priority", help="Filter by task priority")
    active_parser.add_argument("--project", help="Filter by project id")
    active_parser.set_defaults(func=cmd_active)

    report_parser = subparsers.add_parser("report", help="Totals and leaderboard for a range")
    _add_range_args(report_parser, default="today")
    report_parser.add_argument("--member", help="Only this member")
    report_parser.add_argument("--task", help="Only this task")
    report_parser.add_argument("--project", help="Only this project")
    report_parser.set_defaults(func=cmd_report)

    logs_parser = subparsers.add_parser("logs", help="List recorded time logs, newest first")
    _add_range_args(logs_parser, default="today")
    logs_parser.add_argument("--member", help="Only this member")
    logs_parser.add_argument("--project", help="Only this project")
    logs_parser.add_argument("--type", help="Only this task type")
    logs_parser.add_argument("--billable", choices=["yes", "no"], help="Only billable or non-billable time")
    logs_parser.add_argument("--page", type=int, default=1, help="Page number (default: 1)")
    logs_parser.add_argument("--limit", type=int, default=50, help="Logs per page (default: 50)")
    logs_parser.set_defaults(func=cmd_logs)

    export_parser = subparsers.add_parser("export", help="Export time logs or a report")
    _add_range_args(export_parser, default="week")
    export_parser.add_argument("--format", "-f", choices=["tabular", "structured"], default="tabular")
    export_parser.add_argument("--kind", "-k", choices=["time_logs", "aggregate"], default="time_logs")
    export_parser.add_argument("--member", help="Only this member")
    export_parser.add_argument("--output", "-o", help="Write to a file instead of stdout")
    export_parser.add_argument("--no-task-details", action="store_true", help="Omit task title, type and project columns")
    export_parser.set_defaults(func=cmd_export)

    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.set_defaults(func=cmd_version)

    args = parser.parse_args()
    setup_logging(args.verbose)

    if not getattr(args, "func", None):
        parser.print_help()
        sys.exit(0)

    args.func(args)
    sys.exit(0)


if __name__ == "__main__":
    main()
