"""Command-line interface for Dingo Track.

Dingo Track tracks time with named start/stop timers and records every
finished session as a Google Calendar event.

CONCEPTS:
---------
- TIMER:    A named tracker bound to a calendar (e.g. "Coding" -> primary).
- SESSION:  One completed start/stop cycle, kept locally (last 100) and
            mirrored to the timer's calendar.
- USER:     The signed-in Google account. All timers and sessions are
            stored per user.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from typing import Any, NoReturn

from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.table import Table

from dingotrack import __version__
from dingotrack.app import TrackerApp
from dingotrack.calendar.google import GoogleCalendarClient
from dingotrack.config import settings
from dingotrack.errors import RemoteSinkError
from dingotrack.timers.alignment import format_duration

console = Console()
logger = logging.getLogger(__name__)

# Help text shown when no command is given
WELCOME_TEXT = f"""
# Dingo Track v{__version__}

Start/stop timers that land in your Google Calendar.

## Quick Start

```bash
dingo auth url                           # Open the consent page
dingo auth code <CODE>                   # Finish signing in
dingo calendars                          # Find a calendar ID
dingo timers add Coding primary          # Configure a timer
dingo toggle Coding                      # Start it
dingo toggle Coding                      # Stop it, event is created
```

Use `dingo --help` to see all commands.
"""


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.WARNING
    fmt = "%(name)s: %(message)s" if verbose else "%(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        handlers=[RichHandler(rich_tracebacks=True, console=console, show_path=verbose)],
    )


def _make_app(args: argparse.Namespace) -> TrackerApp:
    return TrackerApp(settings, user_id=getattr(args, "user", None))


def _run_operation(app: TrackerApp, operation: str, **kwargs: Any) -> dict[str, Any]:
    """Run an operation and exit with an error message if it fails."""
    result = asyncio.run(app.operations.execute(operation, **kwargs))
    if not result.get("success"):
        console.print(f"[red]Error:[/red] {result.get('error')}")
        sys.exit(1)
    return result


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data))


def _format_time(value: str | None) -> str:
    if not value:
        return "-"
    return datetime.fromisoformat(value).astimezone().strftime("%Y-%m-%d %H:%M")


# =============================================================================
# Timer commands
# =============================================================================


def cmd_timers_list(args: argparse.Namespace) -> None:
    """List configured timers."""
    app = _make_app(args)
    result = _run_operation(app, "list_timers")
    timers = result["timers"]

    if getattr(args, "json", False):
        _print_json(timers)
        return

    if not timers:
        console.print("[yellow]No timers configured.[/yellow]")
        return

    active = app.timer_service.get_active_timers()

    table = Table(title="Timers")
    table.add_column("Name", style="white")
    table.add_column("Calendar", style="cyan")
    table.add_column("Running", style="green")
    table.add_column("Since", style="blue")

    for timer in timers:
        started = active.get(timer["name"])
        table.add_row(
            timer["name"],
            timer["calendarId"],
            "Yes" if timer["isRunning"] else "No",
            _format_time(started),
        )

    console.print(table)


def cmd_timers_add(args: argparse.Namespace) -> None:
    """Add a timer."""
    result = _run_operation(_make_app(args), "add_timer", name=args.name, calendar_id=args.calendar_id)
    console.print(f"[green]Added:[/green] {result['timer']['name']} -> {result['timer']['calendarId']}")


def cmd_timers_save(args: argparse.Namespace) -> None:
    """Add or update a timer."""
    result = _run_operation(_make_app(args), "save_timer", name=args.name, calendar_id=args.calendar_id)
    console.print(f"[green]Saved:[/green] {result['timer']['name']} -> {result['timer']['calendarId']}")


def cmd_timers_delete(args: argparse.Namespace) -> None:
    """Delete a timer (stopping it first if running)."""
    result = _run_operation(_make_app(args), "delete_timer", name=args.name)
    if not result["deleted"]:
        console.print(f"[red]Timer not found:[/red] {args.name}")
        sys.exit(1)
    console.print(f"[green]Deleted:[/green] {args.name}")


def cmd_toggle(args: argparse.Namespace) -> None:
    """Start or stop a timer."""
    result = _run_operation(_make_app(args), "start_stop_timer", name=args.name)
    if result["action"] == "started":
        console.print(f"[green]Started:[/green] {args.name} at {_format_time(result['startTime'])}")
    else:
        console.print(
            f"[yellow]Stopped:[/yellow] {args.name} "
            f"({format_duration(result['duration'])})"
        )


def cmd_active(args: argparse.Namespace) -> None:
    """Show running timers."""
    app = _make_app(args)
    active = _run_operation(app, "get_active_timers")["active"]

    if getattr(args, "json", False):
        _print_json(active)
        return

    if not active:
        console.print("[yellow]No timers running.[/yellow]")
        return

    for name in active:
        status = app.timer_service.get_timer_status(name)
        console.print(
            f"[green]{name}[/green] since {_format_time(status['startTime'])} "
            f"({format_duration(status['elapsedSeconds'] // 60)})"
        )


def cmd_status(args: argparse.Namespace) -> None:
    """Show one timer's status."""
    status = _run_operation(_make_app(args), "get_timer_status", name=args.name)["status"]

    if getattr(args, "json", False):
        _print_json(status)
        return

    if status["isRunning"]:
        console.print(
            f"[green]{status['name']}[/green] running since {_format_time(status['startTime'])} "
            f"({status['elapsed']})"
        )
    else:
        console.print(f"[dim]{status['name']}[/dim] stopped")


def cmd_sessions(args: argparse.Namespace) -> None:
    """Show recorded sessions, newest first."""
    sessions = _run_operation(_make_app(args), "get_timer_sessions", limit=args.limit)["sessions"]

    if getattr(args, "json", False):
        _print_json(sessions)
        return

    if not sessions:
        console.print("[yellow]No sessions recorded.[/yellow]")
        return

    table = Table(title="Sessions")
    table.add_column("Timer", style="white")
    table.add_column("Calendar", style="cyan")
    table.add_column("Start", style="blue")
    table.add_column("End", style="blue")
    table.add_column("Duration", style="magenta")

    for session in reversed(sessions):
        table.add_row(
            session["name"],
            session["calendarId"],
            _format_time(session["startTime"]),
            _format_time(session["endTime"]),
            format_duration(session["durationMinutes"]),
        )

    console.print(table)


def cmd_calendars(args: argparse.Namespace) -> None:
    """List writable calendars."""
    result = _run_operation(_make_app(args), "list_calendars")
    calendars = result["calendars"]

    if getattr(args, "json", False):
        _print_json(calendars)
        return

    if not calendars:
        console.print("[yellow]No calendars available.[/yellow] Sign in with 'dingo auth url'.")
        return

    if result.get("cached"):
        console.print("[dim]Offline: showing last known calendars.[/dim]")

    table = Table(title="Calendars")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Primary", style="green")
    table.add_column("Access", style="magenta")

    for calendar in calendars:
        table.add_row(
            calendar["id"],
            calendar["name"],
            "Yes" if calendar["primary"] else "",
            calendar["accessRole"],
        )

    console.print(table)


# =============================================================================
# Auth commands
# =============================================================================


def _google_client(app: TrackerApp) -> GoogleCalendarClient:
    calendar = app.calendar
    if not isinstance(calendar, GoogleCalendarClient):
        console.print("[red]Error:[/red] No Google Calendar client configured")
        sys.exit(1)
    return calendar


def cmd_auth_url(args: argparse.Namespace) -> None:
    """Print the Google consent URL."""
    if not settings.has_google_credentials():
        console.print("[red]Error:[/red] Set DINGOTRACK_GOOGLE_CLIENT_ID and DINGOTRACK_GOOGLE_CLIENT_SECRET")
        sys.exit(1)

    client = _google_client(_make_app(args))
    console.print("Open this URL and approve access, then run [bold]dingo auth code <CODE>[/bold]:\n")
    console.print(client.get_auth_url(settings.google_redirect_uri), soft_wrap=True)


def cmd_auth_code(args: argparse.Namespace) -> None:
    """Exchange an authorization code for tokens."""
    app = _make_app(args)
    client = _google_client(app)

    try:
        asyncio.run(client.exchange_code(args.code, settings.google_redirect_uri))
    except RemoteSinkError as e:
        console.print(f"[red]Sign-in failed:[/red] {e}")
        sys.exit(1)

    console.print(f"[green]Signed in as:[/green] {client.get_current_user_id()}")


def cmd_auth_logout(args: argparse.Namespace) -> None:
    """Forget Google tokens."""
    client = _google_client(_make_app(args))
    client.logout()
    console.print("[green]Signed out.[/green]")


def cmd_auth_status(args: argparse.Namespace) -> None:
    """Show sign-in state."""
    app = _make_app(args)
    if app.calendar.is_authenticated():
        console.print(f"[green]Signed in[/green] as {app.calendar.get_current_user_id()}")
    else:
        console.print("[yellow]Not signed in.[/yellow]")
    console.print(f"Timer scope: {app.timer_service.current_user_id or '-'}")


# =============================================================================
# Bridge and misc commands
# =============================================================================


async def stdio_loop(app: TrackerApp) -> None:
    """Serve operations over stdio using a JSON-lines protocol.

    Input (stdin):  {"id": 1, "op": "start_stop_timer", "args": {"name": "Coding"}}
                    {"op": "set_current_user", "args": {"user_id": "user_1"}}
    Output (stdout): {"type": "ready", "operations": [...]}
                     {"type": "result", "id": 1, "success": true, ...}
                     {"type": "error", "text": "..."}
    """
    def _emit(obj: dict) -> None:
        sys.stdout.write(json.dumps(obj) + "\n")
        sys.stdout.flush()

    _emit({"type": "ready", "operations": app.operations.list_operations()})

    loop = asyncio.get_running_loop()
    while True:
        raw = await loop.run_in_executor(None, sys.stdin.readline)
        if not raw:
            # EOF: stdin closed
            break

        raw = raw.strip()
        if not raw:
            continue

        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            _emit({"type": "error", "text": "Invalid JSON input"})
            continue

        if not isinstance(msg, dict) or not msg.get("op"):
            _emit({"type": "error", "text": "Missing 'op'"})
            continue

        op_args = msg.get("args") or {}
        if not isinstance(op_args, dict):
            _emit({"type": "error", "id": msg.get("id"), "text": "'args' must be an object"})
            continue

        if msg["op"] == "set_current_user":
            app.switch_user(op_args.get("user_id"))
            _emit({
                "type": "result",
                "id": msg.get("id"),
                "success": True,
                "user_id": app.timer_service.current_user_id,
            })
            continue

        try:
            result = await app.operations.execute(msg["op"], **op_args)
        except Exception as e:
            logger.exception(f"Operation {msg['op']} crashed")
            _emit({"type": "error", "id": msg.get("id"), "text": str(e)})
            continue

        _emit({"type": "result", "id": msg.get("id"), **result})


def cmd_serve(args: argparse.Namespace) -> None:
    """Serve the operation surface over stdio."""
    app = _make_app(args)

    async def _serve() -> None:
        async with app:
            await stdio_loop(app)

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        pass


def cmd_version(args: argparse.Namespace) -> None:
    """Show version information."""
    console.print(f"[bold]Dingo Track[/bold] v{__version__}")
    console.print(f"Data directory: {settings.data_dir}")
    console.print(f"Lock backend: {settings.lock_backend}")


def main() -> NoReturn:
    """Main entry point for the Dingo Track CLI."""
    parser = argparse.ArgumentParser(
        prog="dingo",
        description="Dingo Track - start/stop timers mirrored to Google Calendar",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show detailed output")
    parser.add_argument("--user", help="User scope to operate on (default: signed-in user)")

    subparsers = parser.add_subparsers(dest="command")

    # Timers command group
    timers_parser = subparsers.add_parser(
        "timers",
        help="Manage configured timers",
        description="Add, update, delete and list timers.",
    )
    timers_parser.set_defaults(func=cmd_timers_list)
    timers_subparsers = timers_parser.add_subparsers(dest="timers_command", metavar="SUBCOMMAND")

    timers_list = timers_subparsers.add_parser("list", help="List timers")
    timers_list.add_argument("--json", action="store_true", help="Output as JSON")
    timers_list.set_defaults(func=cmd_timers_list)

    timers_add = timers_subparsers.add_parser("add", help="Add a timer")
    timers_add.add_argument("name", help="Timer name")
    timers_add.add_argument("calendar_id", help="Calendar ID receiving events")
    timers_add.set_defaults(func=cmd_timers_add)

    timers_save = timers_subparsers.add_parser("save", help="Add or update a timer")
    timers_save.add_argument("name", help="Timer name")
    timers_save.add_argument("calendar_id", help="Calendar ID receiving events")
    timers_save.set_defaults(func=cmd_timers_save)

    timers_delete = timers_subparsers.add_parser("delete", help="Delete a timer")
    timers_delete.add_argument("name", help="Timer name")
    timers_delete.set_defaults(func=cmd_timers_delete)

    # Toggle command
    toggle_parser = subparsers.add_parser("toggle", help="Start or stop a timer")
    toggle_parser.add_argument("name", help="Timer name")
    toggle_parser.set_defaults(func=cmd_toggle)

    # Active command
    active_parser = subparsers.add_parser("active", help="Show running timers")
    active_parser.add_argument("--json", action="store_true", help="Output as JSON")
    active_parser.set_defaults(func=cmd_active)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show a timer's status")
    status_parser.add_argument("name", help="Timer name")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")
    status_parser.set_defaults(func=cmd_status)

    # Sessions command
    sessions_parser = subparsers.add_parser("sessions", help="Show recorded sessions")
    sessions_parser.add_argument(
        "-n", "--limit", type=int, default=20,
        help="Number of most recent sessions to show (default: 20)"
    )
    sessions_parser.add_argument("--json", action="store_true", help="Output as JSON")
    sessions_parser.set_defaults(func=cmd_sessions)

    # Calendars command
    calendars_parser = subparsers.add_parser("calendars", help="List writable calendars")
    calendars_parser.add_argument("--json", action="store_true", help="Output as JSON")
    calendars_parser.set_defaults(func=cmd_calendars)

    # Auth command group
    auth_parser = subparsers.add_parser(
        "auth",
        help="Sign in to Google Calendar",
        epilog="""Setup:
  1. export DINGOTRACK_GOOGLE_CLIENT_ID='...'
  2. export DINGOTRACK_GOOGLE_CLIENT_SECRET='...'
  3. dingo auth url            # Open the printed URL
  4. dingo auth code <CODE>    # Paste the code from the redirect""",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    auth_subparsers = auth_parser.add_subparsers(dest="auth_command", metavar="SUBCOMMAND")

    auth_url = auth_subparsers.add_parser("url", help="Print the consent URL")
    auth_url.set_defaults(func=cmd_auth_url)

    auth_code = auth_subparsers.add_parser("code", help="Exchange an authorization code")
    auth_code.add_argument("code", help="Code from the redirect URL")
    auth_code.set_defaults(func=cmd_auth_code)

    auth_logout = auth_subparsers.add_parser("logout", help="Forget stored tokens")
    auth_logout.set_defaults(func=cmd_auth_logout)

    auth_status = auth_subparsers.add_parser("status", help="Show sign-in state")
    auth_status.set_defaults(func=cmd_auth_status)

    # Serve command
    serve_parser = subparsers.add_parser(
        "serve",
        help="Serve operations as JSON lines over stdio",
        description="Bridge for UI and automation clients. Runs the periodic auto-save while serving.",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Version command
    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.set_defaults(func=cmd_version)

    args = parser.parse_args()
    setup_logging(args.verbose)

    # No command given - show welcome
    if args.command is None:
        console.print(Markdown(WELCOME_TEXT))
        sys.exit(0)

    if args.command == "auth" and args.auth_command is None:
        auth_parser.print_help()
        sys.exit(0)

    args.func(args)
    sys.exit(0)


if __name__ == "__main__":
    main()
