"""
CLI interface for the Agent Orchestrator.

This module provides the command-line interface using Typer with Rich output:
- `agent-orchestrator status` - Show all sessions
- `agent-orchestrator status <session>` - Show detailed session status
- `agent-orchestrator spawn <project> <issue>` - Start an agent session
- `agent-orchestrator terminate <session>` - Stop a session and tear it down
- `agent-orchestrator send <session> <message>` - Message a running agent
- `agent-orchestrator events <session>` - Show a session's event log
- `agent-orchestrator resume <session>` - Clear a halted session
- `agent-orchestrator run` - Run the lifecycle loop
- `agent-orchestrator --version` - Show version
"""

from __future__ import annotations

import signal
import threading
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from agent_orchestrator import __version__
from agent_orchestrator.config import load_config
from agent_orchestrator.errors import ConfigError, OrchestratorError
from agent_orchestrator.models import Session, SessionStatus
from agent_orchestrator.orchestrator import Orchestrator
from agent_orchestrator.session_manager import SpawnOptions
from agent_orchestrator.state_store import ReactionStatus

# Create Typer app
app = typer.Typer(
    name="agent-orchestrator",
    help="Run coding agents on tracker issues and drive their pull requests to merge",
    add_completion=False,
)

# Rich console for output
console = Console()

# Config file override (set via --config)
_config_path: Optional[str] = None

# Status display names and colors
STATUS_DISPLAY = {
    SessionStatus.SPAWNING: ("Spawning", "dim"),
    SessionStatus.WORKING: ("Working", "cyan"),
    SessionStatus.PR_OPEN: ("PR Open", "blue"),
    SessionStatus.CI_FAILED: ("CI Failed", "red"),
    SessionStatus.REVIEW_PENDING: ("Review Pending", "yellow"),
    SessionStatus.CHANGES_REQUESTED: ("Changes Requested", "yellow bold"),
    SessionStatus.APPROVED: ("Approved", "green"),
    SessionStatus.MERGEABLE: ("Mergeable", "green bold"),
    SessionStatus.MERGED: ("Merged", "magenta"),
    SessionStatus.TERMINATED: ("Terminated", "dim"),
    SessionStatus.ABANDONED: ("Abandoned", "dim"),
    SessionStatus.FAILED: ("Failed", "red bold"),
}

REACTION_DISPLAY = {
    ReactionStatus.STARTED: "yellow",
    ReactionStatus.SUCCEEDED: "green",
    ReactionStatus.FAILED: "red",
    ReactionStatus.SKIPPED: "dim",
    ReactionStatus.DEAD_LETTERED: "red bold",
}


def _format_status(session: Session) -> Text:
    """Format a session status as colored text, with its flags."""
    display_name, style = STATUS_DISPLAY.get(session.status, (session.status.value, "white"))
    text = Text(display_name, style=style)
    if session.halted:
        text.append(" (halted)", style="red")
    elif session.conflict:
        text.append(" (conflict)", style="yellow")
    return text


def _build_orchestrator() -> Orchestrator:
    """Load the config and wire the components, exiting on config errors."""
    try:
        config = load_config(_config_path)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    return Orchestrator(config)


def _show_all_sessions(orchestrator: Orchestrator, project: Optional[str], show_all: bool) -> None:
    """Display table of sessions with their states."""
    sessions = orchestrator.sessions.list(project=project, include_archived=show_all)

    if not sessions:
        console.print(
            Panel(
                "[dim]No sessions found.[/dim]\n\n"
                "Start one for an issue:\n"
                "  [cyan]agent-orchestrator spawn <project> <issue>[/cyan]",
                title="Agent Orchestrator Status",
                border_style="dim",
            )
        )
        return

    table = Table(
        title="Agent Orchestrator Status",
        show_header=True,
        header_style="bold",
    )
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Project")
    table.add_column("Issue", justify="right")
    table.add_column("State", no_wrap=True)
    table.add_column("PR", justify="right")
    table.add_column("Updated", style="dim")

    for session in sorted(sessions, key=lambda s: s.created_at):
        table.add_row(
            session.session_id,
            session.project,
            session.issue_id,
            _format_status(session),
            f"#{session.pr.number}" if session.pr else "-",
            session.updated_at[:19].replace("T", " "),
        )

    console.print(table)


def _show_session_detail(orchestrator: Orchestrator, session_id: str) -> None:
    """Display detailed status for one session."""
    session = orchestrator.sessions.get(session_id)
    if session is None:
        console.print(f"[red]Error:[/red] Session '{session_id}' not found.")
        raise typer.Exit(1)

    info_lines = [
        f"[bold]Project:[/bold] {session.project}",
        f"[bold]Issue:[/bold] {session.issue_id}",
        f"[bold]State:[/bold] {_format_status(session).markup}",
        f"[bold]Branch:[/bold] {session.branch or '-'}",
        f"[bold]Agent:[/bold] {session.agent or '-'}",
        f"[bold]Runtime:[/bold] {session.runtime_handle or '-'}",
        f"[bold]Workspace:[/bold] {session.workspace_path or '-'}",
        f"[bold]Created:[/bold] {session.created_at[:19].replace('T', ' ')}",
        f"[bold]Updated:[/bold] {session.updated_at[:19].replace('T', ' ')}",
    ]
    if session.pr:
        info_lines.append(f"[bold]PR:[/bold] #{session.pr.number} {session.pr.url}")
        ci = session.ci_status.value if session.ci_status else "-"
        review = session.review_status.value if session.review_status else "-"
        info_lines.append(f"[bold]CI:[/bold] {ci}  [bold]Review:[/bold] {review}")
    if session.conflict:
        info_lines.append(f"[bold yellow]Conflict:[/bold yellow] {session.conflict}")
    if session.last_error:
        info_lines.append(f"[bold red]Last error:[/bold red] {session.last_error}")

    console.print(
        Panel(
            "\n".join(info_lines),
            title=f"Session: {session.session_id}",
            border_style="cyan",
        )
    )

    records = orchestrator.ledger.records(session.session_id)
    if records:
        reactions_table = Table(
            title="Reactions",
            show_header=True,
            header_style="bold",
        )
        reactions_table.add_column("Seq", justify="right", style="dim")
        reactions_table.add_column("Kind")
        reactions_table.add_column("Status", no_wrap=True)
        reactions_table.add_column("Attempt", justify="center")
        reactions_table.add_column("Error", style="dim")

        for record in records:
            reactions_table.add_row(
                str(record.seq),
                record.kind,
                Text(record.status.value, style=REACTION_DISPLAY.get(record.status, "white")),
                str(record.attempt),
                record.error or "-",
            )

        console.print()
        console.print(reactions_table)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"agent-orchestrator version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to agent-orchestrator.yaml (default: $AO_CONFIG or ./agent-orchestrator.yaml)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Agent Orchestrator - supervise coding agents from issue to merge.

    Spawns one isolated agent session per issue, polls its pull request and
    reacts to CI failures, reviews and merges.
    """
    global _config_path
    _config_path = config

    # If no subcommand and no --help, show help
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


@app.command()
def status(
    session_id: Optional[str] = typer.Argument(
        None,
        help="Session ID to show detailed status for. If omitted, shows all sessions.",
    ),
    project: Optional[str] = typer.Option(
        None, "--project", "-p", help="Only show sessions of this project.",
    ),
    show_all: bool = typer.Option(
        False, "--all", "-a", help="Include archived sessions.",
    ),
) -> None:
    """
    Show the session dashboard or detailed session status.
    """
    orchestrator = _build_orchestrator()
    try:
        if session_id is None:
            _show_all_sessions(orchestrator, project, show_all)
        else:
            _show_session_detail(orchestrator, session_id)
    finally:
        orchestrator.shutdown()


@app.command()
def spawn(
    project: str = typer.Argument(..., help="Configured project name."),
    issue: str = typer.Argument(..., help="Tracker issue identifier (e.g. '42' or '#42')."),
    agent: Optional[str] = typer.Option(None, "--agent", help="Agent plugin override."),
    runtime: Optional[str] = typer.Option(None, "--runtime", help="Runtime plugin override."),
    branch: Optional[str] = typer.Option(None, "--branch", help="Branch name override."),
) -> None:
    """
    Start an agent session for an issue.
    """
    orchestrator = _build_orchestrator()
    try:
        session = orchestrator.sessions.spawn(
            project, issue, SpawnOptions(agent=agent, runtime=runtime, branch=branch)
        )
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        orchestrator.shutdown()

    console.print(f"[green]Spawned[/green] [cyan]{session.session_id}[/cyan]")
    console.print(f"  [dim]Branch:[/dim] {session.branch}")
    console.print(f"  [dim]Workspace:[/dim] {session.workspace_path}")


@app.command()
def terminate(
    session_id: str = typer.Argument(..., help="Session to stop."),
    keep_workspace: bool = typer.Option(
        False, "--keep-workspace", help="Leave the workspace on disk.",
    ),
) -> None:
    """
    Stop a session, destroy its runtime and workspace, and archive it.
    """
    orchestrator = _build_orchestrator()
    try:
        session = orchestrator.sessions.terminate(
            session_id, destroy_workspace=not keep_workspace
        )
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        orchestrator.shutdown()

    console.print(f"[green]Terminated[/green] [cyan]{session.session_id}[/cyan]")
    if session.workspace_path:
        console.print(f"[yellow]Workspace left at:[/yellow] {session.workspace_path}")


@app.command()
def send(
    session_id: str = typer.Argument(..., help="Session to message."),
    message: str = typer.Argument(..., help="Text to send to the agent."),
) -> None:
    """
    Send a message to a running agent.
    """
    orchestrator = _build_orchestrator()
    try:
        orchestrator.sessions.send(session_id, message)
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        orchestrator.shutdown()

    console.print(f"[green]Sent[/green] to [cyan]{session_id}[/cyan]")


@app.command()
def events(
    session_id: str = typer.Argument(..., help="Session whose event log to show."),
    since: int = typer.Option(0, "--since", help="Only events after this sequence number."),
) -> None:
    """
    Show the event log of a session.
    """
    orchestrator = _build_orchestrator()
    try:
        session_events = orchestrator.event_log.read(session_id, since_seq=since)
    finally:
        orchestrator.shutdown()

    if not session_events:
        console.print(f"[dim]No events for {session_id}.[/dim]")
        return

    table = Table(
        title=f"Events: {session_id}",
        show_header=True,
        header_style="bold",
    )
    table.add_column("#", justify="right", style="dim")
    table.add_column("Time", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("Details")

    for event in session_events:
        if event.target_state:
            details = f"{event.payload.get('from')} -> {event.target_state}"
        else:
            details = ", ".join(
                f"{k}={v}" for k, v in event.payload.items() if k != "facts"
            )
        table.add_row(
            str(event.seq),
            event.timestamp[:19].replace("T", " "),
            event.event_type.value,
            details or "-",
        )

    console.print(table)


@app.command()
def resume(
    session_id: str = typer.Argument(..., help="Halted session to resume."),
) -> None:
    """
    Clear the halted flag of a session so polling continues.
    """
    orchestrator = _build_orchestrator()
    try:
        session = orchestrator.lifecycle.resume(session_id)
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        orchestrator.shutdown()

    console.print(f"[green]Resumed[/green] [cyan]{session.session_id}[/cyan]")


@app.command()
def run(
    once: bool = typer.Option(
        False, "--once", help="Poll every active session once and exit.",
    ),
) -> None:
    """
    Run the lifecycle loop until interrupted.
    """
    orchestrator = _build_orchestrator()
    try:
        orchestrator.validate()
    except OrchestratorError as e:
        orchestrator.shutdown()
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if once:
        try:
            orchestrator.lifecycle.recover()
            results = orchestrator.lifecycle.scan_once()
        finally:
            orchestrator.shutdown()
        for result in results:
            if result.transitioned:
                console.print(
                    f"[cyan]{result.session_id}[/cyan] {result.previous} -> "
                    f"[bold]{result.status}[/bold]"
                )
            elif result.error:
                console.print(f"[cyan]{result.session_id}[/cyan] [red]{result.error}[/red]")
        console.print(f"[dim]Polled {len(results)} session(s).[/dim]")
        return

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    console.print(
        f"[green]Running[/green] lifecycle loop "
        f"[dim](poll every {orchestrator.config.lifecycle.poll_interval_seconds:g}s, "
        f"Ctrl+C to stop)[/dim]"
    )
    try:
        orchestrator.lifecycle.run(stop_event)
    finally:
        orchestrator.shutdown()
    console.print("[dim]Stopped.[/dim]")


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli_main()
