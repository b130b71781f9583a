"""
CLI subcommands for managing sessions on a running server.

Usage:
    sandterm sessions create [--cols N] [--rows N]
    sandterm sessions list
    sandterm sessions status <session_id>
    sandterm sessions resize <session_id> --cols N --rows N
    sandterm sessions delete <session_id>
"""

from typing import Optional

import typer

from sandterm.cli._http import _http_delete, _http_get, _http_post

sessions_app = typer.Typer(help="Manage terminal sessions")


def _format_status(info: dict) -> str:
    dims = info.get("dimensions", {})
    marker = "*" if info.get("active") else "-"
    return (
        f"  {marker} {info['sessionId']}\n"
        f"     State: {info.get('state', 'unknown')}  "
        f"Size: {dims.get('cols')}x{dims.get('rows')}\n"
        f"     Last activity: {info.get('lastActivity')}\n"
    )


@sessions_app.command("create")
def sessions_create(
    cols: Optional[int] = typer.Option(None, help="Terminal columns"),
    rows: Optional[int] = typer.Option(None, help="Terminal rows"),
):
    """Create a new sandbox session."""
    body = {}
    if cols is not None:
        body["cols"] = cols
    if rows is not None:
        body["rows"] = rows

    data = _http_post("/api/sessions", body)
    typer.echo(f"Session created: {data['sessionId']}")
    typer.echo(f"Expires after {data.get('expiresIn', 'an idle period')} of inactivity")


@sessions_app.command("list")
def sessions_list():
    """List live sessions."""
    data = _http_get("/api/sessions")
    sessions = data.get("sessions", [])

    if not sessions:
        typer.echo("No active sessions.")
        return

    typer.echo(f"Sessions ({len(sessions)}):\n")
    for info in sessions:
        typer.echo(_format_status(info))


@sessions_app.command("status")
def sessions_status(session_id: str = typer.Argument(..., help="Session ID")):
    """Show the status of one session."""
    data = _http_get(f"/api/sessions/{session_id}")
    typer.echo(_format_status(data))


@sessions_app.command("resize")
def sessions_resize(
    session_id: str = typer.Argument(..., help="Session ID"),
    cols: int = typer.Option(..., help="Terminal columns"),
    rows: int = typer.Option(..., help="Terminal rows"),
):
    """Resize a session's terminal."""
    data = _http_post(
        f"/api/sessions/{session_id}/resize", {"cols": cols, "rows": rows}
    )
    typer.echo(data.get("message", "Terminal resized"))


@sessions_app.command("delete")
def sessions_delete(session_id: str = typer.Argument(..., help="Session ID")):
    """Terminate a session and remove its sandbox."""
    data = _http_delete(f"/api/sessions/{session_id}")
    typer.echo(data.get("message", "Session terminated"))
