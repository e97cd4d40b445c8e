"""
CLI subcommands for managing sessions on a running server.

Usage:
    chatwarden sessions list
    chatwarden sessions create [--profile P] [--name N] [--phone NUMBER]
    chatwarden sessions destroy <storage_key>
    chatwarden sessions stop-job <storage_key> <group_id>
"""

from datetime import datetime

import typer

from chatwarden.cli._http import _http_delete, _http_get, _http_post

sessions_app = typer.Typer(help="Manage chat sessions")


def _format_ms(value) -> str:
    if not value:
        return "never"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M:%S")


@sessions_app.command("list")
def sessions_list():
    """List stored sessions and whether they are connected."""
    data = _http_get("/sessions")
    sessions = data.get("sessions", [])

    if not sessions:
        typer.echo("No sessions stored.")
        return

    typer.echo(f"📱 Sessions ({len(sessions)}):\n")
    for session in sessions:
        meta = session.get("meta") or {}
        icon = "🟢" if session.get("live") else "🔴"
        typer.echo(
            f"  {icon} {session['storage_key']} ({session.get('state') or 'offline'})\n"
            f"     Name: {meta.get('name') or '-'}  Phone: {meta.get('phone') or '-'}\n"
            f"     Last connected: {_format_ms(session.get('last_connected'))}\n"
        )


@sessions_app.command("create")
def sessions_create(
    profile: str = typer.Option("unknown", "--profile", help="Profile label"),
    name: str = typer.Option("", "--name", help="Display name"),
    phone: str = typer.Option("", "--phone", help="Phone number"),
):
    """Start pairing a new account. Scan the QR code from a web client."""
    data = _http_post("/sessions", {"profile": profile, "name": name, "phone": phone})
    typer.echo(f"✅ Session {data['session_id']} created on {data['storage_key']}")


@sessions_app.command("destroy")
def sessions_destroy(
    storage_key: str = typer.Argument(help="Storage key, e.g. auth_info1"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Disconnect a session and delete its credentials."""
    if not yes:
        typer.confirm(f"Delete {storage_key} and its credentials?", abort=True)
    data = _http_delete(f"/sessions/{storage_key}")
    state = "live session" if data.get("was_live") else "offline storage"
    typer.echo(f"🗑️  Destroyed {state} {storage_key}")


@sessions_app.command("stop-job")
def sessions_stop_job(
    storage_key: str = typer.Argument(help="Storage key of the session"),
    group_id: str = typer.Argument(help="Group id, e.g. 1203630@g.us"),
):
    """Stop the recurring job running in a group."""
    data = _http_delete(f"/sessions/{storage_key}/jobs/{group_id}")
    if data.get("cancelled"):
        typer.echo(f"⏹️  Job stopped in {group_id}")
    else:
        typer.echo(f"No active job in {group_id}")
