"""
chatwarden CLI.

- start:    run the web server
- sessions: list, create, destroy, stop-job
"""

import os
from typing import Optional

import typer
from dotenv import load_dotenv

from chatwarden.cli._http import _http_get, _http_post  # noqa: F401
from chatwarden.cli.sessions import sessions_app

app = typer.Typer(help="chatwarden - group administration bot manager")


def configure_logging(verbose: bool = False):
    from chatwarden.logger import setup_logging

    setup_logging(level="DEBUG" if verbose else "WARNING")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging (DEBUG level)"
    ),
):
    """
    chatwarden - group administration bot manager.
    """
    from chatwarden.config import PROJECT_DIR

    load_dotenv(PROJECT_DIR / ".env")
    configure_logging(verbose)


@app.command()
def start(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port"),
    debug: bool = typer.Option(False, "--debug", help="Debug logging"),
):
    """Start the chatwarden server."""
    if debug:
        os.environ["LOG_LEVEL"] = "DEBUG"

    from chatwarden.server import run

    typer.echo("🚀 Starting chatwarden server...")
    run(host=host, port=port)


app.add_typer(sessions_app, name="sessions")

if __name__ == "__main__":
    app()
