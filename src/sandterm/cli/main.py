"""
Top-level CLI commands: serve.
"""

import os
from typing import Optional

import typer


def configure_logging(verbose: bool = False):
    """Configure logging for the CLI."""
    from sandterm.logger import setup_logging

    setup_logging(level="DEBUG" if verbose else "WARNING")


def register_commands(app: typer.Typer):
    """Register top-level commands onto the app."""

    @app.command()
    def serve(
        host: Optional[str] = typer.Option(None, help="Host to bind to"),
        port: Optional[int] = typer.Option(None, help="Port to bind to"),
        debug: bool = typer.Option(False, "--debug", help="Run in debug mode"),
    ):
        """Start the sandterm server."""
        from sandterm.server import run

        if debug:
            os.environ["LOG_LEVEL"] = "DEBUG"

        typer.echo("Starting sandterm server...")
        try:
            run(host=host, port=port, debug=debug)
        except KeyboardInterrupt:
            typer.echo("\nServer stopped.")
