"""
sandterm CLI.

- main:     serve
- sessions: create, list, status, resize, delete
"""

import typer

from sandterm.cli._http import _http_delete, _http_get, _http_post  # noqa: F401 (re-exported for test patching)
from sandterm.cli.main import configure_logging, register_commands
from sandterm.cli.sessions import sessions_app

app = typer.Typer(help="sandterm - sandboxed browser terminals")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging (DEBUG level)"
    ),
):
    """
    sandterm - sandboxed browser terminals.
    """
    configure_logging(verbose)


register_commands(app)

app.add_typer(sessions_app, name="sessions")

if __name__ == "__main__":
    app()
