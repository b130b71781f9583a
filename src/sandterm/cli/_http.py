"""
Shared HTTP helpers for CLI commands that talk to the running server.
"""

import os

import typer


def get_server_url() -> str:
    """Get the server URL from environment or default."""
    url = os.getenv("SANDTERM_SERVER_URL")
    if url:
        return url.rstrip("/")

    host = os.getenv("SANDTERM_HOST", "localhost")
    if host == "0.0.0.0":
        host = "localhost"
    port = os.getenv("SANDTERM_PORT", "3001")
    return f"http://{host}:{port}"


def _request(method: str, path: str, data: dict = None, timeout: float = 10.0) -> dict:
    import httpx

    url = f"{get_server_url()}{path}"
    try:
        resp = httpx.request(method, url, json=data, timeout=timeout)
        resp.raise_for_status()
        return resp.json()
    except httpx.ConnectError:
        typer.echo("Cannot connect to sandterm server. Is it running?")
        raise typer.Exit(code=1)
    except httpx.HTTPStatusError as e:
        try:
            detail = e.response.json().get("error", str(e))
        except Exception:
            detail = str(e)
        typer.echo(f"Server error ({e.response.status_code}): {detail}")
        raise typer.Exit(code=1)
    except Exception as e:
        typer.echo(f"Error: {e}")
        raise typer.Exit(code=1)


def _http_get(path: str) -> dict:
    """Make a GET request to the running server."""
    return _request("GET", path)


def _http_post(path: str, data: dict = None) -> dict:
    """Make a POST request to the running server."""
    # Sandbox provisioning can take a while
    return _request("POST", path, data or {}, timeout=120.0)


def _http_delete(path: str) -> dict:
    """Make a DELETE request to the running server."""
    return _request("DELETE", path, timeout=30.0)
