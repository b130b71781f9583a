"""
Starlette-based web server for sandterm.

This server provides:
- /api/sessions: create, list, inspect, resize and terminate sessions
- /ws: WebSocket terminal stream for a session (?sessionId=...)
- /health, /ready: liveness and readiness

Every session is backed by its own sandbox container; idle sessions are
reaped in the background and all sessions are cleaned up on shutdown.
"""

import asyncio
import os
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Route, WebSocketRoute

from sandterm.config import CONFIG, Settings
from sandterm.logger import get_logger, setup_logging
from sandterm.routes.health_routes import health_check, readiness_check
from sandterm.routes.session_routes import (
    create_session,
    delete_session,
    get_session,
    list_sessions,
    resize_session,
)
from sandterm.routes.terminal_routes import terminal_websocket_endpoint
from sandterm.sandbox.docker_runtime import DockerRuntime
from sandterm.sandbox.profiles import get_profile
from sandterm.sandbox.runtime import SandboxRuntime
from sandterm.session.base import Dimensions
from sandterm.session.reaper import IdleReaper
from sandterm.session.registry import SessionRegistry

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    runtime: Optional[SandboxRuntime] = None,
    debug: bool = False,
) -> Starlette:
    """
    Build the application.

    Args:
        settings: Configuration, defaults to the global CONFIG.
        runtime: Sandbox runtime, defaults to Docker with the configured image.
        debug: Starlette debug mode.
    """
    settings = settings or CONFIG

    async def startup(app: Starlette):
        """Initialize the registry and reaper on application startup."""
        logger.info("Application startup - initializing services")

        profile = get_profile(settings.profile).with_limits(
            memory_mb=settings.memory_mb,
            cpu_shares=settings.cpu_shares,
            pids_limit=settings.pids_limit,
            cap_add=settings.cap_add,
        )
        if profile.name != "minimal":
            logger.warning(
                f"Using non-default security profile '{profile.name}' "
                f"(cap_add={', '.join(profile.cap_add)})"
            )

        sandbox_runtime = runtime or DockerRuntime(
            image=settings.image, shell=settings.shell
        )
        registry = SessionRegistry(
            sandbox_runtime,
            profile,
            default_dimensions=Dimensions(settings.default_cols, settings.default_rows),
            max_sessions=settings.max_sessions,
        )
        reaper = IdleReaper(
            registry,
            idle_timeout=timedelta(minutes=settings.idle_timeout_minutes),
            interval_seconds=settings.sweep_interval_seconds,
        )

        app.state.registry = registry
        app.state.reaper = reaper
        await reaper.start()

        logger.info(f"Session system initialized (profile={profile.name})")

    async def shutdown(app: Starlette):
        """Stop the reaper and clean up every remaining session."""
        logger.info("Application shutdown - cleaning up sessions")

        reaper = getattr(app.state, "reaper", None)
        if reaper is not None:
            await reaper.stop()

        registry = getattr(app.state, "registry", None)
        if registry is not None:
            try:
                await registry.terminate_all()
            except Exception as e:
                logger.error(f"Error during cleanup: {e}")
            try:
                await registry.runtime.close()
            except Exception as e:
                logger.error(f"Error closing sandbox runtime: {e}")

    @asynccontextmanager
    async def lifespan(app: Starlette):
        await startup(app)
        try:
            yield
        finally:
            await shutdown(app)

    app = Starlette(
        debug=debug,
        routes=[
            Route("/api/sessions", create_session, methods=["POST"]),
            Route("/api/sessions", list_sessions, methods=["GET"]),
            Route("/api/sessions/{session_id}", get_session, methods=["GET"]),
            Route("/api/sessions/{session_id}", delete_session, methods=["DELETE"]),
            Route(
                "/api/sessions/{session_id}/resize", resize_session, methods=["POST"]
            ),
            Route("/health", health_check, methods=["GET"]),
            Route("/ready", readiness_check, methods=["GET"]),
            WebSocketRoute("/ws", terminal_websocket_endpoint),
        ],
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=settings.allowed_origins,
                allow_methods=["*"],
                allow_headers=["*"],
            )
        ],
        lifespan=lifespan,
    )
    app.state.settings = settings
    return app


def run(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the server with uvicorn until interrupted."""
    import uvicorn

    log_level = "DEBUG" if debug else os.getenv("LOG_LEVEL", "INFO")
    setup_logging(level=log_level, log_file=os.getenv("LOG_FILE"))

    host = host or CONFIG.host
    port = CONFIG.port if port is None else port

    app = create_app(debug=debug)
    config = uvicorn.Config(
        app, host=host, port=port, log_level=log_level.lower(), ws="wsproto"
    )
    server = uvicorn.Server(config)

    logger.info(f"Starting sandterm server on http://{host}:{port}")
    try:
        asyncio.run(server.serve())
    except OSError as e:
        logger.critical(f"Cannot bind {host}:{port}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run(debug="--debug" in sys.argv)
