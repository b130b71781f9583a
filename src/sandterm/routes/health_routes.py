"""
Health check and monitoring endpoints.
"""

import time
from datetime import datetime

from starlette.requests import Request
from starlette.responses import JSONResponse

from sandterm.logger import get_logger

logger = get_logger(__name__)
start_time = time.time()


async def health_check(request: Request) -> JSONResponse:
    """
    Basic health check endpoint.

    Returns 200 if service is running.
    """
    registry = getattr(request.app.state, "registry", None)
    return JSONResponse(
        {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "uptime_seconds": int(time.time() - start_time),
            "sessions": len(registry) if registry is not None else 0,
        }
    )


async def readiness_check(request: Request) -> JSONResponse:
    """
    Readiness check - verifies the sandbox runtime is reachable.

    Returns 200 if service is ready to accept sessions.
    """
    checks = {}

    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        checks["registry"] = "not initialized"
    else:
        checks["registry"] = "ok"
        ping = getattr(registry.runtime, "ping", None)
        if ping is None:
            checks["runtime"] = "ok"
        else:
            try:
                checks["runtime"] = "ok" if await ping() else "unreachable"
            except Exception as e:
                checks["runtime"] = f"error: {e}"

    reaper = getattr(request.app.state, "reaper", None)
    checks["reaper"] = "ok" if reaper is not None and reaper.running else "stopped"

    all_ok = all(status == "ok" for status in checks.values())
    return JSONResponse(
        {
            "status": "ready" if all_ok else "not ready",
            "checks": checks,
            "timestamp": datetime.now().isoformat(),
        },
        status_code=200 if all_ok else 503,
    )
