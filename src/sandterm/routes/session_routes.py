"""
Routes for the session control API.

Provides:
- POST   /api/sessions                      create a session
- GET    /api/sessions                      list sessions
- GET    /api/sessions/{session_id}         session status
- POST   /api/sessions/{session_id}/resize  resize the terminal
- DELETE /api/sessions/{session_id}         terminate a session
"""

from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse

from sandterm.logger import get_logger
from sandterm.session.base import Dimensions
from sandterm.session.errors import (
    ResourceExhausted,
    SessionNotFound,
    StreamFailure,
)
from sandterm.session.models import (
    CreateSessionRequest,
    CreateSessionResponse,
    MessageResponse,
    ResizeRequest,
    SessionListResponse,
    SessionStatus,
)

logger = get_logger(__name__)

NOT_FOUND = {"error": "Session not found"}


def _get_registry(request):
    """Get SessionRegistry from app state."""
    return getattr(request.app.state, "registry", None)


def _not_initialized() -> JSONResponse:
    return JSONResponse({"error": "Session system not initialized"}, status_code=503)


async def _read_json(request: Request) -> dict:
    body = await request.body()
    if not body:
        return {}
    return await request.json()


async def create_session(request: Request) -> JSONResponse:
    """
    POST /api/sessions — Provision a sandbox and register a session.

    Body: {"cols": 80, "rows": 24} (both optional)
    """
    registry = _get_registry(request)
    if registry is None:
        return _not_initialized()

    try:
        req = CreateSessionRequest(**await _read_json(request))
    except ValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except Exception:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    defaults = registry.default_dimensions
    dims = Dimensions(req.cols or defaults.cols, req.rows or defaults.rows)

    try:
        session = await registry.create(dims)
    except ResourceExhausted as e:
        logger.error(f"Error creating session: {e}")
        return JSONResponse({"error": "Failed to create session"}, status_code=503)

    settings = request.app.state.settings
    resp = CreateSessionResponse(
        session_id=session.session_id, expires_in=settings.expires_in
    )
    return JSONResponse(resp.model_dump(by_alias=True))


async def list_sessions(request: Request) -> JSONResponse:
    """GET /api/sessions — List live sessions."""
    registry = _get_registry(request)
    if registry is None:
        return _not_initialized()

    sessions = [SessionStatus(**s.to_dict()) for s in registry.list_sessions()]
    resp = SessionListResponse(sessions=sessions, count=len(sessions))
    return JSONResponse(resp.model_dump(by_alias=True))


async def get_session(request: Request) -> JSONResponse:
    """GET /api/sessions/{session_id} — Session status."""
    registry = _get_registry(request)
    if registry is None:
        return _not_initialized()

    session_id = request.path_params.get("session_id", "")
    try:
        session = registry.get(session_id)
    except SessionNotFound:
        return JSONResponse(NOT_FOUND, status_code=404)

    return JSONResponse(SessionStatus(**session.to_dict()).model_dump(by_alias=True))


async def resize_session(request: Request) -> JSONResponse:
    """
    POST /api/sessions/{session_id}/resize — Resize the terminal.

    Body: {"cols": 120, "rows": 40}
    """
    registry = _get_registry(request)
    if registry is None:
        return _not_initialized()

    session_id = request.path_params.get("session_id", "")

    try:
        req = ResizeRequest(**await _read_json(request))
    except ValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except Exception:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    try:
        await registry.resize(session_id, req.cols, req.rows)
    except SessionNotFound:
        return JSONResponse(NOT_FOUND, status_code=404)
    except StreamFailure as e:
        logger.error(f"Error resizing terminal for session {session_id}: {e}")
        return JSONResponse({"error": "Failed to resize terminal"}, status_code=500)

    return JSONResponse(MessageResponse(message="Terminal resized").model_dump())


async def delete_session(request: Request) -> JSONResponse:
    """DELETE /api/sessions/{session_id} — Terminate a session (idempotent)."""
    registry = _get_registry(request)
    if registry is None:
        return _not_initialized()

    session_id = request.path_params.get("session_id", "")
    await registry.terminate(session_id)
    return JSONResponse(
        MessageResponse(message="Session terminated successfully").model_dump()
    )
