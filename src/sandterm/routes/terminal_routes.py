"""
WebSocket endpoint for terminal streaming.

Connection protocol:
    1. Client connects to /ws?sessionId=<id>
    2. Unknown session: server sends a text notice and closes (1008)
    3. Otherwise the session's previous bridge, if any, is retired and a new
       TerminalBridge relays bytes until either side closes
"""

from starlette.websockets import WebSocket

from sandterm.logger import get_logger
from sandterm.session.errors import SessionNotFound
from sandterm.terminal.bridge import TerminalBridge
from sandterm.terminal.guard import CommandGuard

logger = get_logger(__name__)

NOT_FOUND_NOTICE = "Session not found or expired\r\n"
CLOSE_POLICY_VIOLATION = 1008


async def _reject(websocket: WebSocket) -> None:
    await websocket.send_text(NOT_FOUND_NOTICE)
    await websocket.close(code=CLOSE_POLICY_VIOLATION)


async def terminal_websocket_endpoint(websocket: WebSocket):
    """Bridge a client WebSocket to the shell of an existing session."""
    registry = getattr(websocket.app.state, "registry", None)
    if registry is None:
        await websocket.close(code=1011, reason="Session system not initialized")
        return

    await websocket.accept()
    session_id = websocket.query_params.get("sessionId", "")

    try:
        session = registry.get(session_id)
    except SessionNotFound:
        logger.info(f"Rejected connection for unknown session: {session_id!r}")
        await _reject(websocket)
        return

    settings = websocket.app.state.settings
    bridge = TerminalBridge(
        session,
        websocket,
        registry.runtime,
        guard=CommandGuard(),
        max_frame_bytes=settings.max_frame_bytes,
    )

    try:
        await registry.attach(session_id, bridge)
    except SessionNotFound:
        await _reject(websocket)
        return

    logger.info(f"New WebSocket connection for session: {session_id}")
    try:
        await bridge.run()
    except Exception as e:
        logger.error(f"Terminal WebSocket error for session {session_id}: {e}")
    finally:
        await registry.detach(session, bridge)
        logger.info(f"WebSocket closed for session: {session_id}")
