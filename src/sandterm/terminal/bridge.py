"""
Terminal bridge between one WebSocket and one sandbox shell.

The bridge runs two relay tasks: transport -> guard -> process channel, and
process channel -> bounded frames -> transport. It ends as soon as either
side closes or ``stop()`` is called, and always releases the channel it
opened. The sandbox itself is owned by the session, not the bridge.

State machine: IDLE -> STREAMING -> CLOSED.
"""

import asyncio
import codecs
from enum import Enum
from typing import Iterator, Optional, Union

from starlette.websockets import WebSocket, WebSocketDisconnect

from sandterm.logger import get_logger
from sandterm.sandbox.runtime import ProcessChannel, SandboxError, SandboxRuntime
from sandterm.session.base import Dimensions, Session
from sandterm.session.errors import StreamFailure
from sandterm.terminal.guard import CommandGuard

logger = get_logger(__name__)

MAX_FRAME_BYTES = 1024

CONNECTED_NOTICE = "Connected to sandbox terminal. Type your commands...\r\n"
ERROR_NOTICE = "\r\nTerminal error occurred\r\n"

CLOSE_ERROR = 1011

# Why a bridge finished
TRANSPORT_CLOSED = "transport_closed"
CHANNEL_CLOSED = "channel_closed"
STREAM_FAILED = "stream_failed"
STOPPED = "stopped"


class BridgeState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    CLOSED = "closed"


def iter_chunks(data: bytes, size: int = MAX_FRAME_BYTES) -> Iterator[bytes]:
    """Split ``data`` into consecutive pieces of at most ``size`` bytes."""
    for start in range(0, len(data), size):
        yield data[start : start + size]


def init_commands(dims: Dimensions) -> list[str]:
    """Shell setup written to every new channel before client input."""
    return [
        "export TERM=xterm-256color",
        f"export COLUMNS={dims.cols}",
        f"export LINES={dims.rows}",
        'export PS1="[\\u@\\h \\W]\\$ "',
        f"stty rows {dims.rows} cols {dims.cols}",
        'trap "printf \\"\\033[2J\\033[H\\033[3J\\"; stty sane" EXIT',
        "clear",
    ]


def resize_command(dims: Dimensions) -> str:
    return f"stty rows {dims.rows} cols {dims.cols}\n"


class TerminalBridge:
    """
    Relays bytes between a client WebSocket and a sandbox process channel.

    Args:
        session: Session whose sandbox the channel is opened in.
        websocket: Accepted client connection.
        runtime: Runtime used to open the channel.
        guard: Line filter for client input; a fresh one per bridge.
        max_frame_bytes: Upper bound for each outbound frame.
    """

    def __init__(
        self,
        session: Session,
        websocket: WebSocket,
        runtime: SandboxRuntime,
        guard: Optional[CommandGuard] = None,
        max_frame_bytes: int = MAX_FRAME_BYTES,
    ):
        self.session = session
        self.websocket = websocket
        self.runtime = runtime
        self.guard = guard or CommandGuard()
        self.max_frame_bytes = max_frame_bytes
        self.state = BridgeState.IDLE
        self.close_reason: Optional[str] = None

        self._channel: Optional[ProcessChannel] = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._send_lock = asyncio.Lock()
        # Serializes channel writes and resizes from the relay and from resize()
        self._write_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._done = asyncio.Event()
        self._started = False
        self._stop_notice: Optional[str] = None
        self._stop_code = 1000

    @property
    def channel(self) -> Optional[ProcessChannel]:
        return self._channel

    # -- Lifecycle -----------------------------------------------------------

    async def run(self) -> str:
        """
        Open a channel and relay until one side closes or ``stop()`` is called.

        Returns:
            The reason the bridge finished.
        """
        self._started = True
        session_id = self.session.session_id
        reason = STOPPED

        try:
            if self._stop_event.is_set():
                return reason

            async with self.session.lock:
                dims = self.session.dimensions

            try:
                channel = await self.runtime.open_channel(
                    self.session.sandbox, dims.cols, dims.rows
                )
            except SandboxError as e:
                logger.error(f"Failed to open shell for session {session_id}: {e}")
                reason = STREAM_FAILED
                return reason

            # A resize stored before this point is picked up below; one stored
            # after it sees the published channel and applies itself
            async with self.session.lock:
                self._channel = channel
                current = self.session.dimensions
            if current != dims:
                try:
                    await self.resize()
                except StreamFailure as e:
                    logger.error(f"Stream failure in session {session_id}: {e}")
                    reason = STREAM_FAILED
                    return reason

            if self._stop_event.is_set():
                return reason

            self.state = BridgeState.STREAMING
            logger.info(f"Bridge streaming for session {session_id}")

            await self._send(CONNECTED_NOTICE)
            async with self._write_lock:
                latest = self.session.dimensions
                await channel.write(
                    "".join(f"{cmd}\n" for cmd in init_commands(latest)).encode()
                )

            reason = await self._relay()

        except SandboxError as e:
            logger.error(f"Stream failure in session {session_id}: {e}")
            reason = STREAM_FAILED
        except Exception:
            reason = STREAM_FAILED
            raise
        finally:
            await self._teardown(reason)

        return reason

    async def _relay(self) -> str:
        inbound = asyncio.create_task(self._pump_inbound())
        outbound = asyncio.create_task(self._pump_outbound())
        stopper = asyncio.create_task(self._stop_event.wait())
        tasks = {inbound, outbound, stopper}

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if stopper in done:
            return STOPPED

        for task in (inbound, outbound):
            if task in done and not task.cancelled():
                error = task.exception()
                if error is None:
                    return task.result()
                if isinstance(error, StreamFailure):
                    logger.error(
                        f"Stream failure in session {self.session.session_id}: {error}"
                    )
                    return STREAM_FAILED
                raise error

        return STOPPED

    async def _teardown(self, reason: str) -> None:
        self.close_reason = reason
        channel, self._channel = self._channel, None

        if channel is not None:
            try:
                await channel.close()
            except Exception as e:
                logger.warning(
                    f"Error closing channel for session {self.session.session_id}: {e}"
                )

        if reason == STOPPED:
            await self._close_transport(self._stop_notice, self._stop_code)
        elif reason in (CHANNEL_CLOSED, STREAM_FAILED):
            await self._close_transport(ERROR_NOTICE, CLOSE_ERROR)

        self.state = BridgeState.CLOSED
        self._done.set()
        logger.info(f"Bridge closed for session {self.session.session_id} ({reason})")

    async def stop(self, notice: Optional[str] = None, code: int = 1000) -> None:
        """
        Stop relaying, close the channel and the transport, and wait for it.

        Safe to call before ``run()`` has started and more than once.
        """
        if self._stop_event.is_set():
            if self._started:
                await self._done.wait()
            return

        self._stop_notice = notice
        self._stop_code = code
        self._stop_event.set()
        if self._started:
            await self._done.wait()

    async def resize(self) -> None:
        """
        Apply the session's current dimensions to the live channel and tell
        the shell.

        Must be called without the session lock held. Dimensions are read
        under the write lock, so overlapping calls always finish on the
        latest size. No-op until a channel is open.

        Raises:
            StreamFailure: If the runtime rejects the resize.
        """
        async with self._write_lock:
            channel = self._channel
            if channel is None or self.state == BridgeState.CLOSED:
                return
            dims = self.session.dimensions
            try:
                await channel.resize(dims.cols, dims.rows)
                await channel.write(resize_command(dims).encode())
            except SandboxError as e:
                raise StreamFailure(f"Resize failed: {e}") from e

    # -- Relay directions ----------------------------------------------------

    async def _pump_inbound(self) -> str:
        """Transport -> guard -> process channel."""
        while True:
            message = await self.websocket.receive()
            if message["type"] == "websocket.disconnect":
                return TRANSPORT_CLOSED

            self.session.touch()

            if message.get("bytes") is not None:
                text = self._decoder.decode(message["bytes"])
            else:
                text = message.get("text") or ""
            if not text:
                continue

            result = self.guard.feed(text)
            if result.forward:
                try:
                    async with self._write_lock:
                        await self._channel.write(result.forward.encode())
                except SandboxError as e:
                    raise StreamFailure(f"Write to shell failed: {e}") from e

            for notice in result.notices:
                if not await self._send(notice):
                    return TRANSPORT_CLOSED

    async def _pump_outbound(self) -> str:
        """Process channel -> bounded frames -> transport."""
        while True:
            try:
                data = await self._channel.read()
            except SandboxError as e:
                raise StreamFailure(f"Read from shell failed: {e}") from e

            if not data:
                return CHANNEL_CLOSED

            for chunk in iter_chunks(data, self.max_frame_bytes):
                if not await self._send(chunk):
                    return TRANSPORT_CLOSED

    # -- Transport helpers ---------------------------------------------------

    async def _send(self, data: Union[str, bytes]) -> bool:
        """Send one frame; False if the transport is gone."""
        async with self._send_lock:
            try:
                if isinstance(data, bytes):
                    await self.websocket.send_bytes(data)
                else:
                    await self.websocket.send_text(data)
                return True
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.debug(
                    f"Transport for session {self.session.session_id} gone: {e}"
                )
                return False

    async def _close_transport(self, notice: Optional[str], code: int) -> None:
        if notice:
            await self._send(notice)
        async with self._send_lock:
            try:
                await self.websocket.close(code=code)
            except (WebSocketDisconnect, RuntimeError, OSError):
                pass
