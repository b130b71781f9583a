"""
Session registry.

Authoritative mapping from session id to ``Session``. Map insertions and
removals are serialized by a registry-wide lock that is never held across
runtime I/O; state, dimension and bridge changes for one session are
serialized by that session's own lock, so sessions never wait on each other.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sandterm.logger import get_logger
from sandterm.sandbox.profiles import SecurityProfile
from sandterm.sandbox.runtime import SandboxError, SandboxRuntime
from sandterm.session.base import (
    ATTACHABLE_STATES,
    Dimensions,
    Session,
    SessionState,
    utcnow,
)
from sandterm.session.errors import (
    ResourceExhausted,
    SessionNotFound,
    TeardownFailure,
)

logger = get_logger(__name__)

TERMINATED_NOTICE = "\r\nSession terminated\r\n"
REPLACED_NOTICE = "\r\nSession attached from another connection\r\n"

# WebSocket close codes used when the registry retires a bridge
CLOSE_NORMAL = 1000
CLOSE_REPLACED = 4000


class SessionRegistry:
    """
    Creates, tracks and terminates sandbox-backed sessions.

    Reconnect policy is replace-and-retire: attaching a new bridge to a
    session that already has one stops the old bridge (relay tasks
    cancelled, channel and transport closed) before the new one proceeds.
    """

    def __init__(
        self,
        runtime: SandboxRuntime,
        profile: SecurityProfile,
        default_dimensions: Optional[Dimensions] = None,
        max_sessions: int = 0,
    ):
        self.runtime = runtime
        self.profile = profile
        self.default_dimensions = default_dimensions or Dimensions(80, 24)
        self.max_sessions = max_sessions
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def _new_id(self) -> str:
        while True:
            session_id = str(uuid.uuid4())
            if session_id not in self._sessions:
                return session_id

    async def create(self, dimensions: Optional[Dimensions] = None) -> Session:
        """
        Provision a sandbox and register a new session for it.

        Args:
            dimensions: Initial terminal size, defaults to the registry default.

        Returns:
            The session, in the ``ACTIVE`` state.

        Raises:
            ResourceExhausted: If the sandbox could not be provisioned or the
                session ceiling is reached. Nothing stays registered.
        """
        dims = dimensions or self.default_dimensions

        async with self._lock:
            if self.max_sessions and len(self._sessions) >= self.max_sessions:
                raise ResourceExhausted(
                    f"Session limit reached ({self.max_sessions})"
                )
            session = Session(session_id=self._new_id(), dimensions=dims)
            self._sessions[session.session_id] = session

        session_id = session.session_id
        logger.info(
            f"Provisioning session {session_id} "
            f"({dims.cols}x{dims.rows}, profile={self.profile.name})"
        )

        try:
            session.sandbox = await self.runtime.create_sandbox(
                self.profile, dims.cols, dims.rows
            )
            if self.profile.setup_script:
                await self.runtime.provision(session.sandbox, self.profile.setup_script)
        except SandboxError as e:
            logger.error(f"Failed to provision session {session_id}: {e}")
            await self._rollback(session)
            raise ResourceExhausted(f"Failed to create session: {e}") from e
        except BaseException:
            await self._rollback(session)
            raise

        async with session.lock:
            if session.state == SessionState.PROVISIONING:
                session.state = SessionState.ACTIVE
                session.touch()
                logger.info(f"Session {session_id} active")
                return session

        # Terminated while provisioning; terminate() saw no sandbox to release
        await self._rollback(session)
        raise ResourceExhausted(f"Session {session_id} terminated during creation")

    async def _rollback(self, session: Session) -> None:
        """Release a partially provisioned sandbox and forget the session."""
        handle, session.sandbox = session.sandbox, None
        if handle is not None:
            try:
                await self.runtime.destroy_sandbox(handle)
            except SandboxError as e:
                logger.error(
                    f"Rollback of session {session.session_id} left sandbox "
                    f"{handle.sandbox_id[:12]} behind: {e}"
                )
        session.state = SessionState.TERMINATED
        async with self._lock:
            self._sessions.pop(session.session_id, None)

    def get(self, session_id: str) -> Session:
        """
        Look up a live session.

        Raises:
            SessionNotFound: If the id is unknown or the session is shutting down.
        """
        session = self._sessions.get(session_id)
        if session is None or session.terminated:
            raise SessionNotFound(session_id)
        return session

    def list_sessions(self) -> list[Session]:
        return [s for s in self._sessions.values() if not s.terminated]

    def list_stale(
        self, threshold: timedelta, now: Optional[datetime] = None
    ) -> list[str]:
        """Return ids of sessions idle for longer than ``threshold``."""
        now = now or utcnow()
        return [
            session_id
            for session_id, session in list(self._sessions.items())
            if session.state in ATTACHABLE_STATES
            and now - session.last_activity > threshold
        ]

    async def resize(self, session_id: str, cols: int, rows: int) -> Session:
        """
        Record new terminal dimensions and apply them to the live channel.

        With no bridge attached only the stored dimensions change; the next
        connection opens its channel with them.

        Raises:
            SessionNotFound: If the session is unknown.
            StreamFailure: If the runtime rejected the resize.
        """
        dims = Dimensions(cols, rows)
        session = self.get(session_id)

        async with session.lock:
            if session.terminated:
                raise SessionNotFound(session_id)
            session.dimensions = dims
            bridge = session.bridge

        # Channel I/O happens outside the lock so a stuck shell cannot hold up
        # terminate; the bridge always applies the latest stored dimensions
        if bridge is not None:
            await bridge.resize()

        logger.debug(f"Session {session_id} resized to {cols}x{rows}")
        return session

    async def attach(self, session_id: str, bridge) -> Session:
        """
        Make ``bridge`` the session's only bridge, retiring any previous one.

        Raises:
            SessionNotFound: If the session cannot accept a connection.
        """
        session = self.get(session_id)

        async with session.connect_lock:
            async with session.lock:
                if session.state not in ATTACHABLE_STATES:
                    raise SessionNotFound(session_id)
                previous, session.bridge = session.bridge, bridge
                session.state = SessionState.ACTIVE
                session.touch()

            # Outside the state lock: a bridge still opening its channel needs it
            if previous is not None:
                logger.info(f"Retiring previous bridge for session {session_id}")
                await previous.stop(REPLACED_NOTICE, code=CLOSE_REPLACED)

        return session

    async def detach(self, session: Session, bridge) -> None:
        """Forget ``bridge`` if it is still the session's current bridge."""
        async with session.lock:
            if session.bridge is not bridge:
                return
            session.bridge = None
            if session.state == SessionState.ACTIVE:
                session.state = SessionState.DISCONNECTED
        logger.info(f"Session {session.session_id} disconnected")

    async def terminate(self, session_id: str) -> bool:
        """
        Terminate a session and release its sandbox.

        Idempotent: unknown or already terminating ids are a no-op. The
        registry entry is removed even if sandbox teardown fails.

        Returns:
            True if this call performed the termination.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False

        async with session.lock:
            if session.terminated:
                return False
            was_provisioning = session.state == SessionState.PROVISIONING
            session.state = SessionState.TERMINATING
            bridge, session.bridge = session.bridge, None

        if was_provisioning:
            # create() owns the sandbox until it finishes and will roll back;
            # the entry goes now so the id is gone as soon as this returns
            async with self._lock:
                self._sessions.pop(session_id, None)
            logger.info(f"Session {session_id} terminated during provisioning")
            return True

        if bridge is not None:
            try:
                await bridge.stop(TERMINATED_NOTICE, code=CLOSE_NORMAL)
            except Exception as e:
                logger.error(f"Error stopping bridge for session {session_id}: {e}")

        handle, session.sandbox = session.sandbox, None
        try:
            if handle is not None:
                await self.runtime.destroy_sandbox(handle)
        except SandboxError as e:
            failure = TeardownFailure(
                f"Sandbox {handle.sandbox_id[:12]} of session {session_id} "
                f"may be orphaned: {e}"
            )
            logger.error(str(failure))
        finally:
            session.state = SessionState.TERMINATED
            async with self._lock:
                self._sessions.pop(session_id, None)

        logger.info(f"Session {session_id} terminated")
        return True

    async def terminate_all(self) -> int:
        """Terminate every registered session concurrently."""
        session_ids = list(self._sessions)
        if not session_ids:
            return 0

        results = await asyncio.gather(
            *(self.terminate(session_id) for session_id in session_ids),
            return_exceptions=True,
        )
        for session_id, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Error cleaning up session {session_id}: {result}")

        logger.info(f"Cleaned up {len(session_ids)} sessions")
        return len(session_ids)
