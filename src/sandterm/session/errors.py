"""
Errors raised by the session subsystem.
"""


class SessionError(Exception):
    """Base class for session lifecycle errors."""


class ResourceExhausted(SessionError):
    """A sandbox could not be provisioned (quota, runtime unavailable)."""


class SessionNotFound(SessionError):
    """The session id is unknown, expired or already terminated."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class StreamFailure(SessionError):
    """I/O on the process channel or transport failed mid-session."""


class TeardownFailure(SessionError):
    """The sandbox could not be stopped or removed."""
