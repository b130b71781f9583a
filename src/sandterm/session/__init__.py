"""
Session lifecycle for sandterm.

- base: Session record, states and terminal dimensions
- registry: create/lookup/resize/attach/terminate with per-session locking
- reaper: background sweep that terminates idle sessions
- models: pydantic schemas for the control API
"""

from sandterm.session.base import Dimensions, Session, SessionState
from sandterm.session.errors import (
    ResourceExhausted,
    SessionError,
    SessionNotFound,
    StreamFailure,
    TeardownFailure,
)
from sandterm.session.reaper import IdleReaper
from sandterm.session.registry import SessionRegistry

__all__ = [
    "Dimensions",
    "IdleReaper",
    "ResourceExhausted",
    "Session",
    "SessionError",
    "SessionNotFound",
    "SessionRegistry",
    "SessionState",
    "StreamFailure",
    "TeardownFailure",
]
