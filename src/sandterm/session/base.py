"""
Core session data model.

A session owns exactly one sandbox for its whole life and at most one live
terminal bridge at a time.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from sandterm.sandbox.runtime import SandboxHandle

if TYPE_CHECKING:
    from sandterm.terminal.bridge import TerminalBridge


class SessionState(str, Enum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


# States in which a transport may attach to the session
ATTACHABLE_STATES = (SessionState.ACTIVE, SessionState.DISCONNECTED)


@dataclass(frozen=True)
class Dimensions:
    """Terminal size. Immutable so readers always see a consistent pair."""

    cols: int
    rows: int

    def __post_init__(self):
        if self.cols <= 0 or self.rows <= 0:
            raise ValueError(
                f"Terminal dimensions must be positive, got {self.cols}x{self.rows}"
            )

    def to_dict(self) -> dict[str, int]:
        return {"cols": self.cols, "rows": self.rows}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class Session:
    """One user session and the sandbox it exclusively owns."""

    session_id: str
    dimensions: Dimensions
    state: SessionState = SessionState.PROVISIONING
    sandbox: Optional[SandboxHandle] = None
    bridge: Optional["TerminalBridge"] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    # Guards state, dimensions and bridge transitions for this entry only
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    # Serializes reconnects so a bridge is fully retired before the next starts
    connect_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def active(self) -> bool:
        """True while a transport is bridged to the sandbox."""
        return self.bridge is not None

    @property
    def terminated(self) -> bool:
        return self.state in (SessionState.TERMINATING, SessionState.TERMINATED)

    def touch(self) -> None:
        """Record client activity."""
        self.last_activity = utcnow()

    def idle_for(self, now: Optional[datetime] = None) -> float:
        """Seconds since the last recorded activity."""
        return ((now or utcnow()) - self.last_activity).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Serialize session status for API responses."""
        return {
            "sessionId": self.session_id,
            "active": self.active,
            "state": self.state.value,
            "lastActivity": self.last_activity.isoformat(),
            "createdAt": self.created_at.isoformat(),
            "dimensions": self.dimensions.to_dict(),
        }
