"""
Interfaces for the sandbox runtime.

A runtime creates isolated environments (``SandboxHandle``) and opens
interactive process channels (``ProcessChannel``) inside them. The session
core only talks to these abstractions; ``DockerRuntime`` is the production
implementation and tests use an in-memory fake.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from sandterm.sandbox.profiles import SecurityProfile


class SandboxError(Exception):
    """A runtime operation failed (create, start, exec, resize, teardown)."""


class ChannelClosed(SandboxError):
    """The process channel is no longer usable."""


@dataclass
class SandboxHandle:
    """Reference to one provisioned sandbox."""

    sandbox_id: str
    profile: str
    meta: dict[str, Any] = field(default_factory=dict)


class ProcessChannel(ABC):
    """
    Interactive shell attached to a pseudo-terminal inside a sandbox.

    ``read`` returns raw output bytes and ``b""`` once the process has
    exited. Implementations must be safe to ``close`` more than once.
    """

    @abstractmethod
    async def read(self) -> bytes:
        pass

    @abstractmethod
    async def write(self, data: bytes) -> None:
        pass

    @abstractmethod
    async def resize(self, cols: int, rows: int) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class SandboxRuntime(ABC):
    """Capability to provision sandboxes and attach shells to them."""

    @abstractmethod
    async def create_sandbox(
        self, profile: SecurityProfile, cols: int, rows: int
    ) -> SandboxHandle:
        """
        Create and start a sandbox under the given security profile.

        Raises:
            SandboxError: If the sandbox cannot be created or started. No
                partially created sandbox is left behind.
        """
        pass

    @abstractmethod
    async def provision(self, handle: SandboxHandle, script: str) -> None:
        """Run a one-time setup script inside a freshly started sandbox."""
        pass

    @abstractmethod
    async def open_channel(
        self, handle: SandboxHandle, cols: int, rows: int
    ) -> ProcessChannel:
        """Start an interactive shell bound to a pseudo-terminal."""
        pass

    @abstractmethod
    async def destroy_sandbox(self, handle: SandboxHandle) -> None:
        """
        Stop and remove a sandbox.

        Raises:
            SandboxError: If teardown fails.
        """
        pass

    async def close(self) -> None:
        """Release runtime-level resources (clients, pools)."""
        return None
