"""
Sandbox runtime for sandterm.

Sessions never talk to a container engine directly; they go through the
``SandboxRuntime`` interface and the security profiles defined here.

Usage:
    from sandterm.sandbox import DockerRuntime, get_profile

    runtime = DockerRuntime(image="persistent_centos")
    handle = await runtime.create_sandbox(get_profile("minimal"), 80, 24)
"""

from sandterm.sandbox.docker_runtime import DockerRuntime
from sandterm.sandbox.profiles import (
    MINIMAL,
    PRIVILEGED,
    PROFILES,
    SecurityProfile,
    get_profile,
)
from sandterm.sandbox.runtime import (
    ChannelClosed,
    ProcessChannel,
    SandboxError,
    SandboxHandle,
    SandboxRuntime,
)

__all__ = [
    "ChannelClosed",
    "DockerRuntime",
    "MINIMAL",
    "PRIVILEGED",
    "PROFILES",
    "ProcessChannel",
    "SandboxError",
    "SandboxHandle",
    "SandboxRuntime",
    "SecurityProfile",
    "get_profile",
]
