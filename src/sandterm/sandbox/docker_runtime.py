"""
Docker-backed sandbox runtime.

Each sandbox is a container started from ``image`` with the resource and
capability policy of a ``SecurityProfile``. Shells are attached with
``exec`` instances bound to a TTY; their hijacked sockets are read and
written from worker threads so the event loop never blocks on Docker.
"""

import asyncio
import socket
from typing import Any, Optional

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.types import Ulimit

from sandterm.logger import get_logger
from sandterm.sandbox.profiles import SecurityProfile
from sandterm.sandbox.runtime import (
    ChannelClosed,
    ProcessChannel,
    SandboxError,
    SandboxHandle,
    SandboxRuntime,
)

logger = get_logger(__name__)

# Timeouts for Docker API calls (seconds)
CREATE_TIMEOUT = 60.0
PROVISION_TIMEOUT = 300.0
STOP_TIMEOUT = 5
READ_SIZE = 4096

TERM = "xterm-256color"


def terminal_env(cols: int, rows: int) -> list[str]:
    """Environment shared by the container and every attached shell."""
    return [f"TERM={TERM}", f"COLUMNS={cols}", f"LINES={rows}"]


class DockerChannel(ProcessChannel):
    """A shell exec instance attached through a hijacked Docker socket."""

    def __init__(self, client: docker.DockerClient, exec_id: str, sock: Any):
        self._client = client
        self._exec_id = exec_id
        # exec_start(socket=True) returns a SocketIO wrapper; use the raw socket
        self._sock: socket.socket = getattr(sock, "_sock", sock)
        self._closed = False

    @property
    def exec_id(self) -> str:
        return self._exec_id

    async def read(self) -> bytes:
        if self._closed:
            return b""
        try:
            return await asyncio.to_thread(self._sock.recv, READ_SIZE)
        except OSError as e:
            if self._closed:
                return b""
            raise ChannelClosed(f"Read from exec {self._exec_id[:12]} failed: {e}")

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise ChannelClosed("Channel is closed")
        try:
            await asyncio.to_thread(self._sock.sendall, data)
        except OSError as e:
            raise ChannelClosed(f"Write to exec {self._exec_id[:12]} failed: {e}")

    async def resize(self, cols: int, rows: int) -> None:
        try:
            await asyncio.to_thread(
                self._client.api.exec_resize, self._exec_id, height=rows, width=cols
            )
        except DockerException as e:
            raise SandboxError(f"Resize of exec {self._exec_id[:12]} failed: {e}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            # Unblocks any reader thread parked in recv()
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._sock.close()
        except OSError:
            pass


class DockerRuntime(SandboxRuntime):
    """SandboxRuntime implementation using the Docker Engine API."""

    def __init__(self, image: str, shell: str = "/bin/bash"):
        self.image = image
        self.shell = shell
        self._client: Optional[docker.DockerClient] = None
        # Removals of containers that finished starting after a timeout
        self._late_cleanups: set[asyncio.Task] = set()

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of the Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _create_container(self, profile: SecurityProfile, cols: int, rows: int):
        container = self.client.containers.create(
            self.image,
            command=[self.shell],
            tty=True,
            stdin_open=True,
            environment=terminal_env(cols, rows),
            working_dir=profile.working_dir,
            labels=dict(profile.labels),
            auto_remove=profile.auto_remove,
            mem_limit=profile.memory_bytes,
            memswap_limit=profile.memory_swap_bytes,
            cpu_shares=profile.cpu_shares,
            pids_limit=profile.pids_limit,
            cap_drop=list(profile.cap_drop),
            cap_add=list(profile.cap_add),
            security_opt=list(profile.security_opt),
            network_mode=profile.network_mode,
            read_only=False,
            ulimits=[
                Ulimit(name="nofile", soft=profile.nofile_soft, hard=profile.nofile_hard)
            ],
        )
        try:
            container.start()
        except DockerException:
            try:
                container.remove(force=True)
            except DockerException as cleanup_error:
                logger.error(
                    f"Failed to remove unstarted container {container.short_id}: "
                    f"{cleanup_error}"
                )
            raise
        return container

    async def create_sandbox(
        self, profile: SecurityProfile, cols: int, rows: int
    ) -> SandboxHandle:
        # The worker thread cannot be cancelled, so keep hold of its result
        pending = asyncio.ensure_future(
            asyncio.to_thread(self._create_container, profile, cols, rows)
        )
        try:
            container = await asyncio.wait_for(
                asyncio.shield(pending), timeout=CREATE_TIMEOUT
            )
        except asyncio.TimeoutError:
            self._discard_when_created(pending)
            raise SandboxError(
                f"Container creation timed out after {CREATE_TIMEOUT}s"
            ) from None
        except asyncio.CancelledError:
            self._discard_when_created(pending)
            raise
        except DockerException as e:
            raise SandboxError(f"Container creation failed: {e}") from e

        logger.info(
            f"Started container {container.short_id} "
            f"(image={self.image}, profile={profile.name})"
        )
        return SandboxHandle(
            sandbox_id=container.id,
            profile=profile.name,
            meta={"container": container, "user": profile.user},
        )

    def _discard_when_created(self, pending: asyncio.Future) -> None:
        task = asyncio.create_task(self._remove_late_container(pending))
        self._late_cleanups.add(task)
        task.add_done_callback(self._late_cleanups.discard)

    async def _remove_late_container(self, pending: asyncio.Future) -> None:
        """Remove a container whose creation outlived the create timeout."""
        try:
            container = await pending
        except DockerException:
            return
        logger.warning(
            f"Removing container {container.short_id} that started after timeout"
        )
        try:
            await asyncio.to_thread(self._stop_and_remove, container.id)
        except DockerException as e:
            logger.error(f"Failed to remove late container {container.short_id}: {e}")

    async def provision(self, handle: SandboxHandle, script: str) -> None:
        container = handle.meta["container"]
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(container.exec_run, [self.shell, "-c", script]),
                timeout=PROVISION_TIMEOUT,
            )
        except asyncio.TimeoutError:
            raise SandboxError(
                f"Provisioning timed out after {PROVISION_TIMEOUT}s"
            ) from None
        except DockerException as e:
            raise SandboxError(f"Provisioning failed: {e}") from e

        if result.exit_code != 0:
            output = (result.output or b"").decode("utf-8", errors="replace")
            logger.warning(
                f"Provisioning script exited with {result.exit_code} in "
                f"{container.short_id}: {output[-200:]}"
            )

    def _start_exec(
        self, container_id: str, cols: int, rows: int, user: Optional[str] = None
    ) -> DockerChannel:
        api = self.client.api
        exec_id = api.exec_create(
            container_id,
            [self.shell],
            stdin=True,
            stdout=True,
            stderr=True,
            tty=True,
            environment=terminal_env(cols, rows),
            user=user or "",
            workdir=f"/home/{user}" if user else None,
        )["Id"]
        sock = api.exec_start(exec_id, tty=True, socket=True)
        api.exec_resize(exec_id, height=rows, width=cols)
        return DockerChannel(self.client, exec_id, sock)

    async def open_channel(
        self, handle: SandboxHandle, cols: int, rows: int
    ) -> ProcessChannel:
        try:
            return await asyncio.to_thread(
                self._start_exec,
                handle.sandbox_id,
                cols,
                rows,
                handle.meta.get("user"),
            )
        except DockerException as e:
            raise SandboxError(
                f"Failed to open shell in {handle.sandbox_id[:12]}: {e}"
            ) from e

    def _stop_and_remove(self, container_id: str) -> None:
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            return
        try:
            container.stop(timeout=STOP_TIMEOUT)
        except NotFound:
            return
        try:
            container.remove(force=True)
        except NotFound:
            # auto_remove already took it
            pass
        except APIError as e:
            # 409: auto_remove is already removing it
            if e.status_code != 409:
                raise

    async def destroy_sandbox(self, handle: SandboxHandle) -> None:
        try:
            await asyncio.to_thread(self._stop_and_remove, handle.sandbox_id)
        except DockerException as e:
            raise SandboxError(
                f"Failed to remove container {handle.sandbox_id[:12]}: {e}"
            ) from e
        logger.info(f"Removed container {handle.sandbox_id[:12]}")

    async def ping(self) -> bool:
        """Check that the Docker daemon is reachable."""
        try:
            return await asyncio.to_thread(self.client.ping)
        except DockerException:
            return False

    async def close(self) -> None:
        if self._late_cleanups:
            await asyncio.gather(*self._late_cleanups, return_exceptions=True)
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None
