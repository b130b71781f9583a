"""Tests for the Docker runtime against a mocked Docker client."""

import time
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import APIError, NotFound

from sandterm.sandbox.docker_runtime import DockerChannel, DockerRuntime
from sandterm.sandbox.profiles import MINIMAL
from sandterm.sandbox.runtime import ChannelClosed, SandboxError, SandboxHandle


@pytest.fixture
def client():
    mock = MagicMock()
    container = MagicMock(id="c0ffee" * 10, short_id="c0ffee")
    mock.containers.create.return_value = container
    mock.containers.get.return_value = container
    mock.api.exec_create.return_value = {"Id": "exec-1"}
    mock.api.exec_start.return_value = MagicMock()
    return mock


@pytest.fixture
def docker_runtime(client):
    runtime = DockerRuntime(image="persistent_centos")
    runtime._client = client
    return runtime


class TestDockerRuntime:
    @pytest.mark.asyncio
    async def test_create_applies_profile(self, docker_runtime, client):
        handle = await docker_runtime.create_sandbox(MINIMAL, 100, 30)

        _, kwargs = client.containers.create.call_args
        assert kwargs["mem_limit"] == 512 * 1024 * 1024
        assert kwargs["memswap_limit"] == kwargs["mem_limit"]
        assert kwargs["cpu_shares"] == 256
        assert kwargs["pids_limit"] == 100
        assert kwargs["cap_drop"] == ["ALL"]
        assert "SYS_ADMIN" not in kwargs["cap_add"]
        assert kwargs["security_opt"] == ["no-new-privileges"]
        assert kwargs["network_mode"] == "bridge"
        assert kwargs["auto_remove"] is True
        assert "COLUMNS=100" in kwargs["environment"]
        assert handle.sandbox_id == "c0ffee" * 10
        client.containers.create.return_value.start.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_start_removes_container(self, docker_runtime, client):
        container = client.containers.create.return_value
        container.start.side_effect = APIError("no space left")

        with pytest.raises(SandboxError):
            await docker_runtime.create_sandbox(MINIMAL, 80, 24)
        container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_container_started_after_timeout_is_removed(
        self, docker_runtime, client
    ):
        container = client.containers.create.return_value

        def slow_create(*args, **kwargs):
            time.sleep(0.2)
            return container

        client.containers.create.side_effect = slow_create

        with patch("sandterm.sandbox.docker_runtime.CREATE_TIMEOUT", 0.05):
            with pytest.raises(SandboxError, match="timed out"):
                await docker_runtime.create_sandbox(MINIMAL, 80, 24)

        await docker_runtime.close()

        container.start.assert_called_once()
        container.stop.assert_called_once()
        container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_handle_records_shell_user(self, docker_runtime):
        handle = await docker_runtime.create_sandbox(MINIMAL, 80, 24)
        assert handle.meta["user"] == "sandbox"

    @pytest.mark.asyncio
    async def test_provision_runs_script(self, docker_runtime, client):
        handle = await docker_runtime.create_sandbox(MINIMAL, 80, 24)
        container = handle.meta["container"]
        container.exec_run.return_value = MagicMock(exit_code=0, output=b"")

        await docker_runtime.provision(handle, "true")

        container.exec_run.assert_called_once_with(["/bin/bash", "-c", "true"])

    @pytest.mark.asyncio
    async def test_open_channel_sizes_exec(self, docker_runtime, client):
        handle = SandboxHandle(sandbox_id="abc", profile="minimal")

        channel = await docker_runtime.open_channel(handle, 120, 40)

        assert isinstance(channel, DockerChannel)
        client.api.exec_resize.assert_called_once_with("exec-1", height=40, width=120)
        _, kwargs = client.api.exec_create.call_args
        assert kwargs["user"] == ""

    @pytest.mark.asyncio
    async def test_open_channel_runs_as_profile_user(self, docker_runtime, client):
        handle = SandboxHandle(
            sandbox_id="abc", profile="minimal", meta={"user": "sandbox"}
        )

        await docker_runtime.open_channel(handle, 80, 24)

        _, kwargs = client.api.exec_create.call_args
        assert kwargs["user"] == "sandbox"
        assert kwargs["workdir"] == "/home/sandbox"

    @pytest.mark.asyncio
    async def test_destroy_tolerates_missing_container(self, docker_runtime, client):
        client.containers.get.side_effect = NotFound("gone")

        await docker_runtime.destroy_sandbox(
            SandboxHandle(sandbox_id="abc", profile="minimal")
        )

    @pytest.mark.asyncio
    async def test_destroy_failure_raises(self, docker_runtime, client):
        client.containers.get.return_value.stop.side_effect = APIError("daemon busy")

        with pytest.raises(SandboxError):
            await docker_runtime.destroy_sandbox(
                SandboxHandle(sandbox_id="abc", profile="minimal")
            )


class TestDockerChannel:
    @pytest.mark.asyncio
    async def test_write_after_close(self, client):
        sock = MagicMock()
        channel = DockerChannel(client, "exec-1", sock)

        await channel.close()

        with pytest.raises(ChannelClosed):
            await channel.write(b"ls\n")
        assert await channel.read() == b""

    @pytest.mark.asyncio
    async def test_read_and_write_use_raw_socket(self, client):
        raw = MagicMock()
        raw.recv.return_value = b"output"
        channel = DockerChannel(client, "exec-1", MagicMock(_sock=raw))

        await channel.write(b"ls\n")

        raw.sendall.assert_called_once_with(b"ls\n")
        assert await channel.read() == b"output"
