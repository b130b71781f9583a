"""
Unit tests for the SessionRegistry.
"""

import asyncio
from datetime import timedelta

import pytest

from fakes import FakeChannel, FakeRuntime, FakeWebSocket, wait_until
from sandterm.sandbox.profiles import MINIMAL
from sandterm.session.base import Dimensions, SessionState, utcnow
from sandterm.session.errors import (
    ResourceExhausted,
    SessionNotFound,
    StreamFailure,
)
from sandterm.session.reaper import IdleReaper
from sandterm.session.registry import (
    REPLACED_NOTICE,
    TERMINATED_NOTICE,
    SessionRegistry,
)
from sandterm.terminal.bridge import STOPPED, BridgeState, TerminalBridge


class SlowRuntime(FakeRuntime):
    """Holds sandbox creation until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def create_sandbox(self, profile, cols, rows):
        await self.release.wait()
        return await super().create_sandbox(profile, cols, rows)


class StuckChannel(FakeChannel):
    """Once ``stuck`` is set, writes hang until ``release`` is set."""

    def __init__(self, cols, rows):
        super().__init__(cols, rows)
        self.stuck = False
        self.blocked = False
        self.release = asyncio.Event()

    async def write(self, data: bytes) -> None:
        if self.stuck:
            self.blocked = True
            await self.release.wait()
        await super().write(data)


class StuckRuntime(FakeRuntime):
    async def open_channel(self, handle, cols, rows):
        channel = StuckChannel(cols, rows)
        self.channels.append(channel)
        return channel


async def connect(registry, runtime, session_id, websocket=None):
    """Attach and start a bridge, returning it with its run task."""
    websocket = websocket or FakeWebSocket()
    session = registry.get(session_id)
    bridge = TerminalBridge(session, websocket, runtime)
    await registry.attach(session_id, bridge)
    task = asyncio.create_task(bridge.run())
    await wait_until(lambda: bridge.state == BridgeState.STREAMING)
    return bridge, task


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_registers_active_session(self, registry, runtime):
        session = await registry.create(Dimensions(100, 30))

        assert session.state == SessionState.ACTIVE
        assert session.dimensions == Dimensions(100, 30)
        assert session.sandbox is runtime.created[0]
        assert session.session_id in registry
        assert registry.get(session.session_id) is session
        assert not session.active

    @pytest.mark.asyncio
    async def test_create_uses_default_dimensions(self, registry):
        session = await registry.create()
        assert session.dimensions == Dimensions(80, 24)

    @pytest.mark.asyncio
    async def test_create_runs_profile_setup(self, registry, runtime):
        session = await registry.create()
        assert runtime.provisioned == [(session.sandbox, MINIMAL.setup_script)]

    @pytest.mark.asyncio
    async def test_concurrent_creates_get_unique_ids(self, registry, runtime):
        sessions = await asyncio.gather(*(registry.create() for _ in range(10)))

        ids = {s.session_id for s in sessions}
        assert len(ids) == 10
        assert len(registry) == 10
        assert len({s.sandbox.sandbox_id for s in sessions}) == 10

    @pytest.mark.asyncio
    async def test_create_failure_leaves_nothing_registered(self, registry, runtime):
        runtime.fail_create = True

        with pytest.raises(ResourceExhausted):
            await registry.create()

        assert len(registry) == 0
        assert registry.list_sessions() == []

    @pytest.mark.asyncio
    async def test_provision_failure_destroys_sandbox(self, registry, runtime):
        runtime.fail_provision = True

        with pytest.raises(ResourceExhausted):
            await registry.create()

        assert len(registry) == 0
        assert runtime.destroyed == runtime.created

    @pytest.mark.asyncio
    async def test_max_sessions(self, runtime):
        registry = SessionRegistry(runtime, MINIMAL, max_sessions=2)
        await registry.create()
        await registry.create()

        with pytest.raises(ResourceExhausted, match="limit"):
            await registry.create()
        assert len(registry) == 2
        assert len(runtime.created) == 2

    @pytest.mark.asyncio
    async def test_terminate_during_provisioning(self):
        runtime = SlowRuntime()
        registry = SessionRegistry(runtime, MINIMAL)

        task = asyncio.create_task(registry.create())
        await wait_until(lambda: len(registry) == 1)
        session_id = next(iter(registry._sessions))

        assert await registry.terminate(session_id) is True
        assert session_id not in registry
        assert len(registry) == 0
        with pytest.raises(SessionNotFound):
            registry.get(session_id)
        runtime.release.set()

        with pytest.raises(ResourceExhausted):
            await task
        assert len(registry) == 0
        assert runtime.destroyed == runtime.created


class TestLookup:
    @pytest.mark.asyncio
    async def test_get_unknown(self, registry):
        with pytest.raises(SessionNotFound):
            registry.get("missing")

    @pytest.mark.asyncio
    async def test_list_stale(self, registry):
        fresh = await registry.create()
        stale = await registry.create()
        stale.last_activity = utcnow() - timedelta(minutes=31)

        assert registry.list_stale(timedelta(minutes=30)) == [stale.session_id]
        assert fresh.session_id not in registry.list_stale(timedelta(minutes=30))

    @pytest.mark.asyncio
    async def test_status_dict(self, registry):
        session = await registry.create(Dimensions(90, 20))
        status = session.to_dict()

        assert status["sessionId"] == session.session_id
        assert status["active"] is False
        assert status["state"] == "active"
        assert status["dimensions"] == {"cols": 90, "rows": 20}


class TestResize:
    @pytest.mark.asyncio
    async def test_resize_without_bridge(self, registry, runtime):
        session = await registry.create()

        await registry.resize(session.session_id, 120, 40)

        assert session.dimensions == Dimensions(120, 40)
        assert runtime.channels == []

    @pytest.mark.asyncio
    async def test_resize_unknown(self, registry):
        with pytest.raises(SessionNotFound):
            await registry.resize("missing", 120, 40)

    @pytest.mark.asyncio
    async def test_resize_rejects_non_positive(self, registry):
        session = await registry.create()
        with pytest.raises(ValueError):
            await registry.resize(session.session_id, 0, 40)
        assert session.dimensions == Dimensions(80, 24)

    @pytest.mark.asyncio
    async def test_resize_with_live_bridge(self, registry, runtime):
        session = await registry.create()
        bridge, task = await connect(registry, runtime, session.session_id)

        await registry.resize(session.session_id, 120, 40)

        assert runtime.channels[0].resizes == [(120, 40)]
        assert session.to_dict()["dimensions"] == {"cols": 120, "rows": 40}

        await registry.terminate(session.session_id)
        await task

    @pytest.mark.asyncio
    async def test_next_connection_uses_stored_dimensions(self, registry, runtime):
        session = await registry.create()
        await registry.resize(session.session_id, 132, 43)

        bridge, task = await connect(registry, runtime, session.session_id)

        assert runtime.channels[0].opened_with == (132, 43)
        await registry.terminate(session.session_id)
        await task

    @pytest.mark.asyncio
    async def test_stuck_resize_does_not_block_terminate(self):
        runtime = StuckRuntime()
        registry = SessionRegistry(runtime, MINIMAL)
        session = await registry.create()
        bridge, task = await connect(registry, runtime, session.session_id)
        channel = runtime.channels[0]
        await wait_until(lambda: len(channel.written) == 1)

        channel.stuck = True
        resize = asyncio.create_task(registry.resize(session.session_id, 120, 40))
        await wait_until(lambda: channel.blocked)

        assert await asyncio.wait_for(registry.terminate(session.session_id), 1) is True
        assert await task == STOPPED
        assert session.session_id not in registry
        assert runtime.destroyed == runtime.created

        channel.release.set()
        with pytest.raises(StreamFailure):
            await resize

    @pytest.mark.asyncio
    async def test_stuck_session_does_not_stall_idle_sweep(self):
        runtime = StuckRuntime()
        registry = SessionRegistry(runtime, MINIMAL)
        stuck = await registry.create()
        idle = await registry.create()
        bridge, task = await connect(registry, runtime, stuck.session_id)
        channel = runtime.channels[0]
        await wait_until(lambda: len(channel.written) == 1)

        channel.stuck = True
        resize = asyncio.create_task(registry.resize(stuck.session_id, 120, 40))
        await wait_until(lambda: channel.blocked)
        past = utcnow() - timedelta(hours=1)
        stuck.last_activity = past
        idle.last_activity = past

        reaped = await asyncio.wait_for(IdleReaper(registry).sweep(), 1)

        assert sorted(reaped) == sorted([stuck.session_id, idle.session_id])
        assert len(registry) == 0
        await task

        channel.release.set()
        with pytest.raises(StreamFailure):
            await resize

    @pytest.mark.asyncio
    async def test_overlapping_resizes_end_on_latest(self, registry, runtime):
        session = await registry.create()
        bridge, task = await connect(registry, runtime, session.session_id)

        await asyncio.gather(
            registry.resize(session.session_id, 120, 40),
            registry.resize(session.session_id, 100, 50),
        )

        assert session.dimensions == Dimensions(100, 50)
        assert runtime.channels[0].resizes[-1] == (100, 50)

        await registry.terminate(session.session_id)
        await task


class TestAttach:
    @pytest.mark.asyncio
    async def test_attach_marks_session_active(self, registry, runtime):
        session = await registry.create()
        bridge, task = await connect(registry, runtime, session.session_id)

        assert session.bridge is bridge
        assert session.active

        await registry.terminate(session.session_id)
        await task

    @pytest.mark.asyncio
    async def test_reconnect_retires_previous_bridge(self, registry, runtime):
        session = await registry.create()
        first_ws = FakeWebSocket()
        first, first_task = await connect(
            registry, runtime, session.session_id, first_ws
        )

        second, second_task = await connect(registry, runtime, session.session_id)

        assert first_task.done()
        assert first.state == BridgeState.CLOSED
        assert first_ws.sent_text[-1] == REPLACED_NOTICE
        assert first_ws.close_code == 4000
        assert runtime.channels[0].closed
        assert not runtime.channels[1].closed
        assert session.bridge is second

        await registry.terminate(session.session_id)
        await second_task

    @pytest.mark.asyncio
    async def test_detach_marks_disconnected(self, registry, runtime, websocket):
        session = await registry.create()
        bridge, task = await connect(registry, runtime, session.session_id, websocket)

        websocket.disconnect()
        await task
        await registry.detach(session, bridge)

        assert session.state == SessionState.DISCONNECTED
        assert session.bridge is None
        assert runtime.destroyed == []

    @pytest.mark.asyncio
    async def test_detach_of_retired_bridge_is_ignored(self, registry, runtime):
        session = await registry.create()
        first, first_task = await connect(registry, runtime, session.session_id)
        second, second_task = await connect(registry, runtime, session.session_id)

        await registry.detach(session, first)

        assert session.bridge is second
        assert session.state == SessionState.ACTIVE

        await registry.terminate(session.session_id)
        await second_task

    @pytest.mark.asyncio
    async def test_attach_to_terminated_session(self, registry, runtime, websocket):
        session = await registry.create()
        await registry.terminate(session.session_id)

        with pytest.raises(SessionNotFound):
            await registry.attach(
                session.session_id, TerminalBridge(session, websocket, runtime)
            )


class TestTerminate:
    @pytest.mark.asyncio
    async def test_terminate_is_idempotent(self, registry, runtime):
        session = await registry.create()

        assert await registry.terminate(session.session_id) is True
        assert await registry.terminate(session.session_id) is False

        assert session.session_id not in registry
        assert session.state == SessionState.TERMINATED
        assert runtime.destroyed == [runtime.created[0]]

    @pytest.mark.asyncio
    async def test_terminate_unknown(self, registry):
        assert await registry.terminate("missing") is False

    @pytest.mark.asyncio
    async def test_concurrent_terminate_destroys_once(self, registry, runtime):
        session = await registry.create()

        results = await asyncio.gather(
            registry.terminate(session.session_id),
            registry.terminate(session.session_id),
        )

        assert sorted(results) == [False, True]
        assert len(runtime.destroyed) == 1

    @pytest.mark.asyncio
    async def test_terminate_is_fail_open(self, registry, runtime):
        session = await registry.create()
        runtime.fail_destroy = True

        assert await registry.terminate(session.session_id) is True

        assert session.session_id not in registry
        with pytest.raises(SessionNotFound):
            registry.get(session.session_id)

    @pytest.mark.asyncio
    async def test_terminate_closes_bridge(self, registry, runtime, websocket):
        session = await registry.create()
        bridge, task = await connect(registry, runtime, session.session_id, websocket)

        await registry.terminate(session.session_id)

        assert task.done()
        assert runtime.channels[0].closed
        assert websocket.sent_text[-1] == TERMINATED_NOTICE
        assert websocket.close_code == 1000

    @pytest.mark.asyncio
    async def test_terminate_all(self, registry, runtime):
        for _ in range(3):
            await registry.create()
        runtime.fail_destroy = True

        assert await registry.terminate_all() == 3
        assert len(registry) == 0
        assert len(runtime.destroyed) == 3
