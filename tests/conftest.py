"""Shared pytest fixtures and configuration."""

import pytest

from fakes import FakeRuntime, FakeWebSocket
from sandterm.config import Settings
from sandterm.sandbox.profiles import MINIMAL
from sandterm.session.base import Dimensions
from sandterm.session.registry import SessionRegistry


@pytest.fixture
def runtime():
    """In-memory sandbox runtime."""
    return FakeRuntime()


@pytest.fixture
def registry(runtime):
    """Session registry backed by the fake runtime."""
    return SessionRegistry(runtime, MINIMAL, default_dimensions=Dimensions(80, 24))


@pytest.fixture
def websocket():
    return FakeWebSocket()


@pytest.fixture
def settings():
    """Settings isolated from the environment."""
    return Settings(sweep_interval_seconds=3600)
