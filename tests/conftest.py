"""Shared test fixtures for Navigator Security tests.

- ``clock``: a controllable wall clock injected into every component
- ``storage`` / ``session``: fresh persistent and session-scoped stores
- ``security_logger``: a logger wired to the fake clock
"""
import pytest

from navigator_security.storage import MemoryStore, SessionStore
from navigator_security.logger import LoggerConfig, SecurityLogger


class FakeClock:
    """Epoch clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStore()


@pytest.fixture
def session():
    return SessionStore()


@pytest.fixture
def security_logger(clock):
    return SecurityLogger(LoggerConfig(console_logging=False), clock=clock)
