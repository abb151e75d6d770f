"""Shared fixtures for the pingmetrics test suite."""
import socket
from itertools import cycle
from typing import Iterable

import pytest

from pingmetrics import metrics as app_metrics
from pingmetrics.config import Settings


def pytest_configure(config):
    config.addinivalue_line("markers", "e2e: runs the service in a subprocess")


class ScriptedRandom:
    """Stand-in for the random module that returns scripted randrange values."""

    def __init__(self, values: Iterable[int]):
        self._values = cycle(list(values))
        self.calls = 0

    def randrange(self, stop: int) -> int:
        self.calls += 1
        value = next(self._values)
        assert 0 <= value < stop
        return value


class FixedOscillation:
    """Oscillation double returning the given factors in turn."""

    def __init__(self, *factors: float):
        self._factors = cycle(factors or (1.0,))

    def factor(self, now=None) -> float:
        return next(self._factors)


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def rpc_metrics(settings):
    """Instruments on a fresh registry so tests never collide."""
    return app_metrics.configure(settings)


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
