"""Shared fixtures: a hand-driven clock and a dispatcher running on it."""

import socket

import pytest

from gpsstats.dispatcher import Dispatcher


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher(clock: FakeClock):
    d = Dispatcher(clock=clock, tick=0.01)
    yield d
    d.close()


@pytest.fixture
def pair():
    """A connected socket pair; the first end is the one under test."""
    a, b = socket.socketpair()
    yield a, b
    a.close()
    b.close()
