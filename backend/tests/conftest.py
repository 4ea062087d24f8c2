"""
Shared test doubles.

FakeClock / FakeSleep let TTL, token-bucket and backoff behavior be tested
without real waiting: FakeSleep records each requested delay and advances
the clock by it.
"""
from typing import List

import pytest

from replyengine.core.config import Settings


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    def __init__(self, clock: FakeClock = None):
        self.clock = clock
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        api_base="https://llm.test/v1",
        api_key=None,
        proxy_base_url="https://proxy.test",
        state_file_path=tmp_path / "state.json",
        log_json=False,
    )
