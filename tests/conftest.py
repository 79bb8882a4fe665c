"""Shared test fixtures."""

import asyncio

import pytest

import checkend
from checkend.config import Configuration
from checkend.models.notice import ApiResponse
from checkend.testing import NoticeRecorder


class StubClient:
    """Stands in for Client: records payloads and in-flight concurrency."""

    def __init__(self, results=None, block: asyncio.Event | None = None):
        self.payloads: list[dict] = []
        self.results = list(results) if results is not None else None
        self.block = block
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, payload):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.block is not None:
                await self.block.wait()
            await asyncio.sleep(0)
            self.payloads.append(payload)
            if self.results:
                return self.results.pop(0)
            if self.results is not None:
                return None
            return ApiResponse(id=len(self.payloads), problem_id=1)
        finally:
            self.in_flight -= 1


class SleepRecorder:
    """Replaces asyncio.sleep in the worker so throttle delays are observable."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def config() -> Configuration:
    return Configuration(api_key="test-key", environment="test", enabled=True, max_queue_size=10)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Remove CHECKEND_* variables and any .env file so only options apply."""
    for name in ("API_KEY", "ENDPOINT", "ENVIRONMENT", "DEBUG", "APP_NAME", "REVISION", "LOG_FORMAT"):
        monkeypatch.delenv(f"CHECKEND_{name}", raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def recorder() -> NoticeRecorder:
    return NoticeRecorder()


@pytest.fixture
async def session(clean_env, recorder):
    """A started session delivering into the recorder."""
    _session = checkend.configure(
        api_key="test-key",
        environment="production",
        filter_keys=["password"],
        transport=recorder.transport,
    )
    yield _session
    await checkend.reset()


@pytest.fixture
def make_client():
    return StubClient


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()
