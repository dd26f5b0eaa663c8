"""Shared fixtures for codecoach tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from codecoach.config.settings import HintConfig, Settings, StoreBackend, StoreConfig
from codecoach.engine.errors import StoreUnavailable
from codecoach.engine.fallback import load_fallback_hints
from codecoach.engine.hint_service import HintResponse
from codecoach.engine.hints import HintCache, HintProgressionController
from codecoach.state.resilient import ResilientStore
from codecoach.state.store import MemoryStore

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: float = START.timestamp()):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeHintGenerator:
    """Records every request; can be made slow or made to fail."""

    def __init__(self, content: str = "Look closely at the block you are editing.", delay: float = 0.0):
        self.content = content
        self.delay = delay
        self.error = None
        self.calls = []

    async def generate(self, request):
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return HintResponse(
            content=f"{self.content} (level {request.level})",
            related_docs=["https://docs.python.org/3/reference/lexical_analysis.html"],
        )


class FlakyStore(MemoryStore):
    """MemoryStore that can be taken down, or made to fail the next N calls."""

    def __init__(self, clock=None):
        super().__init__(clock=clock)
        self.down = False
        self.failures = 0
        self.calls = 0

    def _check(self) -> None:
        self.calls += 1
        if self.down:
            raise StoreUnavailable("store is down")
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailable("transient failure")

    async def get(self, namespace, key):
        self._check()
        return await super().get(namespace, key)

    async def put(self, namespace, key, value, ttl=None, due=None):
        self._check()
        return await super().put(namespace, key, value, ttl=ttl, due=due)

    async def compare_and_set(self, namespace, key, value, expected_version, ttl=None, due=None):
        self._check()
        return await super().compare_and_set(namespace, key, value, expected_version, ttl=ttl, due=due)

    async def delete(self, namespace, key):
        self._check()
        return await super().delete(namespace, key)

    async def scan(self, namespace, prefix=""):
        self._check()
        return await super().scan(namespace, prefix)

    async def query_due(self, namespace, until, prefix=""):
        self._check()
        return await super().query_due(namespace, until, prefix)


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def start():
    return START


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path / "data",
        store=StoreConfig(backend=StoreBackend.MEMORY, retry_base_delay=0),
        hints=HintConfig(auto_hints=False),
    )


@pytest.fixture
def backend(clock):
    return FlakyStore(clock=clock)


@pytest.fixture
def store(backend, settings):
    return ResilientStore(backend, settings.store, sleep=no_sleep)


@pytest.fixture
def generator():
    return FakeHintGenerator()


@pytest.fixture
def controller(generator, store, settings, clock):
    return HintProgressionController(
        generator=generator,
        cache=HintCache(store, settings.hints.cache_ttl_seconds),
        fallback=load_fallback_hints(),
        config=settings.hints,
        clock=clock,
    )
