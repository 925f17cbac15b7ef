"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
import pytest

from watchdog_service.db import MemoryKeyValueStore
from watchdog_service.errors import StorageError
from watchdog_service.models import CheckDefinition
from watchdog_service.probe import ProbeExecutor
from watchdog_service.registry import CheckRegistry
from watchdog_service.schedule import ScheduleIndex

PARTITION = "7f5c1d2e-0000-4000-8000-000000000001"


def make_definition(**overrides: Any) -> CheckDefinition:
    data = {
        "name": "svc-check",
        "serviceName": "http://svc.local/",
        "partition": PARTITION,
        "suffixPath": "/ping",
    }
    data.update(overrides)
    return CheckDefinition.parse(data)


class FakeClock:
    """Controllable replacement for utcnow"""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def mock_client(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
    """An httpx.AsyncClient answering every request with handler"""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class FailingStore(MemoryKeyValueStore):
    """Memory store that raises StorageError once failing is set"""

    def __init__(self) -> None:
        super().__init__()
        self.failing = False

    def _check(self, table: str) -> None:
        if self.failing:
            raise StorageError(f"{table}: database unavailable")

    async def get(self, table, key):
        self._check(table)
        return await super().get(table, key)

    async def put(self, table, key, value):
        self._check(table)
        await super().put(table, key, value)

    async def delete(self, table, key):
        self._check(table)
        await super().delete(table, key)

    async def scan(self, table, prefix=""):
        self._check(table)
        return await super().scan(table, prefix)


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def schedule(store: MemoryKeyValueStore) -> ScheduleIndex:
    return ScheduleIndex(store)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(store: MemoryKeyValueStore, schedule: ScheduleIndex, clock: FakeClock) -> CheckRegistry:
    return CheckRegistry(store, schedule, clock=clock)


class StatusSequence:
    """Mock transport handler returning a scripted series of status codes"""

    def __init__(self, *codes: int) -> None:
        self.codes = list(codes)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        code = self.codes.pop(0) if len(self.codes) > 1 else self.codes[0]
        return httpx.Response(code)


@pytest.fixture
def responses() -> StatusSequence:
    return StatusSequence(200)


@pytest.fixture
def executor(responses: StatusSequence) -> ProbeExecutor:
    return ProbeExecutor(mock_client(responses))
