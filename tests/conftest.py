from __future__ import annotations

import asyncio
import datetime as dt
import itertools
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

from geotrack.event_bus import EventBus
from geotrack.modules.location.models import (
    TOPIC_ERROR,
    TOPIC_FIX,
    TOPIC_INDICATOR,
    TOPIC_STATE,
    LocationFix,
    LocationRequest,
    PermissionResult,
    SubscriptionHandle,
    TrackingState,
)
from geotrack.modules.location.worker import RetryPolicy, TrackingWorker
from geotrack.storage.db import Database, PersistentFlag


class FakeSource:
    """In-memory location source; tests drive fixes and acknowledgments by hand."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.callbacks: dict[int, tuple[Callable[..., None], Callable[..., None]]] = {}
        self.live: set[int] = set()
        self.cancelled: list[int] = []
        self.requests: list[LocationRequest] = []
        self.max_live = 0
        self.request_error: Optional[BaseException] = None
        self.request_hold: Optional[asyncio.Event] = None
        self.cancel_hold: Optional[asyncio.Event] = None
        self.cancel_result = True

    async def request_updates(self, request, on_fix, on_error) -> SubscriptionHandle:
        self.requests.append(request)
        if self.request_hold is not None:
            await self.request_hold.wait()
        if self.request_error is not None:
            raise self.request_error
        handle = SubscriptionHandle(next(self._ids))
        self.callbacks[handle.id] = (on_fix, on_error)
        self.live.add(handle.id)
        self.max_live = max(self.max_live, len(self.live))
        return handle

    async def cancel_updates(self, handle: SubscriptionHandle) -> bool:
        if self.cancel_hold is not None:
            await self.cancel_hold.wait()
        self.cancelled.append(handle.id)
        self.live.discard(handle.id)
        return self.cancel_result

    def emit(self, fix: LocationFix, handle_id: Optional[int] = None) -> None:
        ids = [handle_id] if handle_id is not None else sorted(self.live)
        for i in ids:
            self.callbacks[i][0](fix)

    def fail(self, exc: Exception, handle_id: Optional[int] = None) -> None:
        ids = [handle_id] if handle_id is not None else sorted(self.live)
        for i in ids:
            self.callbacks[i][1](exc)


class FakeGate:
    def __init__(self, granted: bool = True) -> None:
        self.granted = granted
        self.grant_on_request = False
        self.requests = 0

    def has_permission(self) -> bool:
        return self.granted

    async def request_permission(self) -> PermissionResult:
        self.requests += 1
        if self.grant_on_request:
            self.granted = True
        return PermissionResult.GRANTED if self.granted else PermissionResult.DENIED

    def remediation_hint(self) -> str:
        return "grant access to the fake receiver"


class FakeSurface:
    def __init__(self) -> None:
        self.rendered: list[tuple[str, str]] = []
        self.cleared = 0
        self.settings_opened: list[str] = []

    def render_persistent_indicator(self, title: str, text: str) -> None:
        self.rendered.append((title, text))

    def clear_persistent_indicator(self) -> None:
        self.cleared += 1

    def open_system_settings(self, hint: str) -> None:
        self.settings_opened.append(hint)


class Recorder:
    def __init__(self, bus: EventBus) -> None:
        self.fixes: list[Any] = []
        self.errors: list[Any] = []
        self.indicator: list[Any] = []
        self.states: list[Any] = []
        bus.subscribe(TOPIC_FIX, self.fixes.append)
        bus.subscribe(TOPIC_ERROR, self.errors.append)
        bus.subscribe(TOPIC_INDICATOR, self.indicator.append)
        bus.subscribe(TOPIC_STATE, self.states.append)


def make_fix(second: int = 0, lat: float = 10.0, lon: float = 20.0) -> LocationFix:
    return LocationFix(
        timestamp=dt.datetime(2024, 1, 1, 12, 0, second, tzinfo=dt.timezone.utc),
        latitude=lat,
        longitude=lon,
    )


async def wait_for_state(worker: TrackingWorker, state: TrackingState, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while worker.state is not state:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def gate() -> FakeGate:
    return FakeGate()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def retry() -> RetryPolicy:
    return RetryPolicy(requesting_timeout_s=0, initial_delay_s=0.01, max_delay_s=0.05)


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "geotrack.sqlite"))
    await database.start()
    yield database
    await database.stop()


@pytest.fixture
def flag(db) -> PersistentFlag:
    return PersistentFlag(db)


@pytest_asyncio.fixture
async def worker(source, gate, flag, bus, retry):
    w = TrackingWorker(source, gate, flag, bus, retry=retry)
    await w.initialize()
    yield w
    await w.shutdown()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)
