from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Optional

from ...event_bus import EventBus
from ...exceptions import PermissionDenied, ProviderUnavailable, TeardownFailed, TrackingBusy
from ...storage.db import PersistentFlag
from .models import (
    INDICATOR_TITLE,
    INDICATOR_UNAVAILABLE,
    TOPIC_ERROR,
    TOPIC_FIX,
    TOPIC_INDICATOR,
    TOPIC_STATE,
    IndicatorUpdate,
    LocationFix,
    LocationRequest,
    PresentationMode,
    StateChange,
    SubscriptionHandle,
    TrackingState,
)
from .permissions import PermissionGate
from .source import LocationSource

logger = logging.getLogger(__name__)

_LIVE_STATES = (TrackingState.REQUESTING, TrackingState.ACTIVE)


@dataclass(frozen=True)
class RetryPolicy:
    requesting_timeout_s: float = 30.0
    initial_delay_s: float = 1.0
    max_delay_s: float = 60.0
    max_attempts: int = 0  # 0 = keep retrying

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay_s, self.initial_delay_s * (2 ** max(0, attempt - 1)))


class TrackingWorker:
    """Owns the location subscription and the persisted tracking intent.

    Caller operations (``start``, ``stop``, presentation changes) and source
    events (fixes, provider errors, the requesting timeout) are applied one at
    a time under a single lock. Source events are queued and drained by one
    dispatcher task so they are applied in arrival order. Each subscription
    gets a generation number; events carrying an older generation are stale
    and dropped, which is how a stopped or superseded subscription is kept
    from ever reaching ``on_fix_received``.
    """

    def __init__(
        self,
        source: LocationSource,
        gate: PermissionGate,
        flag: PersistentFlag,
        bus_events: EventBus,
        request: Optional[LocationRequest] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self._source = source
        self._gate = gate
        self._flag = flag
        self._events = bus_events
        self._request = request or LocationRequest()
        self._retry = retry or RetryPolicy()

        self._lock = asyncio.Lock()
        self._inbox: asyncio.Queue[tuple[str, int, Any]] = asyncio.Queue()
        self._task: asyncio.Task | None = None

        self._state = TrackingState.STOPPED
        self._desired = False
        self._mode = PresentationMode.BACKGROUND
        self._indicator_shown = False
        self._current_fix: Optional[LocationFix] = None

        self._generation = 0
        self._handle: Optional[SubscriptionHandle] = None
        self._subscribing: asyncio.Task | None = None
        self._teardown: asyncio.Task | None = None
        self._retry_task: asyncio.Task | None = None
        self._watchdog: asyncio.TimerHandle | None = None
        self._failures = 0

    # --- properties ---

    @property
    def state(self) -> TrackingState:
        return self._state

    @property
    def desired(self) -> bool:
        return self._desired

    @property
    def presentation_mode(self) -> PresentationMode:
        return self._mode

    @property
    def current_fix(self) -> Optional[LocationFix]:
        return self._current_fix

    @property
    def stopping(self) -> bool:
        return self._teardown is not None

    # --- lifecycle ---

    async def initialize(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="tracking-worker")
        if not await self._flag.get():
            return
        logger.info("Tracking was enabled before restart; resuming location updates")
        try:
            await self.start()
        except PermissionDenied as exc:
            logger.warning("Cannot resume tracking: %s", exc)
            # A refused subscribe has already cleared the flag and reported it
            if await self._flag.get():
                async with self._lock:
                    await self._set_desired(False)
                await self._events.publish(TOPIC_ERROR, exc)

    async def shutdown(self) -> None:
        async with self._lock:
            self._cancel_watchdog()
            self._cancel_retry()
            self._generation += 1
            handle, self._handle = self._handle, None
            pending = self._subscribing
            teardown = self._teardown
        if pending is not None:
            await asyncio.wait([pending])
        if teardown is not None:
            await asyncio.wait([teardown])
        if handle is not None:
            await self._cancel_handle(handle)
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._state = TrackingState.STOPPED
        logger.info("Tracking worker shut down (tracking enabled=%s)", self._desired)

    async def settle(self) -> None:
        """Wait until queued source events and any in-flight teardown are done."""
        while True:
            await self._inbox.join()
            pending = [t for t in (self._subscribing, self._teardown) if t is not None]
            if not pending:
                break
            await asyncio.wait(pending)
        await self._inbox.join()

    # --- caller operations ---

    async def start(self) -> TrackingState:
        async with self._lock:
            if self._teardown is not None:
                raise TrackingBusy("previous stop has not been acknowledged yet")
            if self._state in _LIVE_STATES:
                return self._state
            if not self._gate.has_permission():
                raise PermissionDenied("location access not granted")
            logger.info("Subscribing to location updates")
            self._cancel_retry()
            self._failures = 0
            await self._set_desired(True)
            task = await self._begin_subscribe()
        denial = await asyncio.shield(task)
        if denial is not None:
            raise denial
        return self._state

    async def stop(self) -> None:
        async with self._lock:
            if self._teardown is not None:
                return
            if self._state is TrackingState.STOPPED:
                if self._desired:
                    await self._set_desired(False)
                return
            logger.info("Unsubscribing from location updates")
            await self._set_desired(False)
            self._generation += 1
            self._cancel_watchdog()
            self._cancel_retry()
            handle, self._handle = self._handle, None
            self._teardown = asyncio.create_task(
                self._finish_stop(handle, self._subscribing), name="location-teardown"
            )

    async def on_fix_received(self, fix: LocationFix) -> bool:
        async with self._lock:
            return await self._apply_fix(fix)

    async def on_presentation_mode_changed(self, mode: PresentationMode) -> None:
        async with self._lock:
            if mode is self._mode:
                return
            logger.debug("Presentation mode %s -> %s", self._mode.value, mode.value)
            self._mode = mode
            await self._refresh_indicator()

    # --- subscription handling ---

    async def _begin_subscribe(self) -> asyncio.Task:
        self._generation += 1
        gen = self._generation
        await self._transition(TrackingState.REQUESTING)
        self._subscribing = asyncio.create_task(self._subscribe(gen), name="location-subscribe")
        self._arm_watchdog(gen)
        return self._subscribing

    async def _subscribe(self, gen: int) -> Optional[PermissionDenied]:
        try:
            handle = await self._source.request_updates(
                self._request,
                functools.partial(self._enqueue, "fix", gen),
                functools.partial(self._enqueue, "error", gen),
            )
        except PermissionError as exc:
            async with self._lock:
                self._clear_subscribing()
                if gen != self._generation:
                    return None
                logger.error("Denied location permissions. %s", exc)
                self._cancel_watchdog()
                await self._set_desired(False)
                await self._transition(TrackingState.STOPPED)
            denial = PermissionDenied(str(exc))
            await self._events.publish(TOPIC_ERROR, denial)
            return denial
        except Exception as exc:
            async with self._lock:
                self._clear_subscribing()
                if gen == self._generation:
                    await self._suspend(exc)
            return None

        async with self._lock:
            self._clear_subscribing()
            if gen == self._generation:
                self._handle = handle
                return None
        logger.info("Subscription %d superseded before acknowledgment; removing it", handle.id)
        await self._cancel_handle(handle)
        return None

    async def _finish_stop(self, handle: Optional[SubscriptionHandle], pending: asyncio.Task | None) -> None:
        if pending is not None:
            await asyncio.wait([pending])
        removed = True
        if handle is not None:
            removed = await self._cancel_handle(handle)
        async with self._lock:
            self._teardown = None
            await self._transition(TrackingState.STOPPED)
        if removed:
            logger.info("Location updates stopped")

    async def _cancel_handle(self, handle: SubscriptionHandle) -> bool:
        try:
            removed = await self._source.cancel_updates(handle)
        except Exception as exc:
            logger.warning("Removing subscription %d raised: %s", handle.id, exc)
            removed = False
        if not removed:
            logger.warning("Failed to remove location subscription %d", handle.id)
            await self._events.publish(TOPIC_ERROR, TeardownFailed(f"subscription {handle.id} not acknowledged"))
        return removed

    async def _suspend(self, exc: Exception) -> None:
        self._generation += 1
        self._cancel_watchdog()
        handle, self._handle = self._handle, None
        if handle is not None:
            await self._cancel_handle(handle)
        await self._transition(TrackingState.SUSPENDED)
        if isinstance(exc, (PermissionError, PermissionDenied)):
            logger.error("Location permission revoked: %s", exc)
            await self._events.publish(TOPIC_ERROR, PermissionDenied(str(exc)))
            return
        error = exc if isinstance(exc, ProviderUnavailable) else ProviderUnavailable(str(exc))
        logger.warning("Location provider unavailable: %s", error)
        await self._events.publish(TOPIC_ERROR, error)
        self._schedule_retry()

    def _schedule_retry(self) -> None:
        self._failures += 1
        if self._retry.max_attempts and self._failures > self._retry.max_attempts:
            logger.warning("Giving up after %d retries; waiting for an explicit start", self._retry.max_attempts)
            return
        delay = self._retry.delay_for(self._failures)
        logger.info("Retrying location updates in %.1fs (attempt %d)", delay, self._failures)
        self._retry_task = asyncio.create_task(self._retry_after(delay, self._generation), name="tracking-retry")

    async def _retry_after(self, delay: float, gen: int) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            if self._retry_task is asyncio.current_task():
                self._retry_task = None
            if gen != self._generation or self._state is not TrackingState.SUSPENDED or self._teardown is not None:
                return
            if not self._gate.has_permission():
                logger.warning("Location access lost; not retrying until tracking is started again")
                denial = PermissionDenied("location access not granted")
            else:
                denial = None
                await self._begin_subscribe()
        if denial is not None:
            await self._events.publish(TOPIC_ERROR, denial)

    # --- source events ---

    def _enqueue(self, kind: str, gen: int, payload: Any = None) -> None:
        self._inbox.put_nowait((kind, gen, payload))

    async def _run(self) -> None:
        while True:
            kind, gen, payload = await self._inbox.get()
            try:
                if kind == "fix":
                    await self._handle_fix(gen, payload)
                elif kind == "error":
                    await self._handle_provider_error(gen, payload)
                elif kind == "timeout":
                    await self._handle_timeout(gen)
            except Exception:
                logger.exception("Failed to process %s event", kind)
            finally:
                self._inbox.task_done()

    async def _handle_fix(self, gen: int, fix: LocationFix) -> None:
        async with self._lock:
            if gen != self._generation:
                logger.debug("Dropping fix from stale subscription")
                return
            await self._apply_fix(fix)

    async def _handle_provider_error(self, gen: int, exc: Exception) -> None:
        async with self._lock:
            if gen != self._generation or self._state not in _LIVE_STATES:
                return
            await self._suspend(exc)

    async def _handle_timeout(self, gen: int) -> None:
        async with self._lock:
            if gen != self._generation or self._state is not TrackingState.REQUESTING:
                return
            await self._suspend(
                ProviderUnavailable(f"no location fix within {self._retry.requesting_timeout_s:.0f}s")
            )

    async def _apply_fix(self, fix: LocationFix) -> bool:
        if self._teardown is not None or self._state not in _LIVE_STATES:
            logger.debug("Ignoring fix while %s", self._state.value)
            return False
        if self._state is TrackingState.REQUESTING:
            self._cancel_watchdog()
            await self._transition(TrackingState.ACTIVE)
        self._failures = 0
        self._current_fix = fix
        await self._events.publish(TOPIC_FIX, fix)
        if self._mode is PresentationMode.BACKGROUND:
            await self._refresh_indicator()
        return True

    # --- helpers (lock held) ---

    async def _transition(self, state: TrackingState) -> None:
        if state is self._state:
            return
        logger.info("Tracking state %s -> %s", self._state.value, state.value)
        self._state = state
        await self._events.publish(TOPIC_STATE, StateChange(state, self._desired))

    async def _set_desired(self, value: bool) -> None:
        await self._flag.set(value)
        changed = value != self._desired
        self._desired = value
        if changed:
            await self._events.publish(TOPIC_STATE, StateChange(self._state, value))
        await self._refresh_indicator()

    async def _refresh_indicator(self) -> None:
        wanted = self._mode is PresentationMode.BACKGROUND and self._desired
        if wanted:
            text = self._current_fix.to_text() if self._current_fix is not None else INDICATOR_UNAVAILABLE
            self._indicator_shown = True
            await self._events.publish(TOPIC_INDICATOR, IndicatorUpdate(INDICATOR_TITLE, text))
        elif self._indicator_shown:
            self._indicator_shown = False
            await self._events.publish(TOPIC_INDICATOR, IndicatorUpdate(INDICATOR_TITLE, None))

    def _arm_watchdog(self, gen: int) -> None:
        self._cancel_watchdog()
        timeout = self._retry.requesting_timeout_s
        if timeout > 0:
            loop = asyncio.get_running_loop()
            self._watchdog = loop.call_later(timeout, self._enqueue, "timeout", gen)

    def _cancel_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _cancel_retry(self) -> None:
        if self._retry_task is not None:
            if self._retry_task is not asyncio.current_task():
                self._retry_task.cancel()
            self._retry_task = None

    def _clear_subscribing(self) -> None:
        if self._subscribing is asyncio.current_task():
            self._subscribing = None
