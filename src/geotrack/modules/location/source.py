from __future__ import annotations

import asyncio
import datetime as dt
import errno
import itertools
import logging
import os
import threading
import time
from typing import Any, Callable, Optional, Protocol

import serial
import pynmea2

from ...exceptions import ProviderUnavailable
from .models import LocationFix, LocationRequest, SubscriptionHandle

logger = logging.getLogger(__name__)

FixCallback = Callable[[LocationFix], None]
ErrorCallback = Callable[[Exception], None]


class LocationSource(Protocol):
    async def request_updates(
        self, request: LocationRequest, on_fix: FixCallback, on_error: ErrorCallback
    ) -> SubscriptionHandle:
        ...

    async def cancel_updates(self, handle: SubscriptionHandle) -> bool:
        ...


def parse_fix(line: str, received_at: Optional[dt.datetime] = None) -> Optional[LocationFix]:
    """Turn one NMEA sentence into a fix, or None if it carries no valid position."""
    try:
        msg = pynmea2.parse(line, check=True)
    except (pynmea2.ParseError, ValueError):
        return None
    sentence = getattr(msg, "sentence_type", "")
    if sentence == "GGA":
        quality = getattr(msg, "gps_qual", None)
        if not quality or str(quality) == "0":
            return None
    elif sentence in ("RMC", "GLL"):
        if getattr(msg, "status", "") != "A":
            return None
    else:
        return None
    if not msg.lat or not msg.lon:
        return None
    ts = received_at or dt.datetime.now(dt.timezone.utc)
    return LocationFix(timestamp=ts, latitude=float(msg.latitude), longitude=float(msg.longitude))


class _Reader:
    def __init__(self, stop: threading.Event, future: "asyncio.Future[None]") -> None:
        self.stop = stop
        self.future = future


class NmeaSource:
    """Common reader machinery for NMEA 0183 position sources.

    The blocking reader runs in an executor thread; fixes and errors are
    handed back to the event loop with ``call_soon_threadsafe`` so callers
    only ever see callbacks on the loop thread.
    """

    cancel_timeout_s = 5.0

    def __init__(self, path: str) -> None:
        self._path = path
        self._ids = itertools.count(1)
        self._readers: dict[int, _Reader] = {}

    @property
    def path(self) -> str:
        return self._path

    def _open(self) -> Any:
        raise NotImplementedError

    def _next_line(self, stream: Any, request: LocationRequest, stop: threading.Event) -> Optional[str]:
        """Return the next line, ``""`` when nothing arrived yet, None at end of stream."""
        raise NotImplementedError

    def _after_fix(self, request: LocationRequest, stop: threading.Event) -> None:
        pass

    def _open_checked(self) -> Any:
        try:
            return self._open()
        except PermissionError:
            raise
        except OSError as exc:
            if getattr(exc, "errno", None) in (errno.EACCES, errno.EPERM):
                raise PermissionError(str(exc)) from exc
            raise ProviderUnavailable(f"cannot open {self._path}: {exc}") from exc

    async def request_updates(
        self, request: LocationRequest, on_fix: FixCallback, on_error: ErrorCallback
    ) -> SubscriptionHandle:
        if os.path.exists(self._path) and not os.access(self._path, os.R_OK):
            raise PermissionError(f"no read access to {self._path}")
        loop = asyncio.get_running_loop()
        stream = await loop.run_in_executor(None, self._open_checked)
        handle = SubscriptionHandle(next(self._ids))
        stop = threading.Event()
        future = loop.run_in_executor(None, self._read_loop, stream, request, stop, loop, on_fix, on_error)
        self._readers[handle.id] = _Reader(stop, future)
        logger.info("Location updates requested from %s (subscription %d)", self._path, handle.id)
        return handle

    async def cancel_updates(self, handle: SubscriptionHandle) -> bool:
        reader = self._readers.pop(handle.id, None)
        if reader is None:
            logger.warning("Unknown subscription %d", handle.id)
            return False
        reader.stop.set()
        try:
            await asyncio.wait_for(asyncio.shield(reader.future), self.cancel_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Reader for subscription %d did not exit in time", handle.id)
            return False
        logger.info("Location updates removed (subscription %d)", handle.id)
        return True

    def _read_loop(
        self,
        stream: Any,
        request: LocationRequest,
        stop: threading.Event,
        loop: asyncio.AbstractEventLoop,
        on_fix: FixCallback,
        on_error: ErrorCallback,
    ) -> None:
        min_interval_s = max(0, request.min_interval_ms) / 1000.0
        last_emit: Optional[float] = None
        try:
            with stream:
                while not stop.is_set():
                    line = self._next_line(stream, request, stop)
                    if line is None:
                        raise ProviderUnavailable(f"{self._path} reached end of stream")
                    if not line:
                        continue
                    fix = parse_fix(line)
                    if fix is None:
                        continue
                    now = time.monotonic()
                    if last_emit is not None and now - last_emit < min_interval_s:
                        continue
                    last_emit = now
                    loop.call_soon_threadsafe(on_fix, fix)
                    self._after_fix(request, stop)
        except Exception as exc:
            if stop.is_set():
                return
            logger.warning("Location reader error on %s: %s", self._path, exc)
            error = exc if isinstance(exc, (ProviderUnavailable, PermissionError)) else ProviderUnavailable(str(exc))
            try:
                loop.call_soon_threadsafe(on_error, error)
            except RuntimeError:
                # Loop already closed during shutdown
                pass


class SerialNmeaSource(NmeaSource):
    def __init__(self, serial_port: str, baud: int) -> None:
        super().__init__(serial_port)
        self._baud = baud

    def _open(self) -> serial.Serial:
        ser = serial.Serial(self._path, self._baud, timeout=1)
        logger.info("GPS opened on %s @ %s", self._path, self._baud)
        return ser

    def _next_line(self, stream: Any, request: LocationRequest, stop: threading.Event) -> Optional[str]:
        return stream.readline().decode(errors="ignore").strip()


class NmeaReplaySource(NmeaSource):
    """Replays a recorded NMEA log, paced by the request interval."""

    def __init__(self, path: str, loop: bool = True) -> None:
        super().__init__(path)
        self._loop = loop

    def _open(self) -> Any:
        return open(self._path, "r", encoding="ascii", errors="ignore")

    def _next_line(self, stream: Any, request: LocationRequest, stop: threading.Event) -> Optional[str]:
        line = stream.readline()
        if line == "":
            if not self._loop:
                return None
            stream.seek(0)
            line = stream.readline()
            if line == "":
                return None
        return line.strip()

    def _after_fix(self, request: LocationRequest, stop: threading.Event) -> None:
        stop.wait(max(0, request.interval_ms) / 1000.0)
