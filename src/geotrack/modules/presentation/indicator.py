from __future__ import annotations

import asyncio
import datetime as dt
import logging
import os
from typing import Optional, Protocol

from ...event_bus import EventBus
from ..location.models import TOPIC_INDICATOR, IndicatorUpdate

logger = logging.getLogger(__name__)


class PresentationSurface(Protocol):
    def render_persistent_indicator(self, title: str, text: str) -> None:
        ...

    def clear_persistent_indicator(self) -> None:
        ...

    def open_system_settings(self, hint: str) -> None:
        ...


class StatusFileSurface:
    """Keeps the latest indicator text in a status file while tracking runs detached."""

    def __init__(self, path: str) -> None:
        self._path = path
        self.last_text: Optional[str] = None

    def render_persistent_indicator(self, title: str, text: str) -> None:
        directory = os.path.dirname(self._path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self._path}.tmp"
        stamp = dt.datetime.now(dt.timezone.utc).isoformat(timespec="seconds")
        with open(tmp_path, "w", encoding="utf-8") as fh:
            fh.write(f"{title}\n{text}\nupdated {stamp}\n")
        os.replace(tmp_path, self._path)
        self.last_text = text
        logger.debug("Indicator updated: %s", text)

    def clear_persistent_indicator(self) -> None:
        try:
            os.remove(self._path)
        except FileNotFoundError:
            pass
        self.last_text = None
        logger.debug("Indicator cleared")

    def open_system_settings(self, hint: str) -> None:
        logger.warning("Location access needed: %s", hint)


class IndicatorRenderer:
    def __init__(self, events: EventBus, surface: PresentationSurface) -> None:
        self._events = events
        self._surface = surface
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="indicator-renderer")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._surface.clear_persistent_indicator()

    def apply(self, update: IndicatorUpdate) -> None:
        try:
            if update.text is None:
                self._surface.clear_persistent_indicator()
            else:
                self._surface.render_persistent_indicator(update.title, update.text)
        except OSError as exc:
            logger.warning("Indicator update failed: %s", exc)

    async def _run(self) -> None:
        logger.info("Indicator renderer started")
        async for update in self._events.stream(TOPIC_INDICATOR):
            self.apply(update)
