from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Optional

from ..event_bus import EventBus
from ..exceptions import PermissionDenied
from ..modules.location.models import (
    TOPIC_FIX,
    LocationFix,
    PermissionResult,
    PresentationMode,
)
from ..modules.location.permissions import PermissionGate
from ..modules.location.worker import TrackingWorker
from ..modules.presentation.indicator import PresentationSurface

logger = logging.getLogger(__name__)

START_LABEL = "Start Location Updates"
STOP_LABEL = "Stop Location Updates"
DENIED_MESSAGE = "Permission was denied, but is needed for core functionality."


@dataclass(frozen=True)
class Remediation:
    message: str
    action: str
    hint: str

    def to_dict(self) -> dict[str, str]:
        return {"message": self.message, "action": self.action, "hint": self.hint}


class SessionController:
    """Front-end façade over the tracking worker.

    Front-ends attach while they are showing the session; the first attach
    puts the worker in the foreground and starts collecting fixes for the
    on-screen log, the last detach sends it back to the background.
    """

    def __init__(
        self,
        worker: TrackingWorker,
        events: EventBus,
        gate: PermissionGate,
        surface: PresentationSurface,
        max_log_lines: int = 200,
    ) -> None:
        self._worker = worker
        self._events = events
        self._gate = gate
        self._surface = surface
        self._log: Deque[str] = deque(maxlen=max_log_lines if max_log_lines > 0 else None)
        self._remediation: Optional[Remediation] = None
        self._clients = 0
        self._subscriptions: list[int] = []

    @property
    def enabled(self) -> bool:
        return self._worker.desired

    @property
    def button_label(self) -> str:
        return STOP_LABEL if self._worker.desired else START_LABEL

    @property
    def remediation(self) -> Optional[Remediation]:
        return self._remediation

    @property
    def log_lines(self) -> list[str]:
        return list(self._log)

    @property
    def attached_clients(self) -> int:
        return self._clients

    async def attach(self) -> None:
        self._clients += 1
        if self._clients > 1:
            return
        self._subscriptions = [self._events.subscribe(TOPIC_FIX, self._on_fix)]
        await self._worker.on_presentation_mode_changed(PresentationMode.FOREGROUND)
        logger.debug("Front-end attached")

    async def detach(self) -> None:
        if self._clients == 0:
            return
        self._clients -= 1
        if self._clients > 0:
            return
        for handle in self._subscriptions:
            self._events.unsubscribe(handle)
        self._subscriptions = []
        await self._worker.on_presentation_mode_changed(PresentationMode.BACKGROUND)
        logger.debug("Front-end detached")

    async def toggle(self) -> bool:
        """Flip tracking; returns whether tracking is now wanted."""
        if self._worker.desired:
            await self._worker.stop()
            return False
        if not self._gate.has_permission():
            result = await self._gate.request_permission()
            if result is not PermissionResult.GRANTED:
                self._deny()
                return False
        try:
            await self._worker.start()
        except PermissionDenied as exc:
            logger.info("Start refused: %s", exc)
            self._deny()
            return False
        self._remediation = None
        return self._worker.desired

    async def stop(self) -> None:
        await self._worker.stop()

    async def open_settings(self) -> None:
        hint = self._remediation.hint if self._remediation else self._gate.remediation_hint()
        self._surface.open_system_settings(hint)

    def snapshot(self) -> dict[str, Any]:
        fix = self._worker.current_fix
        return {
            "state": self._worker.state.value,
            "enabled": self._worker.desired,
            "button": self.button_label,
            "stopping": self._worker.stopping,
            "current_fix": fix.to_dict() if fix else None,
            "remediation": self._remediation.to_dict() if self._remediation else None,
            "log": self.log_lines,
        }

    def _deny(self) -> None:
        self._remediation = Remediation(DENIED_MESSAGE, "Settings", self._gate.remediation_hint())

    def _on_fix(self, fix: LocationFix) -> None:
        self._log.append(f"Foreground location: {fix.to_text()}")
