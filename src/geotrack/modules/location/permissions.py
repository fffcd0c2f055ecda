from __future__ import annotations

import asyncio
import logging
import os
from typing import Protocol

from .models import PermissionResult

logger = logging.getLogger(__name__)


class PermissionGate(Protocol):
    def has_permission(self) -> bool:
        ...

    async def request_permission(self) -> PermissionResult:
        ...

    def remediation_hint(self) -> str:
        ...


class DeviceAccessGate:
    """Location access means read access to the receiver device (or replay log).

    A daemon has no grant dialog, so a request only re-checks access; the
    operator fixes it out of band (group membership, udev rule, file mode).
    """

    def __init__(self, path: str) -> None:
        self._path = path

    def has_permission(self) -> bool:
        # A missing device is the provider's problem (unplugged), not a denial
        if not os.path.exists(self._path):
            return True
        return os.access(self._path, os.R_OK)

    async def request_permission(self) -> PermissionResult:
        granted = await asyncio.to_thread(self.has_permission)
        if not granted:
            logger.info("Location access to %s denied", self._path)
            return PermissionResult.DENIED
        return PermissionResult.GRANTED

    def remediation_hint(self) -> str:
        return (
            f"Grant read access to {self._path} "
            "(for a serial GPS add the service user to the 'dialout' group) and retry."
        )
