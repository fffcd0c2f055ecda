from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


TOPIC_FIX = "location.fix"
TOPIC_STATE = "tracking.state"
TOPIC_ERROR = "tracking.error"
TOPIC_INDICATOR = "presentation.indicator"

INDICATOR_TITLE = "Location Info"
INDICATOR_UNAVAILABLE = "Location info is unavailable"


class TrackingState(str, Enum):
    STOPPED = "stopped"
    REQUESTING = "requesting"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class PresentationMode(str, Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


class PermissionResult(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"


class Accuracy(str, Enum):
    HIGH = "high"
    BALANCED = "balanced"
    LOW = "low"


@dataclass(frozen=True)
class LocationFix:
    timestamp: dt.datetime
    latitude: float
    longitude: float

    def to_text(self) -> str:
        stamp = self.timestamp.strftime("%H:%M:%S.") + f"{self.timestamp.microsecond // 1000:03d}"
        return f"({stamp} - {self.latitude}, {self.longitude})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts": self.timestamp.isoformat(),
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


@dataclass(frozen=True)
class LocationRequest:
    interval_ms: int = 50
    min_interval_ms: int = 20
    max_batch_delay_ms: int = 60_000
    accuracy: Accuracy = Accuracy.HIGH


@dataclass(frozen=True)
class SubscriptionHandle:
    id: int


@dataclass(frozen=True)
class StateChange:
    state: TrackingState
    desired: bool

    def to_dict(self) -> dict[str, Any]:
        return {"state": self.state.value, "desired": self.desired}


@dataclass(frozen=True)
class IndicatorUpdate:
    """Persistent indicator content; ``text=None`` clears it."""

    title: str
    text: Optional[str]

    @property
    def visible(self) -> bool:
        return self.text is not None
