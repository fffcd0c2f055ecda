"""Error taxonomy for the tracking session."""

from __future__ import annotations


class TrackingError(Exception):
    """Base exception for all geotrack errors."""


class PermissionDenied(TrackingError):
    """Access to the location receiver was not granted.

    Surfaced to the user; never retried automatically.
    """


class ProviderUnavailable(TrackingError):
    """Transient failure of the location provider (open, read or timeout)."""


class TeardownFailed(TrackingError):
    """The provider did not acknowledge cancelling a subscription."""


class TrackingBusy(TrackingError):
    """A previous stop has not been acknowledged yet."""
