from __future__ import annotations

import asyncio
import functools
import operator
import os

import pytest

from geotrack.exceptions import ProviderUnavailable
from geotrack.modules.location.models import LocationRequest, PermissionResult
from geotrack.modules.location.permissions import DeviceAccessGate
from geotrack.modules.location.source import NmeaReplaySource, parse_fix

GGA = "GPGGA,123519,4807.038,N,01131.000,E,1,08,0.9,545.4,M,46.9,M,,"
GGA_NO_FIX = "GPGGA,123519,,,,,0,00,,,M,,M,,"
RMC = "GPRMC,123519,A,4807.038,N,01131.000,E,022.4,084.4,230394,003.1,W"
RMC_VOID = "GPRMC,123519,V,4807.038,N,01131.000,E,022.4,084.4,230394,003.1,W"
GGA_SOUTH_WEST = "GPGGA,184353.07,1929.045,S,02410.506,W,1,04,2.6,100.00,M,-33.9,M,,0000"


def sentence(body: str) -> str:
    checksum = functools.reduce(operator.xor, (ord(c) for c in body), 0)
    return f"${body}*{checksum:02X}"


def test_parse_valid_gga() -> None:
    fix = parse_fix(sentence(GGA))
    assert fix is not None
    assert fix.latitude == pytest.approx(48.1173)
    assert fix.longitude == pytest.approx(11.516667, abs=1e-5)
    assert fix.timestamp.tzinfo is not None


def test_parse_handles_hemispheres() -> None:
    fix = parse_fix(sentence(GGA_SOUTH_WEST))
    assert fix is not None
    assert fix.latitude == pytest.approx(-19.484083, abs=1e-5)
    assert fix.longitude == pytest.approx(-24.175100, abs=1e-5)


@pytest.mark.parametrize(
    "line",
    [
        sentence(GGA_NO_FIX),
        sentence(RMC_VOID),
        "$" + GGA + "*00",
        "not nmea at all",
        "",
    ],
)
def test_parse_rejects_lines_without_a_position(line: str) -> None:
    assert parse_fix(line) is None


def test_parse_active_rmc() -> None:
    fix = parse_fix(sentence(RMC))
    assert fix is not None
    assert fix.latitude == pytest.approx(48.1173)


@pytest.mark.asyncio
async def test_replay_source_delivers_fixes_until_cancelled(tmp_path) -> None:
    log = tmp_path / "drive.nmea"
    log.write_text("\n".join([sentence(RMC_VOID), "garbage", sentence(GGA)]) + "\n")
    source = NmeaReplaySource(str(log))
    fixes: asyncio.Queue = asyncio.Queue()
    errors: list = []

    handle = await source.request_updates(
        LocationRequest(interval_ms=10, min_interval_ms=0), fixes.put_nowait, errors.append
    )
    first = await asyncio.wait_for(fixes.get(), 2.0)
    second = await asyncio.wait_for(fixes.get(), 2.0)

    assert first.latitude == pytest.approx(48.1173)
    assert second.latitude == pytest.approx(48.1173)
    assert await source.cancel_updates(handle) is True
    assert await source.cancel_updates(handle) is False
    assert errors == []


@pytest.mark.asyncio
async def test_replay_end_of_log_reports_provider_error(tmp_path) -> None:
    log = tmp_path / "short.nmea"
    log.write_text("\n".join([sentence(GGA), sentence(RMC), sentence(GGA)]) + "\n")
    source = NmeaReplaySource(str(log), loop=False)
    fixes: list = []
    failed = asyncio.Event()
    errors: list = []

    def on_error(exc: Exception) -> None:
        errors.append(exc)
        failed.set()

    handle = await source.request_updates(
        LocationRequest(interval_ms=0, min_interval_ms=60_000), fixes.append, on_error
    )
    await asyncio.wait_for(failed.wait(), 2.0)

    # Sentences closer than the minimum interval are skipped
    assert len(fixes) == 1
    assert isinstance(errors[0], ProviderUnavailable)
    assert await source.cancel_updates(handle) is True


@pytest.mark.asyncio
async def test_missing_device_is_unavailable(tmp_path) -> None:
    source = NmeaReplaySource(str(tmp_path / "absent.nmea"))
    with pytest.raises(ProviderUnavailable):
        await source.request_updates(LocationRequest(), lambda fix: None, lambda exc: None)


@pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0, reason="root bypasses file modes")
@pytest.mark.asyncio
async def test_unreadable_device_is_a_permission_error(tmp_path) -> None:
    log = tmp_path / "locked.nmea"
    log.write_text(sentence(GGA) + "\n")
    log.chmod(0)
    source = NmeaReplaySource(str(log))
    with pytest.raises(PermissionError):
        await source.request_updates(LocationRequest(), lambda fix: None, lambda exc: None)


@pytest.mark.asyncio
async def test_device_access_gate(tmp_path) -> None:
    present = tmp_path / "ttyFAKE"
    present.write_text("")
    gate = DeviceAccessGate(str(present))
    assert gate.has_permission() is True
    assert await gate.request_permission() is PermissionResult.GRANTED

    # An unplugged receiver is left to the source to report as unavailable
    missing = DeviceAccessGate(str(tmp_path / "ttyNONE"))
    assert missing.has_permission() is True
    assert "ttyNONE" in missing.remediation_hint()


@pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0, reason="root bypasses file modes")
@pytest.mark.asyncio
async def test_device_access_gate_denies_unreadable_device(tmp_path) -> None:
    locked = tmp_path / "ttyLOCKED"
    locked.write_text("")
    locked.chmod(0)
    gate = DeviceAccessGate(str(locked))
    assert gate.has_permission() is False
    assert await gate.request_permission() is PermissionResult.DENIED
