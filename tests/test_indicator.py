from __future__ import annotations

import asyncio

import pytest

from geotrack.modules.location.models import INDICATOR_TITLE, TOPIC_INDICATOR, IndicatorUpdate
from geotrack.modules.presentation.indicator import IndicatorRenderer, StatusFileSurface

from conftest import FakeSurface


def test_status_file_surface_writes_and_clears(tmp_path) -> None:
    path = tmp_path / "run" / "location.txt"
    surface = StatusFileSurface(str(path))

    surface.render_persistent_indicator(INDICATOR_TITLE, "(12:00:00.000 - 10.0, 20.0)")
    lines = path.read_text().splitlines()
    assert lines[0] == INDICATOR_TITLE
    assert lines[1] == "(12:00:00.000 - 10.0, 20.0)"
    assert surface.last_text == "(12:00:00.000 - 10.0, 20.0)"

    surface.clear_persistent_indicator()
    assert not path.exists()
    surface.clear_persistent_indicator()


@pytest.mark.asyncio
async def test_renderer_follows_indicator_events(bus) -> None:
    surface = FakeSurface()
    renderer = IndicatorRenderer(bus, surface)
    renderer.start()
    await asyncio.sleep(0)

    await bus.publish(TOPIC_INDICATOR, IndicatorUpdate(INDICATOR_TITLE, "first"))
    await bus.publish(TOPIC_INDICATOR, IndicatorUpdate(INDICATOR_TITLE, None))
    await asyncio.sleep(0.01)

    assert surface.rendered == [(INDICATOR_TITLE, "first")]
    assert surface.cleared == 1

    await renderer.stop()
    assert surface.cleared == 2
