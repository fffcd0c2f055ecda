from __future__ import annotations

import asyncio
import logging
import signal

from geotrack.config import AppConfig, load_config
from geotrack.logging_setup import setup_logging
from geotrack.event_bus import EventBus
from geotrack.storage.db import Database, PersistentFlag

from geotrack.modules.location.models import Accuracy, LocationRequest
from geotrack.modules.location.permissions import DeviceAccessGate
from geotrack.modules.location.source import LocationSource, NmeaReplaySource, SerialNmeaSource
from geotrack.modules.location.worker import RetryPolicy, TrackingWorker
from geotrack.modules.presentation.indicator import IndicatorRenderer, StatusFileSurface
from geotrack.modules.web.server import WebServer
from geotrack.session.controller import SessionController


def build_source(cfg: AppConfig) -> LocationSource:
    if cfg.location_source == "replay":
        return NmeaReplaySource(cfg.gps_replay_path)
    return SerialNmeaSource(cfg.gps_serial_port, cfg.gps_baud)


async def main_async() -> None:
    cfg = load_config()
    setup_logging(cfg.log_dir, cfg.log_level)
    logger = logging.getLogger("geotrack")
    logger.info("geotrack starting up (source=%s, device=%s)", cfg.location_source, cfg.device_path)

    events = EventBus()
    db = Database(cfg.db_path)
    await db.start()

    surface = StatusFileSurface(cfg.indicator_path)
    renderer = IndicatorRenderer(events, surface)
    renderer.start()
    # Let the renderer subscribe before the worker publishes anything
    await asyncio.sleep(0)

    gate = DeviceAccessGate(cfg.device_path)
    worker = TrackingWorker(
        build_source(cfg),
        gate,
        PersistentFlag(db),
        events,
        request=LocationRequest(
            interval_ms=cfg.interval_ms,
            min_interval_ms=cfg.min_interval_ms,
            max_batch_delay_ms=cfg.max_batch_delay_ms,
            accuracy=Accuracy(cfg.accuracy),
        ),
        retry=RetryPolicy(
            requesting_timeout_s=cfg.requesting_timeout_s,
            initial_delay_s=cfg.retry_initial_delay_s,
            max_delay_s=cfg.retry_max_delay_s,
            max_attempts=cfg.retry_max_attempts,
        ),
    )
    await worker.initialize()

    controller = SessionController(worker, events, gate, surface, max_log_lines=cfg.log_max_lines)
    webserver = WebServer(events, controller, host=cfg.web_host, port=cfg.web_port)
    webserver.start()

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows fallback
            pass

    await stop_event.wait()

    # Graceful shutdown; the tracking preference is left as is so a restart resumes
    await webserver.stop()
    await worker.shutdown()
    await renderer.stop()
    await db.stop()
    logger.info("geotrack shut down")


def main() -> None:
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
