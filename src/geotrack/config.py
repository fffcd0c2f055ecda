from __future__ import annotations

import os
from dataclasses import dataclass
from dotenv import load_dotenv


@dataclass
class AppConfig:
    log_dir: str
    log_level: str
    db_path: str
    location_source: str
    gps_serial_port: str
    gps_baud: int
    gps_replay_path: str
    interval_ms: int
    min_interval_ms: int
    max_batch_delay_ms: int
    accuracy: str
    requesting_timeout_s: float
    retry_initial_delay_s: float
    retry_max_delay_s: float
    retry_max_attempts: int
    indicator_path: str
    log_max_lines: int
    web_host: str
    web_port: int

    @property
    def device_path(self) -> str:
        return self.gps_replay_path if self.location_source == "replay" else self.gps_serial_port


def load_config() -> AppConfig:
    load_dotenv(os.getenv("ENV_FILE", "/opt/geotrack/.env"), override=False)

    location_source = os.getenv("LOCATION_SOURCE", "serial").strip().lower()
    if location_source not in ("serial", "replay"):
        raise ValueError(f"LOCATION_SOURCE must be 'serial' or 'replay', got {location_source!r}")

    return AppConfig(
        log_dir=os.getenv("GEOTRACK_LOG_DIR", "/var/log/geotrack"),
        log_level=os.getenv("GEOTRACK_LOG_LEVEL", "INFO"),
        db_path=os.getenv("GEOTRACK_DB_PATH", "/opt/geotrack/data/geotrack.sqlite"),
        location_source=location_source,
        gps_serial_port=os.getenv("GPS_SERIAL_PORT", "/dev/ttyS0"),
        gps_baud=int(os.getenv("GPS_BAUD", "9600")),
        gps_replay_path=os.getenv("GPS_REPLAY_PATH", "/opt/geotrack/data/replay.nmea"),
        interval_ms=int(os.getenv("LOCATION_INTERVAL_MS", "50")),
        min_interval_ms=int(os.getenv("LOCATION_MIN_INTERVAL_MS", "20")),
        max_batch_delay_ms=int(os.getenv("LOCATION_MAX_BATCH_DELAY_MS", "60000")),
        accuracy=os.getenv("LOCATION_ACCURACY", "high").strip().lower(),
        requesting_timeout_s=float(os.getenv("REQUESTING_TIMEOUT", "30.0")),
        retry_initial_delay_s=float(os.getenv("RETRY_INITIAL_DELAY", "1.0")),
        retry_max_delay_s=float(os.getenv("RETRY_MAX_DELAY", "60.0")),
        retry_max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "0")),
        indicator_path=os.getenv("INDICATOR_PATH", "/run/geotrack/location.txt"),
        log_max_lines=int(os.getenv("LOG_MAX_LINES", "200")),
        web_host=os.getenv("WEB_HOST", "0.0.0.0"),
        web_port=int(os.getenv("WEB_PORT", "8080")),
    )
