"""Runtime configuration read from ``RADAR_*`` environment variables.

Invalid values never abort startup: they are logged and replaced by the
documented default, the same way the scheduler treats its env overrides.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_URL = "https://mrms.ncep.noaa.gov/data/2D/ReflectivityAtLowestAltitude/"
DEFAULT_DATA_DIR = Path("./data")
DEFAULT_IMAGES_DIR = Path("./images")

ENV_SOURCE_URL = "RADAR_SOURCE_URL"
ENV_DATA_DIR = "RADAR_DATA_DIR"
ENV_IMAGES_DIR = "RADAR_IMAGES_DIR"
ENV_BASE_URL = "RADAR_BASE_URL"
ENV_LIST_TIMEOUT = "RADAR_LIST_TIMEOUT_SECONDS"
ENV_DOWNLOAD_TIMEOUT = "RADAR_DOWNLOAD_TIMEOUT_SECONDS"
ENV_MAX_DOWNLOAD_MB = "RADAR_MAX_DOWNLOAD_MB"
ENV_FETCH_RETRIES = "RADAR_FETCH_RETRIES"
ENV_FETCH_RETRY_SLEEP = "RADAR_FETCH_RETRY_SLEEP_SECONDS"
ENV_KEEP_SOURCE = "RADAR_KEEP_SOURCE_FILES"
ENV_KEEP_IMAGES = "RADAR_KEEP_IMAGES"
ENV_IMAGE_WIDTH = "RADAR_IMAGE_WIDTH"
ENV_IMAGE_HEIGHT = "RADAR_IMAGE_HEIGHT"
ENV_DISC_RADIUS = "RADAR_DISC_RADIUS"
ENV_BLEND_RATIO = "RADAR_BLEND_RATIO"
ENV_SMOOTHING_SIGMA = "RADAR_SMOOTHING_SIGMA"
ENV_THUMBNAILS_ENABLED = "RADAR_THUMBNAILS_ENABLED"
ENV_DECODE_STRIDE = "RADAR_DECODE_STRIDE"
ENV_MIN_INTENSITY = "RADAR_MIN_INTENSITY"
ENV_CACHE_TTL = "RADAR_CACHE_TTL_SECONDS"
ENV_CACHE_SWEEP = "RADAR_CACHE_SWEEP_SECONDS"
ENV_SCHEDULER_ENABLED = "RADAR_SCHEDULER_ENABLED"
ENV_SCHEDULER_INTERVAL = "RADAR_SCHEDULER_INTERVAL_SECONDS"
ENV_SCHEDULER_INITIAL_DELAY = "RADAR_SCHEDULER_INITIAL_DELAY_SECONDS"
ENV_SINGLE_FLIGHT = "RADAR_SINGLE_FLIGHT"
ENV_CORS_ORIGINS = "RADAR_CORS_ORIGINS"
ENV_LOG_LEVEL = "RADAR_LOG_LEVEL"


def _int_from_env(env_name: str, fallback: int, *, min_value: int) -> int:
    raw = os.getenv(env_name, "").strip()
    if not raw:
        return fallback
    try:
        parsed = int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using fallback=%d", env_name, raw, fallback)
        return fallback
    return parsed if parsed >= min_value else fallback


def _float_from_env(env_name: str, fallback: float, *, min_value: float) -> float:
    raw = os.getenv(env_name, "").strip()
    if not raw:
        return fallback
    try:
        parsed = float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using fallback=%s", env_name, raw, fallback)
        return fallback
    return parsed if parsed >= min_value else fallback


def _bool_from_env(env_name: str, fallback: bool) -> bool:
    raw = os.getenv(env_name, "").strip().lower()
    if not raw:
        return fallback
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    logger.warning("Invalid %s=%r; using fallback=%s", env_name, raw, fallback)
    return fallback


def _path_from_env(env_name: str, fallback: Path) -> Path:
    raw = os.getenv(env_name, "").strip()
    return Path(raw or str(fallback)).resolve()


def _list_from_env(env_name: str, fallback: list[str]) -> list[str]:
    raw = os.getenv(env_name, "")
    parsed = [item.strip() for item in raw.split(",") if item.strip()]
    return parsed or list(fallback)


@dataclass(frozen=True)
class Settings:
    source_url: str = DEFAULT_SOURCE_URL
    data_dir: Path = DEFAULT_DATA_DIR
    images_dir: Path = DEFAULT_IMAGES_DIR
    base_url: Optional[str] = None
    list_timeout: float = 10.0
    download_timeout: float = 30.0
    max_download_bytes: int = 100 * 1024 * 1024
    fetch_retries: int = 2
    fetch_retry_sleep: float = 0.6
    keep_source_files: int = 10
    keep_images: int = 20
    image_width: int = 4000
    image_height: int = 3000
    disc_radius: int = 15
    blend_ratio: float = 0.8
    smoothing_sigma: float = 2.0
    thumbnails_enabled: bool = True
    decode_stride: int = 10
    min_intensity: float = 5.0
    cache_ttl: float = 120.0
    cache_sweep_interval: float = 300.0
    scheduler_enabled: bool = True
    scheduler_interval: float = 120.0
    scheduler_initial_delay: float = 5.0
    single_flight: bool = False
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        source_url = os.getenv(ENV_SOURCE_URL, "").strip() or DEFAULT_SOURCE_URL
        if not source_url.endswith("/"):
            source_url += "/"
        base_url = os.getenv(ENV_BASE_URL, "").strip().rstrip("/") or None
        blend_ratio = _float_from_env(ENV_BLEND_RATIO, 0.8, min_value=0.0)
        if blend_ratio > 1.0:
            logger.warning("%s=%s exceeds 1.0; using fallback=0.8", ENV_BLEND_RATIO, blend_ratio)
            blend_ratio = 0.8

        return cls(
            source_url=source_url,
            data_dir=_path_from_env(ENV_DATA_DIR, DEFAULT_DATA_DIR),
            images_dir=_path_from_env(ENV_IMAGES_DIR, DEFAULT_IMAGES_DIR),
            base_url=base_url,
            list_timeout=_float_from_env(ENV_LIST_TIMEOUT, 10.0, min_value=0.1),
            download_timeout=_float_from_env(ENV_DOWNLOAD_TIMEOUT, 30.0, min_value=0.1),
            max_download_bytes=_int_from_env(ENV_MAX_DOWNLOAD_MB, 100, min_value=1) * 1024 * 1024,
            fetch_retries=_int_from_env(ENV_FETCH_RETRIES, 2, min_value=1),
            fetch_retry_sleep=_float_from_env(ENV_FETCH_RETRY_SLEEP, 0.6, min_value=0.0),
            keep_source_files=_int_from_env(ENV_KEEP_SOURCE, 10, min_value=1),
            keep_images=_int_from_env(ENV_KEEP_IMAGES, 20, min_value=1),
            image_width=_int_from_env(ENV_IMAGE_WIDTH, 4000, min_value=16),
            image_height=_int_from_env(ENV_IMAGE_HEIGHT, 3000, min_value=16),
            disc_radius=_int_from_env(ENV_DISC_RADIUS, 15, min_value=0),
            blend_ratio=blend_ratio,
            smoothing_sigma=_float_from_env(ENV_SMOOTHING_SIGMA, 2.0, min_value=0.0),
            thumbnails_enabled=_bool_from_env(ENV_THUMBNAILS_ENABLED, True),
            decode_stride=_int_from_env(ENV_DECODE_STRIDE, 10, min_value=1),
            min_intensity=_float_from_env(ENV_MIN_INTENSITY, 5.0, min_value=-30.0),
            cache_ttl=_float_from_env(ENV_CACHE_TTL, 120.0, min_value=0.0),
            cache_sweep_interval=_float_from_env(ENV_CACHE_SWEEP, 300.0, min_value=1.0),
            scheduler_enabled=_bool_from_env(ENV_SCHEDULER_ENABLED, True),
            scheduler_interval=_float_from_env(ENV_SCHEDULER_INTERVAL, 120.0, min_value=15.0),
            scheduler_initial_delay=_float_from_env(ENV_SCHEDULER_INITIAL_DELAY, 5.0, min_value=0.0),
            single_flight=_bool_from_env(ENV_SINGLE_FLIGHT, False),
            cors_origins=tuple(_list_from_env(ENV_CORS_ORIGINS, ["*"])),
            log_level=(os.getenv(ENV_LOG_LEVEL, "").strip().upper() or "INFO"),
        )
