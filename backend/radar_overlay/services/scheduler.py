from __future__ import annotations

import argparse
import dataclasses
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from radar_overlay.config.settings import Settings
from radar_overlay.models.frame import isoformat_utc
from radar_overlay.services.pipeline import RadarPipeline, build_pipeline

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 120.0
DEFAULT_INITIAL_DELAY_SECONDS = 5.0
MIN_INTERVAL_SECONDS = 15.0


class SchedulerConfigError(RuntimeError):
    pass


class RadarScheduler:
    """Refresh the pipeline on a fixed interval from a daemon thread."""

    def __init__(
        self,
        pipeline: RadarPipeline,
        *,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
    ) -> None:
        if interval <= 0:
            raise SchedulerConfigError(f"interval must be positive, got {interval}")
        self.pipeline = pipeline
        self.interval = float(interval)
        self.initial_delay = max(0.0, float(initial_delay))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._tick_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._next_run: Optional[datetime] = None
        self._last_run: Optional[datetime] = None
        self._last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="radar-scheduler", daemon=True)
        self._thread.start()
        logger.info(
            "Radar scheduler started (interval=%ss, initial_delay=%ss)",
            self.interval,
            self.initial_delay,
        )

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
        self._thread = None
        with self._state_lock:
            self._next_run = None
        logger.info("Radar scheduler stopped")

    def _loop(self) -> None:
        wait_s = self.initial_delay
        while True:
            with self._state_lock:
                self._next_run = datetime.now(timezone.utc) + timedelta(seconds=wait_s)
            if self._stop.wait(wait_s):
                return
            self._tick()
            wait_s = self.interval

    def _tick(self) -> bool:
        with self._tick_lock:
            logger.info("Scheduled radar update triggered")
            try:
                view = self.pipeline.refresh()
            except Exception as exc:
                logger.exception("Scheduled radar update failed")
                with self._state_lock:
                    self._last_run = datetime.now(timezone.utc)
                    self._last_error = str(exc)
                return False
            with self._state_lock:
                self._last_run = datetime.now(timezone.utc)
                self._last_error = None
            logger.info("Scheduled radar update completed: %s", view.get("imageUrl"))
            return True

    def trigger_update(self) -> bool:
        """Run one refresh now, on the calling thread."""
        return self._tick()

    def status(self) -> dict[str, Any]:
        with self._state_lock:
            next_run = self._next_run if self.running else None
            return {
                "running": self.running,
                "nextRun": isoformat_utc(next_run) if next_run is not None else None,
                "lastRun": isoformat_utc(self._last_run) if self._last_run is not None else None,
                "lastError": self._last_error,
            }


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the radar frame scheduler.")
    parser.add_argument("--interval", type=float, default=None, help="Refresh interval in seconds")
    parser.add_argument("--data-dir", default=None, help="Override RADAR_DATA_DIR")
    parser.add_argument("--images-dir", default=None, help="Override RADAR_IMAGES_DIR")
    parser.add_argument("--once", action="store_true", help="Render one frame then exit")
    return parser.parse_args(argv)


def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    overrides: dict[str, Any] = {}
    if args.interval is not None:
        if args.interval < MIN_INTERVAL_SECONDS:
            raise SchedulerConfigError(
                f"--interval must be at least {MIN_INTERVAL_SECONDS:g}s, got {args.interval:g}"
            )
        overrides["scheduler_interval"] = float(args.interval)
    if isinstance(args.data_dir, str) and args.data_dir.strip():
        overrides["data_dir"] = Path(args.data_dir.strip()).resolve()
    if isinstance(args.images_dir, str) and args.images_dir.strip():
        overrides["images_dir"] = Path(args.images_dir.strip()).resolve()
    return dataclasses.replace(settings, **overrides) if overrides else settings


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = _parse_args(argv)

    try:
        settings = _settings_from_args(args)
    except SchedulerConfigError as exc:
        logger.error("Scheduler configuration error: %s", exc)
        return 1

    pipeline = build_pipeline(settings)
    try:
        if args.once:
            view = pipeline.refresh()
            logger.info("Rendered %s", view["imageUrl"])
            return 0
        scheduler = RadarScheduler(
            pipeline,
            interval=settings.scheduler_interval,
            initial_delay=0.0,
        )
        # Every tick stores a new timestamp key nobody reads in this process.
        pipeline.cache.start_sweeper()
        scheduler.start()
        try:
            while scheduler.running:
                time.sleep(1.0)
        except KeyboardInterrupt:
            logger.info("Scheduler shutdown requested")
        finally:
            scheduler.stop()
            pipeline.cache.stop_sweeper()
        return 0
    finally:
        pipeline.close()
        pipeline.acquirer.close()


if __name__ == "__main__":
    raise SystemExit(main())
