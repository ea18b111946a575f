"""Frame pipeline: cache lookup, acquire, parse, render, cache store.

``RadarPipeline.run_latest`` walks an explicit state machine:

    START -> CACHE_LOOKUP -> DONE                                  (hit)
    START -> CACHE_LOOKUP -> ACQUIRE -> PARSE -> RENDER -> CACHE_STORE -> DONE
    ... ACQUIRE/PARSE failure -> FALLBACK -> RENDER -> CACHE_STORE -> DONE
    ... RENDER failure -> FAILED

Acquisition and parse failures never reach the caller: they divert to the
synthetic storm field, which renders through the same Rasterizer. Only a
render failure is surfaced.
"""

from __future__ import annotations

import concurrent.futures
import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx

from radar_overlay.config.settings import Settings
from radar_overlay.models.frame import Frame, RenderedFrame, isoformat_utc
from radar_overlay.services.builder.fetch import AcquisitionError, FetchResult, SourceAcquirer
from radar_overlay.services.builder.parse import FrameParser, ParseError
from radar_overlay.services.builder.rasterize import Rasterizer, RenderError
from radar_overlay.services.cache import FrameCache

logger = logging.getLogger(__name__)

LATEST_CACHE_KEY = "latest_radar"
TIMESTAMP_LIMIT = 20
FALLBACK_TIMESTAMP_COUNT = 10
FALLBACK_TIMESTAMP_STEP = timedelta(minutes=2)
INFLIGHT_WAIT_SECONDS = 120.0
FALLBACK_SEED_TAG = "fallback"

_ACQUIRE_ERRORS: tuple[type[BaseException], ...] = (AcquisitionError, httpx.HTTPError, OSError)
_PARSE_ERRORS: tuple[type[BaseException], ...] = (ParseError, OSError)


class PipelineState(str, enum.Enum):
    START = "start"
    CACHE_LOOKUP = "cache_lookup"
    ACQUIRE = "acquire"
    PARSE = "parse"
    FALLBACK = "fallback"
    RENDER = "render"
    CACHE_STORE = "cache_store"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class StageResult:
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PipelineRun:
    states: list[PipelineState] = field(default_factory=list)
    is_fallback: bool = False
    cache_hit: bool = False
    error: Optional[BaseException] = None
    rendered: Optional[RenderedFrame] = None

    def enter(self, state: PipelineState) -> None:
        self.states.append(state)

    @property
    def final_state(self) -> Optional[PipelineState]:
        return self.states[-1] if self.states else None


def timestamp_cache_key(value: datetime) -> str:
    return f"radar_{isoformat_utc(value)}"


def _epoch_ms(value: datetime) -> int:
    return int(round(value.timestamp() * 1000))


def _run_stage(fn: Callable[..., Any], *args: Any) -> StageResult:
    """Run one fallible stage; any Exception becomes the tagged error."""
    try:
        return StageResult(value=fn(*args))
    except Exception as exc:
        return StageResult(error=exc)


def _log_absorbed(
    message: str,
    error: BaseException,
    expected: tuple[type[BaseException], ...],
    *args: Any,
) -> None:
    # Expected failures get one line; anything else keeps its traceback.
    if isinstance(error, expected):
        logger.warning(message + ": %s", *args, error)
    else:
        logger.warning(message + " (unexpected %s): %s", *args, type(error).__name__, error, exc_info=error)


class _Inflight:
    def __init__(self) -> None:
        self.event = threading.Event()
        self.run: PipelineRun | None = None


class RadarPipeline:
    def __init__(
        self,
        acquirer: SourceAcquirer,
        parser: FrameParser,
        rasterizer: Rasterizer,
        cache: FrameCache,
        *,
        cache_ttl: float = 120.0,
        keep_source: int = 10,
        keep_images: int = 20,
        single_flight: bool = False,
        source_label: str = "MRMS",
        update_interval_minutes: int = 2,
        cleanup_executor: Optional[concurrent.futures.Executor] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.acquirer = acquirer
        self.parser = parser
        self.rasterizer = rasterizer
        self.cache = cache
        self.cache_ttl = float(cache_ttl)
        self.keep_source = int(keep_source)
        self.keep_images = int(keep_images)
        self.single_flight = bool(single_flight)
        self.source_label = source_label
        self.update_interval_minutes = int(update_interval_minutes)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._owns_executor = cleanup_executor is None
        self._cleanup_executor = cleanup_executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="radar-cleanup",
        )
        self._inflight: dict[str, _Inflight] = {}
        self._inflight_lock = threading.Lock()

    # -- state machine ----------------------------------------------------

    def run_latest(self) -> PipelineRun:
        run = PipelineRun()
        run.enter(PipelineState.START)
        run.enter(PipelineState.CACHE_LOOKUP)
        cached = self.cache.get(LATEST_CACHE_KEY)
        if cached is not None:
            logger.debug("Returning cached radar frame")
            run.cache_hit = True
            run.rendered = cached
            run.is_fallback = bool(cached.metadata.get("isFallback", False))
            run.enter(PipelineState.DONE)
            return run
        if self.single_flight:
            return self._produce_single_flight(run)
        return self._produce(run)

    def _produce(self, run: PipelineRun) -> PipelineRun:
        now = self._clock()
        frame: Frame | None = None
        captured_at = now

        logger.info("Step 1/4: acquiring latest source product")
        run.enter(PipelineState.ACQUIRE)
        acquired = _run_stage(self.acquirer.fetch_latest)
        if acquired.ok:
            fetched: FetchResult = acquired.value
            logger.info("Step 2/4: parsing %s", fetched.name)
            run.enter(PipelineState.PARSE)
            parsed = _run_stage(self.parser.parse, fetched.local_path)
            if parsed.ok:
                frame = parsed.value
                captured_at = fetched.timestamp
            else:
                _log_absorbed(
                    "Parse failed for %s; using synthetic frame",
                    parsed.error,
                    _PARSE_ERRORS,
                    fetched.name,
                )
        else:
            _log_absorbed("Acquisition failed; using synthetic frame", acquired.error, _ACQUIRE_ERRORS)

        if frame is None:
            run.enter(PipelineState.FALLBACK)
            run.is_fallback = True
            frame = self.parser.generate_synthetic(FALLBACK_SEED_TAG, now=now)
            filename = f"radar_fallback_{_epoch_ms(now)}.png"
        else:
            filename = f"radar_{_epoch_ms(captured_at)}.png"

        logger.info("Step 3/4: rendering %s", filename)
        run.enter(PipelineState.RENDER)
        try:
            handle = self.rasterizer.render(frame, filename=filename)
        except RenderError as exc:
            run.error = exc
            run.enter(PipelineState.FAILED)
            return run

        rendered = RenderedFrame(
            captured_at=captured_at,
            image_ref=handle.filename,
            bounds=frame.bounds,
            metadata=self._view_metadata(frame, is_fallback=run.is_fallback),
        )

        logger.info("Step 4/4: caching %s", handle.filename)
        run.enter(PipelineState.CACHE_STORE)
        self.cache.put(LATEST_CACHE_KEY, rendered, self.cache_ttl)
        self.cache.put(timestamp_cache_key(captured_at), rendered, self.cache_ttl)
        self._schedule_cleanup()

        run.rendered = rendered
        run.enter(PipelineState.DONE)
        return run

    def _produce_single_flight(self, run: PipelineRun) -> PipelineRun:
        with self._inflight_lock:
            cached = self.cache.get(LATEST_CACHE_KEY)
            if cached is not None:
                run.cache_hit = True
                run.rendered = cached
                run.is_fallback = bool(cached.metadata.get("isFallback", False))
                run.enter(PipelineState.DONE)
                return run
            inflight = self._inflight.get(LATEST_CACHE_KEY)
            is_leader = inflight is None
            if inflight is None:
                inflight = _Inflight()
                self._inflight[LATEST_CACHE_KEY] = inflight

        if not is_leader:
            inflight.event.wait(timeout=INFLIGHT_WAIT_SECONDS)
            leader_run = inflight.run
            if leader_run is not None:
                run.is_fallback = leader_run.is_fallback
                run.rendered = leader_run.rendered
                run.error = leader_run.error
                run.enter(PipelineState.FAILED if leader_run.error is not None else PipelineState.DONE)
                return run
            logger.warning("In-flight render did not finish; rendering independently")
            return self._produce(run)

        try:
            result = self._produce(run)
            inflight.run = result
            return result
        finally:
            with self._inflight_lock:
                self._inflight.pop(LATEST_CACHE_KEY, None)
            inflight.event.set()

    def _view_metadata(self, frame: Frame, *, is_fallback: bool) -> dict[str, Any]:
        metadata = frame.metadata.to_dict()
        metadata.update(
            {
                "dataType": "RALA",
                "updateInterval": self.update_interval_minutes,
                "source": f"{self.source_label} (Sample Data)" if frame.metadata.is_synthetic else self.source_label,
                "units": "dBZ",
            }
        )
        if is_fallback:
            metadata["isFallback"] = True
        return metadata

    # -- retention --------------------------------------------------------

    def _schedule_cleanup(self) -> None:
        try:
            self._cleanup_executor.submit(self._cleanup)
        except RuntimeError as exc:
            # Executor already shut down.
            logger.warning("Cleanup not scheduled: %s", exc)

    def _cleanup(self) -> None:
        # The two retention sets are independent; one failing must not skip the other.
        try:
            self.acquirer.prune_local(self.keep_source)
        except Exception:
            logger.exception("Source file cleanup failed")
        try:
            self.rasterizer.cleanup_rendered(self.keep_images)
        except Exception:
            logger.exception("Rendered image cleanup failed")

    # -- public operations ------------------------------------------------

    def get_latest(self, base_url: str | None = None) -> dict[str, Any]:
        run = self.run_latest()
        if run.error is not None:
            raise run.error
        assert run.rendered is not None
        return run.rendered.to_view(base_url)

    def get_timestamps(self) -> list[str]:
        try:
            candidates = self.acquirer.list_candidates()
        except Exception as exc:
            _log_absorbed("Timestamp listing failed; returning synthetic series", exc, _ACQUIRE_ERRORS)
            now = self._clock()
            return [
                isoformat_utc(now - FALLBACK_TIMESTAMP_STEP * idx)
                for idx in range(FALLBACK_TIMESTAMP_COUNT)
            ]
        return [isoformat_utc(c.timestamp) for c in candidates[:TIMESTAMP_LIMIT]]

    def get_by_timestamp(self, timestamp: datetime, base_url: str | None = None) -> dict[str, Any]:
        """Cached frame for *timestamp*, else the latest frame."""
        cached = self.cache.get(timestamp_cache_key(timestamp))
        if cached is not None:
            return cached.to_view(base_url)
        return self.get_latest(base_url)

    def refresh(self) -> dict[str, Any]:
        self.cache.delete(LATEST_CACHE_KEY)
        return self.get_latest(None)

    def close(self) -> None:
        if self._owns_executor:
            self._cleanup_executor.shutdown(wait=True)


def build_pipeline(settings: Settings) -> RadarPipeline:
    acquirer = SourceAcquirer(
        settings.source_url,
        settings.data_dir,
        list_timeout=settings.list_timeout,
        download_timeout=settings.download_timeout,
        max_download_bytes=settings.max_download_bytes,
        retries=settings.fetch_retries,
        retry_sleep=settings.fetch_retry_sleep,
    )
    parser = FrameParser(
        decode_stride=settings.decode_stride,
        min_intensity=settings.min_intensity,
    )
    rasterizer = Rasterizer(
        settings.images_dir,
        width=settings.image_width,
        height=settings.image_height,
        disc_radius=settings.disc_radius,
        blend_ratio=settings.blend_ratio,
        smoothing_sigma=settings.smoothing_sigma,
        thumbnail_size=(400, 300) if settings.thumbnails_enabled else None,
    )
    cache = FrameCache(default_ttl=settings.cache_ttl, sweep_interval=settings.cache_sweep_interval)
    return RadarPipeline(
        acquirer,
        parser,
        rasterizer,
        cache,
        cache_ttl=settings.cache_ttl,
        keep_source=settings.keep_source_files,
        keep_images=settings.keep_images,
        single_flight=settings.single_flight,
        update_interval_minutes=max(1, int(round(settings.scheduler_interval / 60.0))),
    )
