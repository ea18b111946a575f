"""Radar overlay API: latest frame, timestamp listing, legend and images."""

from __future__ import annotations

import argparse
import hashlib
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from radar_overlay.config.settings import Settings
from radar_overlay.models.frame import isoformat_utc
from radar_overlay.services.builder.rasterize import RenderError
from radar_overlay.services.colormaps import color_legend
from radar_overlay.services.pipeline import build_pipeline
from radar_overlay.services.scheduler import RadarScheduler

logger = logging.getLogger(__name__)

SERVICE_NAME = "Weather Radar API"
SERVICE_VERSION = "1.0.0"

CACHE_HIT = "public, max-age=31536000, immutable"
CACHE_MISS = "public, max-age=15"
CACHE_LEGEND = "public, max-age=3600"

SETTINGS = Settings.from_env()


def _now_iso() -> str:
    return isoformat_utc(datetime.now(timezone.utc))


def _if_none_match_values(header_value: str) -> list[str]:
    return [v.strip() for v in header_value.split(",") if v.strip()]


def _etag_matches(if_none_match: str | None, etag: str) -> bool:
    if not if_none_match:
        return False
    vals = _if_none_match_values(if_none_match)
    if "*" in vals:
        return True
    return etag in vals


def _make_etag(payload: object) -> str:
    digest = hashlib.md5(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()[:12]
    return f'"{digest}"'


def _maybe_304(request: Request, *, etag: str, cache_control: str) -> Response | None:
    inm = request.headers.get("if-none-match")
    if _etag_matches(inm, etag):
        return Response(
            status_code=304,
            headers={
                "ETag": etag,
                "Cache-Control": cache_control,
            },
        )
    return None


def _envelope(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data, "timestamp": _now_iso()}


def _error_response(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "message": message,
            "timestamp": _now_iso(),
        },
        headers={"Cache-Control": "no-store"},
    )


def _cached_json(request: Request, payload: dict[str, Any], *, cache_control: str) -> Response:
    # The envelope timestamp changes every call; only the data drives the ETag.
    etag = _make_etag(payload.get("data"))
    r304 = _maybe_304(request, etag=etag, cache_control=cache_control)
    if r304 is not None:
        return r304
    return JSONResponse(
        content=payload,
        headers={
            "Cache-Control": cache_control,
            "ETag": etag,
        },
    )


def _base_url(request: Request) -> str:
    settings: Settings = getattr(request.app.state, "settings", SETTINGS)
    if settings.base_url:
        return settings.base_url
    return str(request.base_url).rstrip("/")


def _parse_timestamp(raw: str) -> datetime | None:
    text = raw.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = SETTINGS
    pipeline = build_pipeline(settings)
    scheduler = RadarScheduler(
        pipeline,
        interval=settings.scheduler_interval,
        initial_delay=settings.scheduler_initial_delay,
    )
    app.state.settings = settings
    app.state.pipeline = pipeline
    app.state.scheduler = scheduler

    pipeline.cache.start_sweeper()
    if settings.scheduler_enabled:
        scheduler.start()
    logger.info(
        "Radar API ready (source=%s data_dir=%s images_dir=%s)",
        settings.source_url,
        settings.data_dir,
        settings.images_dir,
    )
    try:
        yield
    finally:
        scheduler.stop()
        pipeline.cache.stop_sweeper()
        pipeline.close()
        pipeline.acquirer.close()


app = FastAPI(title="Radar Overlay API", version=SERVICE_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(SETTINGS.cors_origins),
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    return {
        "message": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "endpoints": {
            "health": "/api/health",
            "latest": "/api/radar/latest",
            "timestamps": "/api/radar/timestamps",
            "byTimestamp": "/api/radar/timestamp/{timestamp}",
            "legend": "/api/radar/legend",
            "scheduler": "/api/radar/scheduler",
            "images": "/images/{filename}",
        },
    }


@app.get("/api/health")
@app.get("/api/radar/health")
def health():
    return {"status": "ok", "service": SERVICE_NAME, "timestamp": _now_iso()}


@app.get("/api/radar/latest")
def get_latest(request: Request):
    pipeline = request.app.state.pipeline
    try:
        view = pipeline.get_latest(_base_url(request))
    except RenderError as exc:
        return _error_response(500, "Failed to render latest radar data", str(exc))
    except Exception as exc:
        logger.exception("Latest radar request failed")
        return _error_response(500, "Failed to fetch latest radar data", str(exc))
    return _cached_json(request, _envelope(view), cache_control=CACHE_MISS)


@app.get("/api/radar/timestamps")
def get_timestamps(request: Request):
    pipeline = request.app.state.pipeline
    try:
        timestamps = pipeline.get_timestamps()
    except Exception as exc:
        logger.exception("Timestamp listing failed")
        return _error_response(500, "Failed to fetch timestamps", str(exc))
    return _cached_json(request, _envelope(timestamps), cache_control=CACHE_MISS)


@app.get("/api/radar/timestamp/{timestamp}")
def get_by_timestamp(timestamp: str, request: Request):
    parsed = _parse_timestamp(timestamp)
    if parsed is None:
        return _error_response(
            400,
            "Invalid timestamp format",
            "Timestamp must be a valid ISO 8601 date string",
        )
    pipeline = request.app.state.pipeline
    try:
        view = pipeline.get_by_timestamp(parsed, _base_url(request))
    except RenderError as exc:
        return _error_response(500, "Failed to render radar data for timestamp", str(exc))
    except Exception as exc:
        logger.exception("Radar request failed for timestamp=%s", timestamp)
        return _error_response(500, "Failed to fetch radar data for timestamp", str(exc))
    return _cached_json(request, _envelope(view), cache_control=CACHE_MISS)


@app.get("/api/radar/legend")
def get_legend(request: Request):
    return _cached_json(request, _envelope(color_legend()), cache_control=CACHE_LEGEND)


@app.get("/api/radar/scheduler")
def get_scheduler_status(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        status = {"running": False, "nextRun": None, "lastRun": None, "lastError": None}
    else:
        status = scheduler.status()
    return JSONResponse(content=status, headers={"Cache-Control": "no-store"})


@app.get("/images/{filename}")
def get_image(filename: str, request: Request):
    rasterizer = request.app.state.pipeline.rasterizer
    try:
        path = rasterizer.image_path(filename)
    except ValueError:
        return Response(status_code=404, headers={"Cache-Control": CACHE_MISS})
    if not path.is_file():
        return Response(status_code=404, headers={"Cache-Control": CACHE_MISS})
    return FileResponse(
        path=str(path),
        media_type="image/png",
        headers={"Cache-Control": CACHE_HIT},
    )


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the radar overlay API.")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    parser.add_argument("--port", type=int, default=5000, help="Bind port")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, SETTINGS.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    args = _parse_args(argv)
    uvicorn.run(app, host=args.host, port=args.port, log_level=SETTINGS.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
