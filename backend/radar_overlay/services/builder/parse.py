"""Turn a downloaded MRMS product into a Frame of geo-tagged samples.

Decoding is delegated: GDAL's GRIB driver (through rasterio) is tried
first and the external ``wgrib2`` tool second. Neither path decodes GRIB2
bytes in Python. When no decoder can produce samples the caller falls back
to ``FrameParser.generate_synthetic``, a deterministic storm field over the
CONUS box.
"""

from __future__ import annotations

import csv
import gzip
import logging
import math
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Protocol

import numpy as np
import rasterio
from rasterio.errors import RasterioError

from radar_overlay.config.regions import CONUS_BOUNDS
from radar_overlay.models.frame import (
    INTENSITY_MAX,
    INTENSITY_MIN,
    BoundingBox,
    Frame,
    GeoSample,
    build_frame_metadata,
)

logger = logging.getLogger(__name__)

# MRMS writes -999 (no coverage) and -99 (missing) into RALA.
MISSING_SENTINEL_MAX = -90.0

_MISSING_VALUE_TAG_KEYS = (
    "missing_value",
    "_FillValue",
    "GRIB_missingValue",
    "GRIB_NODATA",
    "GRIB_noDataValue",
    "NODATA",
)

WGRIB2_TIMEOUT_SECONDS = 120

EPOCH_BUCKET_MINUTES = 5
SYNTHETIC_GRID_STEP = 0.15
SYNTHETIC_FLOOR = 15.0
SYNTHETIC_CEILING = 75.0
SYNTHETIC_JITTER = 4.0
RAIN_BAND_WEIGHT = 0.3


class ParseError(RuntimeError):
    """Raised when a source product yields no usable Frame."""


@dataclass(frozen=True)
class DecodedGrid:
    samples: tuple[GeoSample, ...]
    bounds: Optional[BoundingBox] = None


class FrameDecoder(Protocol):
    name: str

    def decode(self, path: Path, *, stride: int, min_intensity: float) -> DecodedGrid:
        ...


def _parse_float_tag(value: Any) -> float | None:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if not np.isfinite(parsed):
        return None
    return parsed


def _normalize_longitude(lons: np.ndarray) -> np.ndarray:
    return np.where(lons > 180.0, lons - 360.0, lons)


def _samples_from_arrays(
    lats: np.ndarray,
    lons: np.ndarray,
    values: np.ndarray,
    *,
    min_intensity: float,
) -> tuple[GeoSample, ...]:
    lats = np.asarray(lats, dtype=np.float64).ravel()
    lons = _normalize_longitude(np.asarray(lons, dtype=np.float64).ravel())
    values = np.asarray(values, dtype=np.float64).ravel()

    keep = np.isfinite(values) & np.isfinite(lats) & np.isfinite(lons)
    keep &= values > MISSING_SENTINEL_MAX
    keep &= np.abs(values) < 1e12
    keep &= values >= min_intensity
    clamped = np.clip(values[keep], INTENSITY_MIN, INTENSITY_MAX)
    return tuple(
        GeoSample(latitude=float(lat), longitude=float(lon), intensity=float(val))
        for lat, lon, val in zip(lats[keep], lons[keep], clamped)
    )


def _mask_missing(src: Any, data: np.ndarray) -> np.ndarray:
    nodata_val = _parse_float_tag(getattr(src, "nodata", None))
    if nodata_val is not None:
        atol = max(1e-6, abs(nodata_val) * 1e-6)
        data = np.where(np.isclose(data, nodata_val, rtol=0.0, atol=atol), np.nan, data)

    tag_values: set[float] = set()
    for tags in (src.tags(), src.tags(1)):
        for key in _MISSING_VALUE_TAG_KEYS:
            parsed = _parse_float_tag(tags.get(key))
            if parsed is not None:
                tag_values.add(parsed)
    for missing_val in tag_values:
        atol = max(1e-6, abs(missing_val) * 1e-6)
        data = np.where(np.isclose(data, missing_val, rtol=0.0, atol=atol), np.nan, data)
    return data


class RasterioDecoder:
    """Read the first band through GDAL; gzip files via ``/vsigzip/``."""

    name = "rasterio"

    def decode(self, path: Path, *, stride: int, min_intensity: float) -> DecodedGrid:
        resolved = Path(path).resolve()
        dataset_path = f"/vsigzip/{resolved}" if resolved.suffix == ".gz" else str(resolved)
        step = max(1, int(stride))
        try:
            with rasterio.open(dataset_path) as src:
                band = src.read(1, masked=True)
                data = np.asarray(np.ma.filled(band.astype(np.float64), np.nan), dtype=np.float64)
                data = _mask_missing(src, data)
                transform = src.transform
                raster_bounds = src.bounds
        except (RasterioError, OSError, ValueError) as exc:
            raise ParseError(f"GDAL could not read {resolved.name}: {exc}") from exc

        rows = np.arange(0, data.shape[0], step)
        cols = np.arange(0, data.shape[1], step)
        rr, cc = np.meshgrid(rows, cols, indexing="ij")
        # Cell centres through the affine geotransform.
        col_c = cc + 0.5
        row_c = rr + 0.5
        lons = transform.c + col_c * transform.a + row_c * transform.b
        lats = transform.f + col_c * transform.d + row_c * transform.e
        samples = _samples_from_arrays(lats, lons, data[::step, ::step], min_intensity=min_intensity)

        west, east = (float(v) for v in _normalize_longitude(np.array([raster_bounds.left, raster_bounds.right])))
        try:
            bounds: Optional[BoundingBox] = BoundingBox(
                north=float(raster_bounds.top),
                south=float(raster_bounds.bottom),
                east=east,
                west=west,
            )
        except ValueError:
            bounds = None
        logger.debug("GDAL decode: shape=%s stride=%d samples=%d", data.shape, step, len(samples))
        return DecodedGrid(samples=samples, bounds=bounds)


def _grid_index(values: np.ndarray) -> np.ndarray:
    """Integer row/column index of regularly spaced coordinates."""
    uniq = np.unique(values)
    if uniq.size < 2:
        return np.zeros(values.shape, dtype=np.int64)
    step = float(np.min(np.diff(uniq)))
    return np.rint((values - uniq[0]) / step).astype(np.int64)


class Wgrib2Decoder:
    """Run ``wgrib2 -csv`` on a decompressed copy of the product."""

    name = "wgrib2"

    def __init__(self, binary: str = "wgrib2", timeout: float = WGRIB2_TIMEOUT_SECONDS) -> None:
        self.binary = binary
        self.timeout = timeout

    def _resolve_binary(self) -> str:
        path = shutil.which(self.binary)
        if not path:
            raise ParseError(f"'{self.binary}' not found on PATH")
        return path

    def decode(self, path: Path, *, stride: int, min_intensity: float) -> DecodedGrid:
        binary = self._resolve_binary()
        path = Path(path)
        with tempfile.TemporaryDirectory() as tmp_dir:
            tmp_dir_path = Path(tmp_dir)
            grib_path = tmp_dir_path / "source.grib2"
            csv_path = tmp_dir_path / "source.csv"
            try:
                if path.suffix == ".gz":
                    with gzip.open(path, "rb") as src, grib_path.open("wb") as dst:
                        shutil.copyfileobj(src, dst)
                else:
                    shutil.copyfile(path, grib_path)
            except (OSError, EOFError) as exc:
                raise ParseError(f"Could not decompress {path.name}: {exc}") from exc

            cmd = [binary, str(grib_path), "-csv", str(csv_path)]
            logger.debug("wgrib2: %s", " ".join(cmd))
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=self.timeout)
            except (OSError, subprocess.TimeoutExpired) as exc:
                raise ParseError(f"wgrib2 failed to run: {exc}") from exc
            if result.returncode != 0:
                raise ParseError(
                    f"wgrib2 exited with code {result.returncode}: {result.stderr.strip()}"
                )
            try:
                lats, lons, values = self._read_csv(csv_path, min_intensity=min_intensity)
            except (OSError, ValueError) as exc:
                raise ParseError(f"Unreadable wgrib2 output for {path.name}: {exc}") from exc

        step = max(1, int(stride))
        if step > 1 and values.size:
            keep = (_grid_index(lats) % step == 0) & (_grid_index(lons) % step == 0)
            lats, lons, values = lats[keep], lons[keep], values[keep]
        samples = _samples_from_arrays(lats, lons, values, min_intensity=min_intensity)
        return DecodedGrid(samples=samples, bounds=None)

    @staticmethod
    def _read_csv(csv_path: Path, *, min_intensity: float) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        # Rows: "time0","time1","field","level",lon,lat,value
        lats: list[float] = []
        lons: list[float] = []
        values: list[float] = []
        with csv_path.open("r", newline="") as fh:
            for row in csv.reader(fh):
                if len(row) < 7:
                    continue
                try:
                    lon = float(row[4])
                    lat = float(row[5])
                    value = float(row[6])
                except ValueError:
                    continue
                if value < min_intensity:
                    continue
                lats.append(lat)
                lons.append(lon)
                values.append(value)
        return np.array(lats), np.array(lons), np.array(values)


# ---------------------------------------------------------------------------
# Synthetic storm field
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StormKernel:
    center_x: float
    center_y: float
    peak: float
    core_scale: float
    band_scale: float


def epoch_bucket(now: datetime) -> int:
    """Five-minute bucket index of *now* since the Unix epoch."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return int(math.floor(now.timestamp() / 60.0 / EPOCH_BUCKET_MINUTES))


def storm_kernels(bucket: int) -> tuple[StormKernel, StormKernel]:
    s = float(bucket)
    return (
        StormKernel(
            center_x=-2.0 + math.sin(s * 0.3) * 5.0,
            center_y=0.5 + math.cos(s * 0.2) * 3.0,
            peak=55.0 + math.sin(s * 0.2) * 20.0,
            core_scale=3.5,
            band_scale=8.0,
        ),
        StormKernel(
            center_x=2.0 + math.cos(s * 0.4) * 4.0,
            center_y=-1.0 + math.sin(s * 0.3) * 2.0,
            peak=40.0 + math.cos(s * 0.3) * 15.0,
            core_scale=2.0,
            band_scale=6.0,
        ),
    )


def _axis(start: float, stop: float, step: float) -> np.ndarray:
    count = int(math.floor((stop - start) / step + 1e-9)) + 1
    return start + np.arange(count, dtype=np.float64) * step


class FrameParser:
    def __init__(
        self,
        *,
        decode_stride: int = 10,
        min_intensity: float = 5.0,
        decoders: Optional[Iterable[FrameDecoder]] = None,
        synthetic_bounds: BoundingBox = CONUS_BOUNDS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.decode_stride = max(1, int(decode_stride))
        self.min_intensity = float(min_intensity)
        self.decoders: list[FrameDecoder] = (
            list(decoders) if decoders is not None else [RasterioDecoder(), Wgrib2Decoder()]
        )
        self.synthetic_bounds = synthetic_bounds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def parse(self, local_path: Path) -> Frame:
        """Decode *local_path* with the first decoder that yields a usable Frame.

        Raises ParseError when the file is missing, every decoder fails,
        or the decoded samples are empty or span a degenerate box.
        """
        path = Path(local_path)
        if not path.is_file():
            raise ParseError(f"Source file not found: {path}")
        if not self.decoders:
            raise ParseError("No decoders configured")

        last_exc: Exception | None = None
        for decoder in self.decoders:
            try:
                decoded = decoder.decode(path, stride=self.decode_stride, min_intensity=self.min_intensity)
                frame = self._frame_from_grid(decoded, decoder_name=decoder.name, source_tag=path.name)
            except ParseError as exc:
                last_exc = exc
                logger.warning("Decoder %s failed for %s: %s", decoder.name, path.name, exc)
                continue
            logger.info(
                "Parsed %s with %s: %d samples",
                path.name,
                decoder.name,
                frame.metadata.sample_count,
            )
            return frame
        raise ParseError(f"No decoder could read {path.name}") from last_exc

    @staticmethod
    def _frame_from_grid(decoded: DecodedGrid, *, decoder_name: str, source_tag: str) -> Frame:
        samples = tuple(decoded.samples)
        if not samples:
            raise ParseError(f"{decoder_name} produced no samples")
        bounds = decoded.bounds
        if bounds is None:
            lats = [s.latitude for s in samples]
            lons = [s.longitude for s in samples]
            try:
                bounds = BoundingBox(north=max(lats), south=min(lats), east=max(lons), west=min(lons))
            except ValueError as exc:
                raise ParseError(f"Degenerate bounds from {decoder_name}: {exc}") from exc
        metadata = build_frame_metadata(
            samples,
            is_synthetic=False,
            source_tag=source_tag,
            extra={"decoder": decoder_name},
        )
        return Frame(samples=samples, bounds=bounds, metadata=metadata)

    def generate_synthetic(self, seed_tag: str, now: datetime | None = None) -> Frame:
        """Deterministic two-storm field for the five-minute bucket of *now*."""
        when = now if now is not None else self._clock()
        bucket = epoch_bucket(when)
        bounds = self.synthetic_bounds

        lats = _axis(bounds.south, bounds.north, SYNTHETIC_GRID_STEP)
        lons = _axis(bounds.west, bounds.east, SYNTHETIC_GRID_STEP)
        lat_grid, lon_grid = np.meshgrid(lats, lons, indexing="ij")
        x = (lon_grid + 95.0) / 10.0
        y = (lat_grid - 37.0) / 10.0

        dbz = np.zeros(lat_grid.shape, dtype=np.float64)
        for kernel in storm_kernels(bucket):
            dist_sq = (x - kernel.center_x) ** 2 + (y - kernel.center_y) ** 2
            dbz += np.exp(-dist_sq / kernel.core_scale) * kernel.peak
            dbz += np.exp(-dist_sq / kernel.band_scale) * kernel.peak * RAIN_BAND_WEIGHT

        rng = np.random.default_rng(abs(bucket))
        dbz += rng.uniform(-SYNTHETIC_JITTER, SYNTHETIC_JITTER, size=dbz.shape)
        bucket_minutes = bucket * EPOCH_BUCKET_MINUTES
        dbz += np.sin(bucket_minutes * 0.05 + x * 0.3 + y * 0.3) * 3.0

        keep = dbz > SYNTHETIC_FLOOR
        values = np.clip(dbz[keep], SYNTHETIC_FLOOR, SYNTHETIC_CEILING)
        samples = tuple(
            GeoSample(latitude=round(float(lat), 4), longitude=round(float(lon), 4), intensity=float(val))
            for lat, lon, val in zip(lat_grid[keep], lon_grid[keep], values)
        )
        logger.info("Generated %d synthetic samples (bucket=%d, tag=%s)", len(samples), bucket, seed_tag)

        metadata = build_frame_metadata(
            samples,
            is_synthetic=True,
            source_tag=seed_tag,
            extra={"epochBucket": bucket, "isSampleData": True},
        )
        return Frame(samples=samples, bounds=bounds, metadata=metadata)
