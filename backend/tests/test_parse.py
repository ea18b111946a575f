from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pytest
import rasterio
from rasterio.transform import from_origin

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from radar_overlay.config.regions import CONUS_BOUNDS
from radar_overlay.models.frame import GeoSample
from radar_overlay.services.builder import parse as parse_module
from radar_overlay.services.builder.parse import (
    DecodedGrid,
    FrameParser,
    ParseError,
    RasterioDecoder,
    Wgrib2Decoder,
    epoch_bucket,
    storm_kernels,
)

BUCKET_START = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class _StaticDecoder:
    def __init__(self, name: str, grid: DecodedGrid | None = None, error: str | None = None) -> None:
        self.name = name
        self.grid = grid
        self.error = error
        self.calls = 0

    def decode(self, path: Path, *, stride: int, min_intensity: float) -> DecodedGrid:
        del path, stride, min_intensity
        self.calls += 1
        if self.error is not None:
            raise ParseError(self.error)
        assert self.grid is not None
        return self.grid


def _source_file(tmp_path: Path) -> Path:
    path = tmp_path / "MRMS_20240115-120000.grib2.gz"
    path.write_bytes(b"stub")
    return path


# ---------------------------------------------------------------------------
# Synthetic storm field
# ---------------------------------------------------------------------------

def test_epoch_bucket_is_five_minute_floor() -> None:
    assert epoch_bucket(datetime(1970, 1, 1, 0, 12, tzinfo=timezone.utc)) == 2
    assert epoch_bucket(BUCKET_START) == epoch_bucket(BUCKET_START + timedelta(minutes=4, seconds=59))
    assert epoch_bucket(BUCKET_START + timedelta(minutes=5)) == epoch_bucket(BUCKET_START) + 1


def test_synthetic_frame_is_reproducible_within_a_bucket() -> None:
    parser = FrameParser()
    first = parser.generate_synthetic("fallback", now=BUCKET_START)
    second = parser.generate_synthetic("fallback", now=BUCKET_START + timedelta(minutes=3))

    assert first.samples == second.samples
    assert first.digest() == second.digest()


def test_synthetic_frames_differ_across_buckets() -> None:
    bucket = epoch_bucket(BUCKET_START)
    kernels_now = storm_kernels(bucket)
    kernels_next = storm_kernels(bucket + 1)
    assert (kernels_now[0].center_x, kernels_now[0].center_y) != (kernels_next[0].center_x, kernels_next[0].center_y)

    parser = FrameParser()
    first = parser.generate_synthetic("fallback", now=BUCKET_START)
    later = parser.generate_synthetic("fallback", now=BUCKET_START + timedelta(minutes=5))
    assert first.digest() != later.digest()


def test_synthetic_frame_shape_and_metadata() -> None:
    frame = FrameParser().generate_synthetic("sample", now=BUCKET_START)

    assert frame.bounds == CONUS_BOUNDS
    assert frame.samples
    for sample in frame.samples:
        assert 15.0 <= sample.intensity <= 75.0
        assert CONUS_BOUNDS.south <= sample.latitude <= CONUS_BOUNDS.north
        assert CONUS_BOUNDS.west <= sample.longitude <= CONUS_BOUNDS.east

    meta = frame.metadata
    assert meta.is_synthetic is True
    assert meta.source_tag == "sample"
    assert meta.sample_count == len(frame.samples)
    assert meta.extra["epochBucket"] == epoch_bucket(BUCKET_START)
    assert meta.to_dict()["isSampleData"] is True


def test_synthetic_uses_injected_clock() -> None:
    parser = FrameParser(clock=lambda: BUCKET_START)
    assert parser.generate_synthetic("x").metadata.extra["epochBucket"] == epoch_bucket(BUCKET_START)


# ---------------------------------------------------------------------------
# Decoder chain
# ---------------------------------------------------------------------------

def test_parse_falls_through_to_next_decoder(tmp_path: Path) -> None:
    samples = (
        GeoSample(latitude=30.0, longitude=-100.0, intensity=25.0),
        GeoSample(latitude=40.0, longitude=-90.0, intensity=55.0),
    )
    broken = _StaticDecoder("broken", error="bad message")
    working = _StaticDecoder("working", grid=DecodedGrid(samples=samples))
    parser = FrameParser(decoders=[broken, working])

    frame = parser.parse(_source_file(tmp_path))

    assert broken.calls == 1 and working.calls == 1
    assert frame.samples == samples
    assert frame.bounds.north == 40.0 and frame.bounds.south == 30.0
    assert frame.bounds.east == -90.0 and frame.bounds.west == -100.0
    assert frame.metadata.is_synthetic is False
    assert frame.metadata.min_intensity == 25.0
    assert frame.metadata.max_intensity == 55.0
    assert frame.metadata.extra == {"decoder": "working"}


def test_parse_raises_when_every_decoder_fails(tmp_path: Path) -> None:
    parser = FrameParser(decoders=[_StaticDecoder("a", error="x"), _StaticDecoder("b", error="y")])
    with pytest.raises(ParseError) as excinfo:
        parser.parse(_source_file(tmp_path))
    assert isinstance(excinfo.value.__cause__, ParseError)


def test_parse_rejects_empty_and_degenerate_results(tmp_path: Path) -> None:
    path = _source_file(tmp_path)
    empty = FrameParser(decoders=[_StaticDecoder("empty", grid=DecodedGrid(samples=()))])
    with pytest.raises(ParseError):
        empty.parse(path)

    single = DecodedGrid(samples=(GeoSample(latitude=35.0, longitude=-97.0, intensity=30.0),))
    degenerate = FrameParser(decoders=[_StaticDecoder("single", grid=single)])
    with pytest.raises(ParseError):
        degenerate.parse(path)


def test_parse_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ParseError):
        FrameParser(decoders=[_StaticDecoder("never")]).parse(tmp_path / "absent.grib2.gz")


def test_rasterio_decoder_filters_thins_and_normalizes(tmp_path: Path) -> None:
    data = np.full((6, 8), 30.0, dtype=np.float32)
    data[0, 0] = -999.0   # nodata
    data[0, 2] = -99.0    # missing sentinel
    data[2, 0] = 2.0      # below threshold
    data[2, 2] = 95.0     # clamped to 80
    path = tmp_path / "rala.tif"
    transform = from_origin(235.0, 49.0, 0.5, 0.5)  # 0-360 longitudes
    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        height=data.shape[0],
        width=data.shape[1],
        count=1,
        dtype="float32",
        crs="EPSG:4326",
        transform=transform,
        nodata=-999.0,
    ) as dst:
        dst.write(data, 1)

    grid = RasterioDecoder().decode(path, stride=2, min_intensity=5.0)

    # 3 rows x 4 cols kept by stride; three of them are filtered out.
    assert len(grid.samples) == 12 - 3
    assert all(-180.0 <= s.longitude <= 180.0 for s in grid.samples)
    assert max(s.intensity for s in grid.samples) == 80.0
    # Row 0 keeps only column 4 (columns 0 and 2 are missing values).
    first = grid.samples[0]
    assert first.latitude == pytest.approx(49.0 - 0.25)
    assert first.longitude == pytest.approx(235.0 + 4.5 * 0.5 - 360.0)
    assert grid.bounds is not None
    assert grid.bounds.west == pytest.approx(-125.0)
    assert grid.bounds.east == pytest.approx(-121.0)


def test_rasterio_decoder_wraps_unreadable_files(tmp_path: Path) -> None:
    path = tmp_path / "garbage.grib2"
    path.write_bytes(b"not a raster")
    with pytest.raises(ParseError):
        RasterioDecoder().decode(path, stride=1, min_intensity=5.0)


def test_wgrib2_decoder_requires_binary(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(parse_module.shutil, "which", lambda name: None)
    with pytest.raises(ParseError):
        Wgrib2Decoder().decode(_source_file(tmp_path), stride=1, min_intensity=5.0)


def test_wgrib2_csv_rows_are_read(tmp_path: Path) -> None:
    csv_path = tmp_path / "out.csv"
    csv_path.write_text(
        '"2024-01-15 12:00:00","2024-01-15 12:00:00","ReflectivityAtLowestAltitude","500 m above mean sea level",265.005,37.005,42.5\n'
        '"2024-01-15 12:00:00","2024-01-15 12:00:00","ReflectivityAtLowestAltitude","500 m above mean sea level",265.015,37.005,-999\n'
        '"2024-01-15 12:00:00","2024-01-15 12:00:00","ReflectivityAtLowestAltitude","500 m above mean sea level",265.025,37.005,3.0\n'
        "garbage\n"
    )

    lats, lons, values = Wgrib2Decoder._read_csv(csv_path, min_intensity=5.0)

    assert list(values) == [42.5]
    assert list(lats) == [37.005]
    assert list(lons) == [265.005]


def test_grid_index_recovers_regular_spacing() -> None:
    coords = np.array([37.005, 37.015, 37.035, 37.005])
    assert list(parse_module._grid_index(coords)) == [0, 1, 3, 0]
