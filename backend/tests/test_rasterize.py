from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from radar_overlay.config.regions import CONUS_BOUNDS
from radar_overlay.models.frame import BoundingBox, Frame, GeoSample, build_frame_metadata
from radar_overlay.services.builder.parse import FrameParser
from radar_overlay.services.builder.rasterize import Rasterizer, RenderError
from radar_overlay.services.colormaps import classify


def _frame(samples: list[tuple[float, float, float]], bounds: BoundingBox = CONUS_BOUNDS) -> Frame:
    geo = tuple(GeoSample(latitude=lat, longitude=lon, intensity=val) for lat, lon, val in samples)
    return Frame(samples=geo, bounds=bounds, metadata=build_frame_metadata(geo, is_synthetic=False, source_tag="test"))


def _read_rgba(path: Path) -> np.ndarray:
    with Image.open(path) as img:
        assert img.mode == "RGBA"
        return np.asarray(img)


def test_single_sample_lands_at_projected_pixel(tmp_path: Path) -> None:
    frame = _frame([(37.0, -95.5, 45.0)])
    rasterizer = Rasterizer(tmp_path, thumbnail_size=None)

    handle = rasterizer.render(frame, filename="radar_single.png")
    rgba = _read_rgba(handle.path)

    assert rgba.shape == (3000, 4000, 4)
    x, y = rasterizer.project(frame, 37.0, -95.5)
    assert (x, y) == (2000, 1500)

    r, g, b, a = (int(c) for c in rgba[y, x])
    assert a > 0
    assert (r, g, b) == classify(45.0)[:3]

    # Disc radius plus the smoothing kernel reach bounds the footprint.
    reach = 15 + 6
    outside = np.ones(rgba.shape[:2], dtype=bool)
    outside[y - reach : y + reach + 1, x - reach : x + reach + 1] = False
    assert not rgba[outside].any()


def test_render_is_byte_identical_for_same_frame(tmp_path: Path) -> None:
    frame = FrameParser().generate_synthetic("det", now=datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))
    rasterizer = Rasterizer(tmp_path, width=200, height=150, disc_radius=3, thumbnail_size=None)

    first = rasterizer.render(frame, filename="a.png")
    second = rasterizer.render(frame, filename="b.png")

    assert first.path.read_bytes() == second.path.read_bytes()


def test_default_filename_uses_frame_digest(tmp_path: Path) -> None:
    frame = _frame([(37.0, -95.5, 30.0)])
    handle = Rasterizer(tmp_path, width=64, height=48, thumbnail_size=None).render(frame)
    assert handle.filename == f"radar_{frame.digest()}.png"
    assert handle.path.is_file()


def test_disc_edge_fade_without_smoothing(tmp_path: Path) -> None:
    bounds = BoundingBox(north=10.0, south=0.0, east=10.0, west=0.0)
    frame = _frame([(5.0, 5.0, 42.0)], bounds=bounds)
    rasterizer = Rasterizer(tmp_path, width=100, height=100, disc_radius=10, smoothing_sigma=0.0, thumbnail_size=None)

    canvas = rasterizer.draw(frame)

    assert tuple(int(c) for c in canvas[50, 50]) == (1, 197, 1, 240)
    # d=3 of r=10 -> floor(240 * (1 - 0.3 * 0.15)) = 229
    assert int(canvas[50, 53, 3]) == 229
    assert int(canvas[50, 61, 3]) == 0
    assert int(canvas[61, 50, 3]) == 0


def test_overlapping_discs_blend_and_never_lose_coverage(tmp_path: Path) -> None:
    bounds = BoundingBox(north=10.0, south=0.0, east=10.0, west=0.0)
    rasterizer = Rasterizer(tmp_path, width=100, height=100, disc_radius=4, smoothing_sigma=0.0, thumbnail_size=None)

    blended = rasterizer.draw(_frame([(5.0, 5.0, 42.0), (5.0, 5.0, 57.0)], bounds=bounds))
    # rgb = floor(new * 0.8 + old * 0.2), alpha = max(old, new)
    assert tuple(int(c) for c in blended[50, 50]) == (183, 189, 0, 255)

    weaker_last = rasterizer.draw(_frame([(5.0, 5.0, 57.0), (5.0, 5.0, 42.0)], bounds=bounds))
    assert int(weaker_last[50, 50, 3]) == 255


def test_out_of_bounds_and_transparent_samples_are_skipped(tmp_path: Path) -> None:
    bounds = BoundingBox(north=10.0, south=0.0, east=10.0, west=0.0)
    frame = _frame([(5.0, 12.0, 50.0), (-1.0, 5.0, 50.0), (10.0, 10.0, 50.0), (5.0, 5.0, 2.0)], bounds=bounds)

    canvas = Rasterizer(tmp_path, width=50, height=50, smoothing_sigma=0.0).draw(frame)

    assert not canvas.any()


def test_thumbnail_written_and_cleaned_up_with_image(tmp_path: Path) -> None:
    rasterizer = Rasterizer(tmp_path, width=80, height=60, disc_radius=2, thumbnail_size=(40, 30))
    frame = _frame([(37.0, -95.5, 30.0)])

    handles = [rasterizer.render(frame, filename=f"radar_{idx}.png") for idx in range(3)]
    for idx, handle in enumerate(handles):
        assert handle.thumbnail_path is not None
        with Image.open(handle.thumbnail_path) as thumb:
            assert thumb.size == (40, 30)
        os.utime(handle.path, (1000 + idx, 1000 + idx))
        os.utime(handle.thumbnail_path, (5000, 5000))

    deleted = rasterizer.cleanup_rendered(1)

    assert sorted(p.name for p in deleted) == ["radar_0.png", "radar_1.png"]
    assert sorted(p.name for p in tmp_path.iterdir()) == ["radar_2.png", "radar_2_thumbnail.png"]


@pytest.mark.parametrize("name", ["../escape.png", "nested/radar.png", "radar.txt", ".hidden.png", ""])
def test_image_path_rejects_unsafe_names(tmp_path: Path, name: str) -> None:
    with pytest.raises(ValueError):
        Rasterizer(tmp_path).image_path(name)


def test_write_failure_raises_render_error(tmp_path: Path) -> None:
    blocker = tmp_path / "images"
    blocker.write_text("not a directory")
    rasterizer = Rasterizer(blocker, width=16, height=16, thumbnail_size=None)

    with pytest.raises(RenderError):
        rasterizer.render(_frame([(37.0, -95.5, 30.0)]), filename="radar_x.png")


def test_invalid_configuration_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        Rasterizer(tmp_path, width=0)
    with pytest.raises(ValueError):
        Rasterizer(tmp_path, blend_ratio=1.5)


def test_thumbnail_delete_failure_does_not_stop_cleanup(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    rasterizer = Rasterizer(tmp_path, width=80, height=60, disc_radius=2, thumbnail_size=(40, 30))
    frame = _frame([(37.0, -95.5, 30.0)])
    for idx in range(3):
        handle = rasterizer.render(frame, filename=f"radar_{idx}.png")
        os.utime(handle.path, (1000 + idx, 1000 + idx))

    real_unlink = Path.unlink

    def deny_thumbnails(self: Path, missing_ok: bool = False) -> None:
        if "thumbnail" in self.name:
            raise PermissionError(13, "Permission denied", str(self))
        real_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", deny_thumbnails)

    with caplog.at_level("WARNING"):
        deleted = rasterizer.cleanup_rendered(1)

    assert sorted(p.name for p in deleted) == ["radar_0.png", "radar_1.png"]
    assert (tmp_path / "radar_0_thumbnail.png").exists()
    assert "Post-delete hook failed" in caplog.text
