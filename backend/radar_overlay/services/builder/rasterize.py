"""Splat geo-tagged samples onto an RGBA canvas and write it as PNG.

Each sample becomes a filled disc in the color of its reflectivity bucket.
Overlapping discs blend toward the newer color while coverage (alpha)
never shrinks. A separable Gaussian pass on premultiplied color softens
the disc edges without darkening them.
"""

from __future__ import annotations

import logging
import math
import re
import tempfile
from pathlib import Path
from typing import Optional

import numpy as np
from PIL import Image

from radar_overlay.models.frame import Frame, ImageHandle
from radar_overlay.services.colormaps import classify
from radar_overlay.services.retention import RetainedFileSet

logger = logging.getLogger(__name__)

THUMBNAIL_SUFFIX = "_thumbnail.png"
_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*\.png$")


class RenderError(RuntimeError):
    """Raised when a frame cannot be smoothed, encoded or written."""


def _is_safe_name(filename: str) -> bool:
    return bool(_SAFE_NAME_RE.match(filename)) and ".." not in filename


def _gaussian_kernel_1d(sigma: float) -> np.ndarray:
    radius = max(1, int(np.ceil(3.0 * sigma)))
    x = np.arange(-radius, radius + 1, dtype=np.float32)
    kernel = np.exp(-(x * x) / (2.0 * sigma * sigma), dtype=np.float32)
    kernel_sum = float(kernel.sum())
    if kernel_sum <= 0:
        return np.array([1.0], dtype=np.float32)
    return (kernel / kernel_sum).astype(np.float32)


def _convolve_axis_edge(arr: np.ndarray, kernel: np.ndarray, axis: int) -> np.ndarray:
    if kernel.size == 1:
        return arr.astype(np.float32, copy=True)
    pad = kernel.size // 2
    pad_width = [(0, 0)] * arr.ndim
    pad_width[axis] = (pad, pad)
    padded = np.pad(arr, pad_width, mode="edge")
    return np.apply_along_axis(
        lambda values: np.convolve(values, kernel, mode="valid"),
        axis,
        padded,
    ).astype(np.float32, copy=False)


def _blur_2d(arr: np.ndarray, kernel: np.ndarray) -> np.ndarray:
    return _convolve_axis_edge(_convolve_axis_edge(arr, kernel, axis=1), kernel, axis=0)


def _smooth_rgba(canvas: np.ndarray, sigma: float) -> np.ndarray:
    """Gaussian blur on alpha-premultiplied color, then un-premultiply.

    Only the occupied window (plus the kernel reach) is convolved. Outside
    it every pixel is zero, so edge padding inside the window sees the same
    zeros the full canvas would.
    """
    if sigma <= 0.0:
        return canvas
    alpha = canvas[..., 3]
    rows = np.flatnonzero(alpha.any(axis=1))
    cols = np.flatnonzero(alpha.any(axis=0))
    if rows.size == 0:
        return canvas

    kernel = _gaussian_kernel_1d(sigma)
    reach = kernel.size // 2
    height, width = alpha.shape
    r0, r1 = max(0, int(rows[0]) - reach), min(height, int(rows[-1]) + reach + 1)
    c0, c1 = max(0, int(cols[0]) - reach), min(width, int(cols[-1]) + reach + 1)
    window = canvas[r0:r1, c0:c1]

    win_alpha = window[..., 3].astype(np.float32)
    alpha_s = _blur_2d(win_alpha, kernel)
    out_alpha = np.clip(np.rint(alpha_s), 0, 255)
    visible = out_alpha > 0
    safe_alpha = np.where(visible, alpha_s, 1.0).astype(np.float32)

    out = np.zeros_like(canvas)
    out_window = out[r0:r1, c0:c1]
    for c in range(3):
        premult_s = _blur_2d(window[..., c].astype(np.float32) * win_alpha, kernel)
        chan = np.clip(np.rint(premult_s / safe_alpha), 0, 255)
        chan[~visible] = 0
        out_window[..., c] = chan.astype(np.uint8)
    out_window[..., 3] = out_alpha.astype(np.uint8)
    return out


class Rasterizer:
    def __init__(
        self,
        images_dir: Path,
        *,
        width: int = 4000,
        height: int = 3000,
        disc_radius: int = 15,
        blend_ratio: float = 0.8,
        edge_fade: float = 0.15,
        smoothing_sigma: float = 2.0,
        compress_level: int = 6,
        thumbnail_size: Optional[tuple[int, int]] = (400, 300),
    ) -> None:
        if width <= 0 or height <= 0:
            raise ValueError(f"Canvas must be non-empty, got {width}x{height}")
        if not 0.0 <= blend_ratio <= 1.0:
            raise ValueError(f"blend_ratio must be in [0, 1], got {blend_ratio}")
        self.images_dir = Path(images_dir)
        self.width = int(width)
        self.height = int(height)
        self.disc_radius = max(0, int(disc_radius))
        self.blend_ratio = float(blend_ratio)
        self.edge_fade = float(edge_fade)
        self.smoothing_sigma = float(smoothing_sigma)
        self.compress_level = int(compress_level)
        self.thumbnail_size = thumbnail_size
        self._disc_dy, self._disc_dx, self._disc_falloff = self._disc_template(self.disc_radius, self.edge_fade)
        self._rendered = RetainedFileSet(
            self.images_dir,
            "*.png",
            exclude=lambda path: "thumbnail" in path.name,
            on_delete=self._delete_thumbnail,
        )

    @staticmethod
    def _disc_template(radius: int, edge_fade: float) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        if radius == 0:
            zero = np.zeros(1, dtype=np.int64)
            return zero, zero, np.ones(1, dtype=np.float64)
        offsets = np.arange(-radius, radius + 1)
        dy, dx = np.meshgrid(offsets, offsets, indexing="ij")
        dist = np.sqrt(dx * dx + dy * dy)
        inside = dist <= radius
        falloff = 1.0 - (dist[inside] / radius) * edge_fade
        return dy[inside], dx[inside], falloff

    # -- drawing ----------------------------------------------------------

    def project(self, frame: Frame, latitude: float, longitude: float) -> tuple[int, int]:
        b = frame.bounds
        x = math.floor((longitude - b.west) / (b.east - b.west) * self.width)
        y = math.floor((b.north - latitude) / (b.north - b.south) * self.height)
        return x, y

    def _draw_disc(self, canvas: np.ndarray, x: int, y: int, rgba: tuple[int, int, int, int]) -> None:
        ys = y + self._disc_dy
        xs = x + self._disc_dx
        inside = (ys >= 0) & (ys < self.height) & (xs >= 0) & (xs < self.width)
        ys = ys[inside]
        xs = xs[inside]
        new_alpha = np.floor(rgba[3] * self._disc_falloff[inside]).astype(np.int64)

        old = canvas[ys, xs].astype(np.int64)
        new_rgb = np.array(rgba[:3], dtype=np.float64)
        blended = np.floor(new_rgb * self.blend_ratio + old[:, :3] * (1.0 - self.blend_ratio)).astype(np.int64)
        empty = old[:, 3] == 0

        out = np.empty_like(old)
        out[:, :3] = np.where(empty[:, None], np.array(rgba[:3], dtype=np.int64), blended)
        out[:, 3] = np.where(empty, new_alpha, np.maximum(old[:, 3], new_alpha))
        canvas[ys, xs] = np.clip(out, 0, 255).astype(np.uint8)

    def draw(self, frame: Frame) -> np.ndarray:
        """Rasterize *frame* without smoothing: (height, width, 4) uint8."""
        canvas = np.zeros((self.height, self.width, 4), dtype=np.uint8)
        drawn = 0
        for sample in frame.samples:
            x, y = self.project(frame, sample.latitude, sample.longitude)
            if not (0 <= x < self.width and 0 <= y < self.height):
                continue
            rgba = classify(sample.intensity)
            if rgba[3] == 0:
                continue
            self._draw_disc(canvas, x, y, rgba)
            drawn += 1
        logger.debug("Drew %d/%d samples", drawn, len(frame.samples))
        return canvas

    # -- output -----------------------------------------------------------

    def image_path(self, filename: str) -> Path:
        """Path of a served image; rejects names that could leave images_dir."""
        if not _is_safe_name(filename):
            raise ValueError(f"Unsafe image name: {filename!r}")
        return self.images_dir / filename

    def _write_png(self, image: Image.Image, out_path: Path) -> None:
        with tempfile.NamedTemporaryFile(prefix=".", suffix=".tmp", delete=False, dir=str(out_path.parent)) as tmp:
            tmp_path = Path(tmp.name)
        try:
            image.save(tmp_path, format="PNG", compress_level=self.compress_level)
            tmp_path.replace(out_path)
        except BaseException:
            try:
                if tmp_path.is_file():
                    tmp_path.unlink()
            except OSError:
                pass
            raise

    def render(self, frame: Frame, *, filename: str | None = None) -> ImageHandle:
        name = filename or f"radar_{frame.digest()}.png"
        out_path = self.image_path(name)

        logger.info("Rendering %d samples to %s (%dx%d)", len(frame.samples), name, self.width, self.height)
        canvas = self.draw(frame)
        try:
            smoothed = _smooth_rgba(canvas, self.smoothing_sigma)
            self.images_dir.mkdir(parents=True, exist_ok=True)
            image = Image.fromarray(smoothed)
            self._write_png(image, out_path)

            thumb_path: Optional[Path] = None
            if self.thumbnail_size is not None:
                thumb_path = out_path.with_name(out_path.stem + THUMBNAIL_SUFFIX)
                thumb = image.resize(self.thumbnail_size, Image.Resampling.LANCZOS)
                self._write_png(thumb, thumb_path)
        except Exception as exc:
            logger.exception("Failed rendering %s", name)
            raise RenderError(f"Failed rendering {name}: {exc}") from exc

        logger.info("Rendered image: %s", out_path)
        return ImageHandle(filename=name, path=out_path, thumbnail_path=thumb_path)

    # -- retention --------------------------------------------------------

    @staticmethod
    def _delete_thumbnail(image_path: Path) -> None:
        thumb = image_path.with_name(image_path.stem + THUMBNAIL_SUFFIX)
        if thumb.is_file():
            thumb.unlink()
            logger.info("Deleted old thumbnail: %s", thumb.name)

    def cleanup_rendered(self, keep_count: int) -> list[Path]:
        return self._rendered.cleanup(keep_count)
