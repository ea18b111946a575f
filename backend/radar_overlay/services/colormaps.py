"""Reflectivity (dBZ) color scale.

Buckets are half-open ``[lo, hi)`` intervals cut from ONE ordered list of
breakpoints, so they cannot overlap or leave gaps: bucket ``i`` spans
``REFLECTIVITY_BREAKS[i]`` to ``REFLECTIVITY_BREAKS[i + 1]``. The first
break is ``-inf`` and the last is ``+inf``.

Scalar lookups (``classify``) and the vectorised path used for whole
arrays (``classify_array``) share the same tables.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

import numpy as np

TRANSPARENT: tuple[int, int, int, int] = (0, 0, 0, 0)

REFLECTIVITY_BREAKS: tuple[float, ...] = (
    -math.inf, 5.0, 10.0, 20.0, 30.0, 40.0, 45.0, 50.0, 55.0, 60.0, 65.0, 70.0, math.inf,
)

# (hex color, alpha) per bucket; None = transparent.
REFLECTIVITY_COLORS: tuple[tuple[str, int] | None, ...] = (
    None,                 # < 5 dBZ
    ("#04e9e7", 180),     # very light
    ("#019ff4", 200),     # light
    ("#0300f4", 220),     # light
    ("#02fd02", 230),     # moderate
    ("#01c501", 240),     # moderate
    ("#008e00", 250),     # heavy
    ("#fdf802", 255),     # heavy
    ("#e5bc00", 255),     # very heavy
    ("#fd9500", 255),     # very heavy
    ("#fd0000", 255),     # intense
    ("#d40000", 255),     # extreme
)


@dataclass(frozen=True)
class ColorBucket:
    lower: float
    upper: float
    rgba: tuple[int, int, int, int]

    def contains(self, value: float) -> bool:
        return self.lower <= value < self.upper


def _hex_to_rgb(hex_color: str) -> tuple[int, int, int]:
    hex_str = hex_color.strip().lstrip("#")
    return (
        int(hex_str[0:2], 16),
        int(hex_str[2:4], 16),
        int(hex_str[4:6], 16),
    )


def _build_buckets(
    breaks: tuple[float, ...],
    colors: tuple[tuple[str, int] | None, ...],
) -> tuple[ColorBucket, ...]:
    if len(breaks) != len(colors) + 1:
        raise ValueError(f"Need len(colors) + 1 breaks, got {len(breaks)} breaks for {len(colors)} colors")
    if breaks[0] != -math.inf or breaks[-1] != math.inf:
        raise ValueError("Color scale must span (-inf, +inf)")
    for lo, hi in zip(breaks, breaks[1:]):
        if not lo < hi:
            raise ValueError(f"Breakpoints must be strictly increasing: {lo} !< {hi}")

    buckets: list[ColorBucket] = []
    for idx, entry in enumerate(colors):
        if entry is None:
            rgba = TRANSPARENT
        else:
            hex_color, alpha = entry
            rgba = (*_hex_to_rgb(hex_color), int(alpha))
        buckets.append(ColorBucket(lower=breaks[idx], upper=breaks[idx + 1], rgba=rgba))
    return tuple(buckets)


REFLECTIVITY_SCALE: tuple[ColorBucket, ...] = _build_buckets(REFLECTIVITY_BREAKS, REFLECTIVITY_COLORS)

# (N, 4) uint8 lookup table aligned with REFLECTIVITY_SCALE.
_LUT = np.array([bucket.rgba for bucket in REFLECTIVITY_SCALE], dtype=np.uint8)
# Interior breakpoints for np.digitize (right=False gives [lo, hi) bins).
_INNER_BREAKS = np.array(REFLECTIVITY_BREAKS[1:-1], dtype=np.float64)


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(parsed):
        return None
    return parsed


def bucket_index(intensity: Any) -> int | None:
    """Index of the bucket containing *intensity*, or None for missing values."""
    value = _as_float(intensity)
    if value is None:
        return None
    for idx, bucket in enumerate(REFLECTIVITY_SCALE):
        if bucket.contains(value):
            return idx
    # +inf is not < +inf; it belongs to the open-ended last bucket.
    return len(REFLECTIVITY_SCALE) - 1


def classify(intensity: Any) -> tuple[int, int, int, int]:
    """Map a reflectivity value to its RGBA color.

    ``None``, NaN and non-numeric inputs are fully transparent.
    """
    idx = bucket_index(intensity)
    if idx is None:
        return TRANSPARENT
    return REFLECTIVITY_SCALE[idx].rgba


def classify_array(values: np.ndarray) -> np.ndarray:
    """Vectorised ``classify``: (...,) float array -> (..., 4) uint8 RGBA."""
    data = np.asarray(values, dtype=np.float64)
    finite_or_inf = ~np.isnan(data)
    safe_vals = np.where(finite_or_inf, data, 0.0)
    bins = np.digitize(safe_vals, _INNER_BREAKS, right=False)
    rgba = _LUT[bins]
    rgba[~finite_or_inf] = 0
    return rgba


def color_legend() -> list[dict[str, Any]]:
    """Legend entries for the finite buckets."""
    legend: list[dict[str, Any]] = []
    for bucket in REFLECTIVITY_SCALE:
        if math.isinf(bucket.lower) or math.isinf(bucket.upper):
            continue
        r, g, b, a = bucket.rgba
        legend.append(
            {
                "minDbz": bucket.lower,
                "maxDbz": bucket.upper,
                "color": f"rgba({r}, {g}, {b}, {a / 255:g})",
            }
        )
    return legend
