from __future__ import annotations

import hashlib
import math
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

INTENSITY_MIN = -30.0
INTENSITY_MAX = 80.0


def clamp_intensity(value: float) -> float:
    return min(INTENSITY_MAX, max(INTENSITY_MIN, float(value)))


@dataclass(frozen=True)
class GeoSample:
    latitude: float
    longitude: float
    intensity: float


@dataclass(frozen=True)
class BoundingBox:
    north: float
    south: float
    east: float
    west: float

    def __post_init__(self) -> None:
        values = (self.north, self.south, self.east, self.west)
        if not all(math.isfinite(v) for v in values):
            raise ValueError(f"Bounding box must be finite: {values!r}")
        if not self.north > self.south:
            raise ValueError(f"north ({self.north}) must be greater than south ({self.south})")
        if not self.east > self.west:
            raise ValueError(f"east ({self.east}) must be greater than west ({self.west})")

    def to_dict(self) -> dict[str, float]:
        return {
            "north": self.north,
            "south": self.south,
            "east": self.east,
            "west": self.west,
        }


@dataclass(frozen=True)
class FrameMetadata:
    min_intensity: Optional[float]
    max_intensity: Optional[float]
    sample_count: int
    is_synthetic: bool = False
    source_tag: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "minIntensity": self.min_intensity,
            "maxIntensity": self.max_intensity,
            "sampleCount": self.sample_count,
            "isSynthetic": self.is_synthetic,
            "sourceTag": self.source_tag,
        }
        payload.update(self.extra)
        return payload


@dataclass(frozen=True)
class Frame:
    samples: tuple[GeoSample, ...]
    bounds: BoundingBox
    metadata: FrameMetadata

    def digest(self) -> str:
        """Stable content hash of bounds + samples (metadata excluded)."""
        h = hashlib.sha1()
        h.update(struct.pack("<4d", self.bounds.north, self.bounds.south, self.bounds.east, self.bounds.west))
        for sample in self.samples:
            h.update(struct.pack("<3d", sample.latitude, sample.longitude, sample.intensity))
        return h.hexdigest()[:16]


def build_frame_metadata(
    samples: tuple[GeoSample, ...],
    *,
    is_synthetic: bool,
    source_tag: str,
    extra: dict[str, Any] | None = None,
) -> FrameMetadata:
    if samples:
        intensities = [s.intensity for s in samples]
        lo: Optional[float] = float(min(intensities))
        hi: Optional[float] = float(max(intensities))
    else:
        lo = hi = None
    return FrameMetadata(
        min_intensity=lo,
        max_intensity=hi,
        sample_count=len(samples),
        is_synthetic=is_synthetic,
        source_tag=source_tag,
        extra=dict(extra or {}),
    )


@dataclass(frozen=True)
class ImageHandle:
    filename: str
    path: Path
    thumbnail_path: Optional[Path] = None


def isoformat_utc(value: datetime) -> str:
    """ISO-8601 with millisecond precision and a trailing Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def image_url(filename: str, base_url: str | None) -> str:
    base = (base_url or "").rstrip("/")
    return f"{base}/images/{filename}"


@dataclass(frozen=True)
class RenderedFrame:
    captured_at: datetime
    image_ref: str
    bounds: BoundingBox
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_view(self, base_url: str | None) -> dict[str, Any]:
        return {
            "timestamp": isoformat_utc(self.captured_at),
            "imageUrl": image_url(self.image_ref, base_url),
            "bounds": self.bounds.to_dict(),
            "metadata": dict(self.metadata),
        }
