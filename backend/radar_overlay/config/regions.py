from __future__ import annotations

from ..models.frame import BoundingBox

# Fixed boxes in degrees. "conus" is the synthetic generator's canvas and
# also the nominal extent of the RALA mosaic subset served to clients.
REGION_PRESETS: dict[str, dict] = {
    "conus": {
        "label": "CONUS",
        "bbox": [-125.0, 25.0, -66.0, 49.0],
        "defaultCenter": [-95.5, 37.0],
        "defaultZoom": 4,
    },
}


def region_bounds(region_id: str) -> BoundingBox:
    preset = REGION_PRESETS.get(region_id)
    if preset is None:
        raise KeyError(f"Unknown region: {region_id!r}")
    west, south, east, north = preset["bbox"]
    return BoundingBox(north=float(north), south=float(south), east=float(east), west=float(west))


CONUS_BOUNDS = region_bounds("conus")
