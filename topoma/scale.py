"""Map scale <-> pixel resolution conversion and measurement formatting.

Resolutions are in display-CRS (Web Mercator) units per pixel.  Mercator
stretches distances by 1/cos(lat), so one projected unit is one ground metre
only at the equator; the conversions below correct for that and assume a
96 dpi screen pixel.
"""

import math

from .errors import InvalidLatitudeError

METERS_PER_PIXEL = 0.0254 / 96  # one 96-dpi pixel, ~0.000264583333 m
MAX_ABS_LATITUDE = 89.5

# (label, scale denominator) offered for raster export
EXPORT_SCALES: list[tuple[str, int]] = [
    ("10000 km", 1_000_000_000),
    ("5000 km", 500_000_000),
    ("2000 km", 200_000_000),
    ("1000 km", 100_000_000),
    ("500 km", 50_000_000),
    ("200 km", 20_000_000),
    ("100 km", 10_000_000),
    ("50 km", 5_000_000),
    ("25 km", 2_500_000),
    ("20 km", 2_000_000),
    ("10 km", 1_000_000),
    ("5 km", 500_000),
    ("2 km", 200_000),
    ("1 km", 100_000),
    ("500 m", 50_000),
    ("250 m", 25_000),
    ("200 m", 20_000),
    ("100 m", 10_000),
    ("50 m", 5_000),
    ("20 m", 2_000),
    ("10 m", 1_000),
    ("5 m", 500),
]

MAP_SCALES: list[tuple[str, int]] = [
    (f"1:{value}", value)
    for value in (500, 1000, 2000, 2500, 5000, 10000, 25000, 50000, 100000, 250000)
]

LENGTH_UNITS = {"m": 1.0, "km": 0.001, "ft": 3.28084, "mi": 0.000621371}
AREA_UNITS = {"sqm": 1.0, "ha": 0.0001, "sqkm": 0.000001, "ac": 0.000247105}
_LENGTH_SUFFIX = {"m": "m", "km": "km", "ft": "ft", "mi": "mi"}
_AREA_SUFFIX = {"sqm": "m²", "ha": "ha", "sqkm": "km²", "ac": "ac"}


def _cos_lat(latitude: float) -> float:
    if not (-MAX_ABS_LATITUDE < latitude < MAX_ABS_LATITUDE):
        raise InvalidLatitudeError(
            f"Latitude {latitude} is outside (-{MAX_ABS_LATITUDE}, {MAX_ABS_LATITUDE})")
    return math.cos(math.radians(latitude))


def _check_positive(name: str, value: float):
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"{name} must be a positive number, got {value}")


def resolution_for_scale(scale: float, latitude: float) -> float:
    """Display units per pixel that render 1:*scale* at *latitude*."""
    _check_positive("scale", scale)
    return scale * METERS_PER_PIXEL / _cos_lat(latitude)


def scale_for_resolution(resolution: float, latitude: float) -> float:
    """Scale denominator shown at *latitude* for a display resolution."""
    _check_positive("resolution", resolution)
    return resolution * _cos_lat(latitude) / METERS_PER_PIXEL


def scale_label(value: int) -> str:
    """Export-scale label without whitespace, e.g. ``100000 -> '1km'``."""
    for label, scale in EXPORT_SCALES:
        if scale == value:
            return "".join(label.split())
    return str(int(value))


def format_length(meters: float, unit: str = "m") -> str:
    if unit not in LENGTH_UNITS:
        raise ValueError(f"Unknown length unit: {unit}")
    digits = 3 if unit == "mi" else 2
    return f"{meters * LENGTH_UNITS[unit]:.{digits}f} {_LENGTH_SUFFIX[unit]}"


def format_area(square_meters: float, unit: str = "sqm") -> str:
    if unit not in AREA_UNITS:
        raise ValueError(f"Unknown area unit: {unit}")
    return f"{square_meters * AREA_UNITS[unit]:.2f} {_AREA_SUFFIX[unit]}"


def format_area_parts(square_meters: float) -> str:
    """Cadastral breakdown, e.g. ``12345.6 -> '1 ha 23 a 45.60 ca'``."""
    hectares = int(square_meters // 10000)
    remainder = square_meters % 10000
    ares = int(remainder // 100)
    centiares = remainder % 100

    parts = []
    if hectares > 0:
        parts.append(f"{hectares} ha")
    if ares > 0 or hectares > 0:
        parts.append(f"{ares} a")
    parts.append(f"{centiares:.2f} ca")
    return " ".join(parts)
