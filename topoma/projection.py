"""Coordinate reference systems and the transforms between them.

The display CRS is spherical Web Mercator (EPSG:3857); imports are stored in
it and exports are georeferenced in WGS84.  The Moroccan Lambert zones all
share one Lambert Conformal Conic definition that only differs by reference
latitude, scale factor and false origin, so they are expressed as
``LambertParams`` rendered to a single PROJ string template.

Note: transformers use always_xy=True, so coordinates are always ordered
(easting/longitude, northing/latitude).
"""

import math
from dataclasses import dataclass
from functools import lru_cache

from pyproj import CRS as ProjCRS
from pyproj import Transformer
from pyproj.exceptions import CRSError, ProjError

from .errors import ProjectionError

WGS84 = "EPSG:4326"
DISPLAY = "EPSG:3857"

Point2D = tuple[float, float]

# Web Mercator stops at the latitude where the projected square closes.
MERCATOR_MAX_LAT = 85.0511287798

# Zone -> WGS84 is refined until it lands within this distance (m) of the input.
REFINE_TOLERANCE_M = 1e-6
MAX_REFINE_STEPS = 10


@dataclass(frozen=True)
class Ellipsoid:
    a: float  # semi-major axis (m)
    b: float  # semi-minor axis (m)


CLARKE_1880_IGN = Ellipsoid(6378249.2, 6356515.0)


@dataclass(frozen=True)
class LambertParams:
    """Lambert Conformal Conic (1SP) zone definition."""
    lat_0: float
    lon_0: float
    k_0: float
    x_0: float
    y_0: float
    ellipsoid: Ellipsoid
    # 3 or 7 Helmert parameters to WGS84 (dx, dy, dz[, rx, ry, rz, ds])
    towgs84: tuple[float, ...]

    def __post_init__(self):
        if len(self.towgs84) not in (3, 7):
            raise ValueError("towgs84 needs 3 or 7 parameters")

    def proj_string(self) -> str:
        shift = ",".join(f"{v:g}" for v in self.towgs84)
        return (
            f"+proj=lcc +lat_1={self.lat_0} +lat_0={self.lat_0} "
            f"+lon_0={self.lon_0} +k_0={self.k_0} "
            f"+x_0={self.x_0} +y_0={self.y_0} "
            f"+a={self.ellipsoid.a} +b={self.ellipsoid.b} "
            f"+towgs84={shift} +units=m +no_defs"
        )


@dataclass(frozen=True)
class Envelope:
    """Geographic validity envelope in degrees."""
    west: float
    south: float
    east: float
    north: float

    def contains(self, lon: float, lat: float) -> bool:
        return self.west <= lon <= self.east and self.south <= lat <= self.north


@dataclass(frozen=True)
class CRS:
    code: str
    label: str
    kind: str  # "geographic" | "projected"
    envelope: Envelope
    lcc: LambertParams | None = None

    @property
    def is_geographic(self) -> bool:
        return self.kind == "geographic"

    def to_pyproj(self) -> ProjCRS:
        if self.lcc is not None:
            return ProjCRS.from_proj4(self.lcc.proj_string())
        return ProjCRS.from_user_input(self.code)


MOROCCO_ENVELOPE = Envelope(west=-19.0, south=20.0, east=1.0, north=38.0)
MERCHICH_TOWGS84 = (31.0, 146.0, 47.0, 0.0, 0.0, 0.0, 0.0)


def _merchich_zone(lat_0: float, k_0: float, x_0: float, y_0: float) -> LambertParams:
    return LambertParams(lat_0=lat_0, lon_0=-5.4, k_0=k_0, x_0=x_0, y_0=y_0,
                         ellipsoid=CLARKE_1880_IGN, towgs84=MERCHICH_TOWGS84)


_REGISTRY: dict[str, CRS] = {
    crs.code: crs for crs in (
        CRS(WGS84, "WGS 84", "geographic", Envelope(-180.0, -90.0, 180.0, 90.0)),
        CRS(DISPLAY, "Web Mercator", "projected",
            Envelope(-180.0, -MERCATOR_MAX_LAT, 180.0, MERCATOR_MAX_LAT)),
        CRS("EPSG:26191", "Zone 1 (Nord Maroc)", "projected", MOROCCO_ENVELOPE,
            _merchich_zone(33.3, 0.999625769, 500000.0, 300000.0)),
        CRS("EPSG:26192", "Zone 2 (Sud Maroc)", "projected", MOROCCO_ENVELOPE,
            _merchich_zone(29.7, 0.999615596, 500000.0, 300000.0)),
        CRS("EPSG:26194", "Zone 3 (Sahara Nord)", "projected", MOROCCO_ENVELOPE,
            _merchich_zone(26.1, 0.999616304, 1200000.0, 400000.0)),
        CRS("EPSG:26195", "Zone 4 (Sahara Sud)", "projected", MOROCCO_ENVELOPE,
            _merchich_zone(22.5, 0.999616437, 1500000.0, 400000.0)),
    )
}


def get_crs(code: str) -> CRS:
    """Return the registered CRS for *code*.

    Raises:
        ProjectionError: if the code is not registered.
    """
    try:
        return _REGISTRY[code.upper()]
    except KeyError:
        raise ProjectionError(f"Unknown CRS: {code}") from None


def registered() -> list[CRS]:
    return list(_REGISTRY.values())


def zones() -> list[CRS]:
    """CRSs a user can type coordinates in (everything but the display CRS)."""
    return [crs for crs in _REGISTRY.values() if crs.code != DISPLAY]


@lru_cache(maxsize=None)
def _transformer(src_code: str, dst_code: str) -> Transformer:
    return Transformer.from_crs(
        get_crs(src_code).to_pyproj(),
        get_crs(dst_code).to_pyproj(),
        always_xy=True,
    )


def _run(src: CRS, dst: CRS, x: float, y: float) -> Point2D:
    try:
        rx, ry = _transformer(src.code, dst.code).transform(x, y, errcheck=True)
    except (ProjError, CRSError) as exc:
        raise ProjectionError(f"{src.code} -> {dst.code} failed for ({x}, {y}): {exc}") from exc
    if not (math.isfinite(rx) and math.isfinite(ry)):
        raise ProjectionError(f"{src.code} -> {dst.code} overflow for ({x}, {y})")
    return rx, ry


def _refine_to_geographic(zone: CRS, x: float, y: float, lon: float, lat: float) -> Point2D:
    """Make zone -> WGS84 the exact inverse of WGS84 -> zone.

    PROJ drops the ellipsoidal height on each side of the Helmert shift, so
    its two directions disagree by a few millimetres. The WGS84 -> zone
    direction is taken as the reference and (lon, lat) is corrected until
    it maps back onto (x, y).
    """
    wgs84 = _REGISTRY[WGS84]
    lon0, lat0 = lon, lat
    for _ in range(MAX_REFINE_STEPS):
        fx, fy = _run(wgs84, zone, lon, lat)
        if math.hypot(fx - x, fy - y) < REFINE_TOLERANCE_M:
            break
        gx, gy = _run(zone, wgs84, fx, fy)
        lon += lon0 - gx
        lat += lat0 - gy
    return lon, lat


def forward(point: Point2D, from_code: str, to_code: str) -> Point2D:
    """Transform *point* from one registered CRS to another.

    The transform pivots through WGS84 so the geographic position can be
    checked against both CRS envelopes.

    Raises:
        ProjectionError: when the position falls outside either envelope,
            the result is not finite, or PROJ rejects the input.
    """
    src = get_crs(from_code)
    dst = get_crs(to_code)
    x, y = float(point[0]), float(point[1])
    if not (math.isfinite(x) and math.isfinite(y)):
        raise ProjectionError(f"Non-finite coordinate ({x}, {y})")

    wgs84 = _REGISTRY[WGS84]
    lon, lat = (x, y) if src.is_geographic else _run(src, wgs84, x, y)
    for crs in (src, dst):
        if not crs.envelope.contains(lon, lat):
            raise ProjectionError(
                f"({lon:.6f}, {lat:.6f}) is outside the valid area of {crs.code}")

    if src.code == dst.code:
        return x, y
    if src.lcc is not None:
        lon, lat = _refine_to_geographic(src, x, y, lon, lat)
    if dst.is_geographic:
        return lon, lat
    return _run(wgs84, dst, lon, lat)


def to_geographic(point: Point2D, code: str) -> Point2D:
    """Return (lon, lat) in WGS84 for a point expressed in *code*."""
    return forward(point, code, WGS84)


def from_geographic(lonlat: Point2D, code: str) -> Point2D:
    return forward(lonlat, WGS84, code)


def to_display(lonlat: Point2D) -> Point2D:
    return forward(lonlat, WGS84, DISPLAY)


def from_display(point: Point2D) -> Point2D:
    """Return (lon, lat) for a display-CRS point."""
    return forward(point, DISPLAY, WGS84)


def project_from_zone(x: float, y: float, zone_code: str) -> Point2D:
    """Convert coordinates typed in *zone_code* to WGS84 (lon, lat)."""
    return to_geographic((x, y), zone_code)


def project_to_zone(lon: float, lat: float, zone_code: str) -> Point2D:
    """Convert WGS84 (lon, lat) into *zone_code* coordinates."""
    return from_geographic((lon, lat), zone_code)
