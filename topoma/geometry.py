"""Feature geometries, bounding boxes and selection metrics.

Geometries are a closed set of frozen dataclasses (``Point``, ``LineString``,
``Polygon``, ``MultiPolygon``) expressed in the display CRS.  Every consumer
dispatches over all four and raises ``TypeError`` for anything else.
"""

import math
from dataclasses import dataclass, field
from typing import Callable, Iterable, Union

from pyproj import Geod
from shapely.geometry import shape

from .errors import EmptySelectionError
from .projection import Point2D, from_display
from .scale import scale_for_resolution

# Areas and lengths are geodesic on the WGS84 ellipsoid.
GEOD = Geod(ellps="WGS84")


def _as_point(coord) -> Point2D:
    x, y = float(coord[0]), float(coord[1])
    if not (math.isfinite(x) and math.isfinite(y)):
        raise ValueError(f"Non-finite coordinate ({x}, {y})")
    return x, y


@dataclass(frozen=True)
class Point:
    x: float
    y: float

    def __post_init__(self):
        _as_point((self.x, self.y))


@dataclass(frozen=True)
class LineString:
    coords: tuple[Point2D, ...]

    def __post_init__(self):
        coords = tuple(_as_point(c) for c in self.coords)
        if len(coords) < 2:
            raise ValueError("LineString needs at least 2 points")
        object.__setattr__(self, "coords", coords)


@dataclass(frozen=True)
class Polygon:
    """Outer ring only; an open ring is closed on construction."""
    ring: tuple[Point2D, ...]

    def __post_init__(self):
        ring = [_as_point(c) for c in self.ring]
        if ring and ring[0] != ring[-1]:
            ring.append(ring[0])
        if len(ring) < 4:
            raise ValueError("Polygon ring needs at least 4 points (closed)")
        object.__setattr__(self, "ring", tuple(ring))


@dataclass(frozen=True)
class MultiPolygon:
    polygons: tuple[Polygon, ...]

    def __post_init__(self):
        polygons = tuple(self.polygons)
        if not polygons:
            raise ValueError("MultiPolygon needs at least one polygon")
        object.__setattr__(self, "polygons", polygons)


Geometry = Union[Point, LineString, Polygon, MultiPolygon]


def _unsupported(geom) -> TypeError:
    return TypeError(f"Unsupported geometry: {type(geom).__name__}")


def vertices(geom: Geometry) -> list[Point2D]:
    """All vertices of *geom*, polygon rings included."""
    if isinstance(geom, Point):
        return [(geom.x, geom.y)]
    if isinstance(geom, LineString):
        return list(geom.coords)
    if isinstance(geom, Polygon):
        return list(geom.ring)
    if isinstance(geom, MultiPolygon):
        return [c for poly in geom.polygons for c in poly.ring]
    raise _unsupported(geom)


def polygon_rings(geom: Geometry) -> list[tuple[Point2D, ...]]:
    """Outer rings a clip region is built from; empty for points and lines."""
    if isinstance(geom, (Point, LineString)):
        return []
    if isinstance(geom, Polygon):
        return [geom.ring]
    if isinstance(geom, MultiPolygon):
        return [poly.ring for poly in geom.polygons]
    raise _unsupported(geom)


def map_geometry(geom: Geometry, fn: Callable[[Point2D], Point2D]) -> Geometry:
    """Return a copy of *geom* with *fn* applied to every vertex."""
    if isinstance(geom, Point):
        return Point(*fn((geom.x, geom.y)))
    if isinstance(geom, LineString):
        return LineString(tuple(fn(c) for c in geom.coords))
    if isinstance(geom, Polygon):
        return Polygon(tuple(fn(c) for c in geom.ring))
    if isinstance(geom, MultiPolygon):
        return MultiPolygon(tuple(map_geometry(p, fn) for p in geom.polygons))
    raise _unsupported(geom)


def geometry_to_geojson(geom: Geometry) -> dict:
    if isinstance(geom, Point):
        return {"type": "Point", "coordinates": [geom.x, geom.y]}
    if isinstance(geom, LineString):
        return {"type": "LineString", "coordinates": [list(c) for c in geom.coords]}
    if isinstance(geom, Polygon):
        return {"type": "Polygon", "coordinates": [[list(c) for c in geom.ring]]}
    if isinstance(geom, MultiPolygon):
        return {"type": "MultiPolygon",
                "coordinates": [[[list(c) for c in p.ring]] for p in geom.polygons]}
    raise _unsupported(geom)


def geometry_to_shapely(geom: Geometry):
    return shape(geometry_to_geojson(geom))


def geometry_from_geojson(obj: dict) -> Geometry:
    """Build a geometry from a GeoJSON-style ``{type, coordinates}`` mapping.

    Coordinates are taken as-is (display CRS).

    Raises:
        ValueError: unknown type or malformed coordinates.
    """
    gtype = obj.get("type")
    coords = obj.get("coordinates")
    if coords is None:
        raise ValueError("Geometry has no coordinates")
    try:
        if gtype == "Point":
            return Point(*_as_point(coords))
        if gtype == "LineString":
            return LineString(tuple(coords))
        if gtype == "Polygon":
            return Polygon(tuple(coords[0]))
        if gtype == "MultiPolygon":
            return MultiPolygon(tuple(Polygon(tuple(p[0])) for p in coords))
    except (TypeError, IndexError) as exc:
        raise ValueError(f"Malformed {gtype} coordinates") from exc
    raise ValueError(f"Unsupported geometry type: {gtype}")


AttributeValue = Union[str, int, float, bool]


def clean_attribute(value) -> AttributeValue | None:
    """Coerce *value* into the attribute value set, or None to drop it."""
    if value is None:
        return None
    if isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    return str(value)


def clean_attributes(values: dict) -> dict[str, AttributeValue]:
    if not isinstance(values, dict):
        raise TypeError(f"Attributes must be a mapping, not {type(values).__name__}")
    cleaned = {}
    for key, value in values.items():
        value = clean_attribute(value)
        if value is not None:
            cleaned[str(key)] = value
    return cleaned


@dataclass
class Feature:
    geometry: Geometry
    attributes: dict[str, AttributeValue] = field(default_factory=dict)
    id: str | None = None
    label: str | None = None
    layer_id: str | None = None
    kind: str | None = None          # Polygon / Rectangle / Line / Point for drawn features
    source_crs: str | None = None    # CRS the coordinates were imported from

    def set_attribute(self, key: str, value) -> None:
        value = clean_attribute(value)
        if value is None:
            self.attributes.pop(key, None)
        else:
            self.attributes[key] = value

    def replace_geometry(self, geometry: Geometry) -> None:
        """Vertex edit: swap the geometry, keep id, label and attributes."""
        if not isinstance(geometry, (Point, LineString, Polygon, MultiPolygon)):
            raise _unsupported(geometry)
        self.geometry = geometry


@dataclass(frozen=True)
class BoundingBox:
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    def __post_init__(self):
        if self.min_x > self.max_x or self.min_y > self.max_y:
            raise ValueError(f"Inverted bounding box {self}")

    @classmethod
    def of_points(cls, points: Iterable[Point2D]) -> "BoundingBox":
        xs, ys = zip(*points)
        return cls(min(xs), min(ys), max(xs), max(ys))

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @property
    def center(self) -> Point2D:
        return ((self.min_x + self.max_x) / 2.0, (self.min_y + self.max_y) / 2.0)

    def union(self, other: "BoundingBox") -> "BoundingBox":
        return BoundingBox(min(self.min_x, other.min_x), min(self.min_y, other.min_y),
                           max(self.max_x, other.max_x), max(self.max_y, other.max_y))

    def contains(self, other: "BoundingBox") -> bool:
        return (self.min_x <= other.min_x and self.min_y <= other.min_y
                and self.max_x >= other.max_x and self.max_y >= other.max_y)

    def as_list(self) -> list[float]:
        return [self.min_x, self.min_y, self.max_x, self.max_y]


def geometry_bounds(geom: Geometry) -> BoundingBox:
    if isinstance(geom, MultiPolygon):
        boxes = [BoundingBox.of_points(p.ring) for p in geom.polygons]
        result = boxes[0]
        for b in boxes[1:]:
            result = result.union(b)
        return result
    return BoundingBox.of_points(vertices(geom))


def extent_of(features: Iterable[Feature]) -> BoundingBox:
    """Union bounding box of every feature's geometry.

    Raises:
        EmptySelectionError: if *features* is empty.
    """
    result = None
    for feature in features:
        bounds = geometry_bounds(feature.geometry)
        result = bounds if result is None else result.union(bounds)
    if result is None:
        raise EmptySelectionError("No features to compute an extent from.")
    return result


@dataclass(frozen=True)
class Metrics:
    area_sq_m: float | None = None
    perimeter_m: float | None = None


def _lonlats(coords: Iterable[Point2D]) -> tuple[list[float], list[float]]:
    lons, lats = [], []
    for c in coords:
        lon, lat = from_display(c)
        lons.append(lon)
        lats.append(lat)
    return lons, lats


def _ring_metrics(ring: tuple[Point2D, ...]) -> tuple[float, float]:
    lons, lats = _lonlats(ring[:-1])
    area, perimeter = GEOD.polygon_area_perimeter(lons, lats)
    return abs(area), perimeter


def metrics_of(geom_or_feature) -> Metrics:
    """Geodesic area and perimeter/length of a feature's geometry.

    Polygons (and multipolygons) yield both; lines yield a length in
    ``perimeter_m``; points yield neither.
    """
    geom = geom_or_feature.geometry if isinstance(geom_or_feature, Feature) else geom_or_feature
    if isinstance(geom, Point):
        return Metrics()
    if isinstance(geom, LineString):
        lons, lats = _lonlats(geom.coords)
        return Metrics(perimeter_m=GEOD.line_length(lons, lats))
    if isinstance(geom, Polygon):
        area, perimeter = _ring_metrics(geom.ring)
        return Metrics(area_sq_m=area, perimeter_m=perimeter)
    if isinstance(geom, MultiPolygon):
        parts = [_ring_metrics(p.ring) for p in geom.polygons]
        return Metrics(area_sq_m=sum(a for a, _ in parts),
                       perimeter_m=sum(p for _, p in parts))
    raise _unsupported(geom)


@dataclass(frozen=True)
class Selection:
    bbox: BoundingBox
    center: Point2D
    lon: float
    lat: float
    area_sq_m: float | None
    perimeter_m: float | None
    scale: int | None
    feature_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "bounds": self.bbox.as_list(),
            "center": list(self.center),
            "lat": round(self.lat, 6),
            "lng": round(self.lon, 6),
            "area": self.area_sq_m,
            "perimeter": self.perimeter_m,
            "scale": self.scale,
            "features": list(self.feature_ids),
        }


def summarize(features: list[Feature], resolution: float | None = None) -> Selection:
    """Extent, center, summed metrics and implied scale of a selection."""
    bbox = extent_of(features)
    center = bbox.center
    lon, lat = from_display(center)

    area = perimeter = None
    for feature in features:
        metrics = metrics_of(feature)
        if metrics.area_sq_m is not None:
            area = (area or 0.0) + metrics.area_sq_m
        if metrics.perimeter_m is not None:
            perimeter = (perimeter or 0.0) + metrics.perimeter_m

    scale = round(scale_for_resolution(resolution, lat)) if resolution else None
    return Selection(bbox=bbox, center=center, lon=lon, lat=lat,
                     area_sq_m=area, perimeter_m=perimeter, scale=scale,
                     feature_ids=tuple(f.id for f in features if f.id))
