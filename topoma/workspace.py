"""Session state: drawn features, manual points and imported layers."""

import itertools
from dataclasses import dataclass, field
from pathlib import PurePath

from . import importers, tabular
from .geometry import (Feature, Geometry, LineString, MultiPolygon, Point,
                       Polygon, clean_attributes, geometry_to_shapely)
from .logger import get_logger
from .projection import DISPLAY, WGS84, forward
from .surface import VectorLayer, VectorStyle

logger = get_logger(__name__)

MANUAL = "manual"
POINTS = "points"

TABULAR_EXTENSIONS = {".xlsx", ".xlsm", ".csv", ".txt"}

# drawn kind -> label prefix
DRAW_LABELS = {
    "Polygon": "Polygone {n}",
    "Rectangle": "Rectangle {n}",
    "Line": "Ligne {n}",
    "Point": "P{n}",
}

DRAWN_STYLE = VectorStyle(stroke=(245, 158, 11, 255), width=3)
IMPORTED_STYLE = VectorStyle(stroke=(245, 158, 11, 255), width=2, fill=(245, 158, 11, 13))
POINT_STYLE = VectorStyle()


@dataclass
class LayerInfo:
    id: str
    name: str
    kind: str
    features: list[Feature] = field(default_factory=list)
    label_field: str | None = None
    skipped: int = 0
    sidecars: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "type": self.kind,
                "count": len(self.features), "skipped": self.skipped,
                "label_field": self.label_field}


def _check_kind(kind: str, geometry: Geometry):
    expected = {
        "Polygon": (Polygon, MultiPolygon),
        "Rectangle": (Polygon,),
        "Line": (LineString,),
        "Point": (Point,),
    }.get(kind)
    if expected is None:
        raise ValueError(f"Unknown drawing type: {kind}")
    if not isinstance(geometry, expected):
        raise ValueError(f"{kind} cannot hold a {type(geometry).__name__}")
    if isinstance(geometry, (Polygon, MultiPolygon)) and not geometry_to_shapely(geometry).is_valid:
        raise ValueError(f"{kind} is self-intersecting")


class Workspace:
    """Features of one editing session.

    Drawn polygons, rectangles and lines form the ``manual`` set; drawn and
    typed points live in their own list; every import becomes a layer.
    """

    def __init__(self):
        self.drawn: dict[str, Feature] = {}
        self.points: dict[str, Feature] = {}
        self.layers: dict[str, LayerInfo] = {}
        self._ids = itertools.count(1)
        self._counters = {kind: 1 for kind in DRAW_LABELS}
        self._manual_points = 1

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    # --- Drawing ---------------------------------------------------------

    def add_drawn(self, kind: str, geometry: Geometry) -> Feature:
        _check_kind(kind, geometry)
        label = DRAW_LABELS[kind].format(n=self._counters[kind])
        self._counters[kind] += 1
        feature = Feature(geometry=geometry, id=self._next_id(kind), label=label,
                          layer_id=POINTS if kind == "Point" else MANUAL, kind=kind,
                          source_crs=DISPLAY)
        if kind == "Point":
            self.points[feature.id] = feature
        else:
            self.drawn[feature.id] = feature
        logger.debug(f"Added {kind} {feature.id} ({label})")
        return feature

    def add_point(self, x: float, y: float, zone_code: str = WGS84,
                  label: str | None = None) -> Feature:
        """Add a point typed in *zone_code*.

        Raises:
            ProjectionError: when (x, y) is outside the zone.
        """
        px, py = forward((x, y), zone_code, DISPLAY)
        if label is None:
            label = f"pt {self._manual_points:02d}"
            self._manual_points += 1
        feature = Feature(geometry=Point(px, py), id=self._next_id("Point"), label=label,
                          layer_id=POINTS, kind="Point", source_crs=zone_code,
                          attributes={"x": x, "y": y, "zone": zone_code})
        self.points[feature.id] = feature
        return feature

    # --- Import ------------------------------------------------------------

    def import_file(self, filename: str, data: bytes, zone_code: str = WGS84) -> LayerInfo:
        """Parse a file into a new layer; the workspace is untouched on ParseError."""
        ext = PurePath(filename).suffix.lower()
        if ext in TABULAR_EXTENSIONS:
            result = tabular.load_points(filename, data, zone_code)
            layer = LayerInfo(self._next_id("excel"), result.name, "XLS",
                              result.features, skipped=result.skipped)
        else:
            result = importers.load_file(filename, data, zone_code)
            layer = LayerInfo(self._next_id("layer"), result.name, result.kind,
                              result.features, skipped=result.skipped,
                              sidecars=result.sidecars)
        for i, feature in enumerate(layer.features, start=1):
            feature.id = f"{layer.id}_{i}"
            feature.layer_id = layer.id
        self.layers[layer.id] = layer
        return layer

    def remove_layer(self, layer_id: str) -> None:
        if self.layers.pop(layer_id, None) is None:
            raise KeyError(layer_id)

    # --- Lookup / edit -------------------------------------------------------

    def iter_features(self):
        yield from self.drawn.values()
        yield from self.points.values()
        for layer in self.layers.values():
            yield from layer.features

    def get_feature(self, feature_id: str) -> Feature:
        for feature in self.iter_features():
            if feature.id == feature_id:
                return feature
        raise KeyError(feature_id)

    def modify_feature(self, feature_id: str, geometry: Geometry | None = None,
                       label: str | None = None, attributes: dict | None = None) -> Feature:
        """Edit a feature in place; its id never changes."""
        feature = self.get_feature(feature_id)
        if geometry is not None:
            if feature.kind is not None:
                _check_kind(feature.kind, geometry)
            feature.replace_geometry(geometry)
        if label is not None:
            feature.label = label
        if attributes:
            for key, value in attributes.items():
                feature.set_attribute(key, value)
        return feature

    def delete_feature(self, feature_id: str) -> None:
        if self.drawn.pop(feature_id, None) or self.points.pop(feature_id, None):
            return
        for layer in self.layers.values():
            for i, feature in enumerate(layer.features):
                if feature.id == feature_id:
                    del layer.features[i]
                    return
        raise KeyError(feature_id)

    def resolve_target(self, target_id: str) -> list[Feature]:
        """Features behind an export target.

        ``manual`` selects every drawn feature; otherwise the id names a
        drawn feature, the points set or an imported layer.
        """
        if target_id == MANUAL:
            return list(self.drawn.values())
        if target_id == POINTS:
            return list(self.points.values())
        if target_id in self.drawn:
            return [self.drawn[target_id]]
        if target_id in self.layers:
            return list(self.layers[target_id].features)
        raise KeyError(target_id)

    # --- Attribute table -----------------------------------------------------

    def layer_rows(self, layer_id: str) -> list[dict]:
        rows = []
        for feature in self.resolve_target(layer_id):
            row = {"_featureId": feature.id, "label": feature.label}
            row.update(feature.attributes)
            rows.append(row)
        return rows

    def available_fields(self, layer_id: str) -> list[str]:
        fields: dict[str, None] = {}
        for feature in self.resolve_target(layer_id):
            fields.update(dict.fromkeys(feature.attributes))
        return list(fields)

    def set_label_field(self, layer_id: str, field_name: str) -> None:
        layer = self.layers[layer_id]
        layer.label_field = field_name
        for feature in layer.features:
            value = feature.attributes.get(field_name)
            feature.label = None if value is None else str(value)

    def set_attributes(self, feature_id: str, values: dict) -> Feature:
        feature = self.get_feature(feature_id)
        feature.attributes.update(clean_attributes(values))
        return feature

    # --- Rendering -----------------------------------------------------------

    def vector_layers(self) -> list[VectorLayer]:
        """Overlay layers for the map surface, bottom to top."""
        return [
            VectorLayer("imported", lambda: [f for layer in self.layers.values()
                                             for f in layer.features], IMPORTED_STYLE),
            VectorLayer("drawn", lambda: list(self.drawn.values()), DRAWN_STYLE),
            VectorLayer("points", lambda: list(self.points.values()), POINT_STYLE),
        ]

    def reset(self) -> None:
        self.drawn.clear()
        self.points.clear()
        self.layers.clear()
        self._counters = {kind: 1 for kind in DRAW_LABELS}
        self._manual_points = 1
