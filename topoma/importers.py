"""Vector file import: GeoJSON, KML/KMZ, zipped Shapefile and DXF.

Every parser converts coordinates into the display CRS before building
features.  KML and KMZ are read through geopandas.  A coordinate that
cannot be projected drops the vertex (DXF) or the feature (other formats);
a file that cannot be read at all raises ``ParseError``.
"""

import io
import json
import struct
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePath
from typing import Callable

import ezdxf
import geopandas as gpd
import pandas as pd
import shapefile
from ezdxf.lldxf.const import DXFError
from pyproj import CRS as ProjCRS
from pyproj import Transformer
from pyproj.exceptions import CRSError
from shapely.geometry import mapping

from .errors import ParseError, ProjectionError
from .geometry import (Feature, Geometry, LineString, MultiPolygon, Point,
                       Polygon, clean_attributes)
from .logger import get_logger
from .projection import DISPLAY, WGS84, Point2D, forward, to_display

logger = get_logger(__name__)

# extension -> layer type shown in the layer list
FORMATS = {
    ".geojson": "GeoJSON",
    ".json": "GeoJSON",
    ".kml": "KML",
    ".kmz": "KML",
    ".zip": "SHP",
    ".dxf": "DXF",
}

LABEL_KEYS = ("name", "Name", "NAME", "label", "Label", "nom", "NOM")

# Placemark columns added by the GDAL KML drivers that only describe styling
KML_STYLE_FIELDS = {"timestamp", "begin", "end", "altitudeMode", "tessellate",
                    "extrude", "visibility", "drawOrder", "icon", "snippet"}
KML_RENAMES = {"Name": "name", "Description": "description"}

ToDisplay = Callable[[Point2D], Point2D]


@dataclass
class ImportResult:
    name: str
    kind: str
    features: list[Feature] = field(default_factory=list)
    skipped: int = 0
    sidecars: list[str] = field(default_factory=list)


def _label_from(attributes: dict) -> str | None:
    for key in LABEL_KEYS:
        value = attributes.get(key)
        if value not in (None, ""):
            return str(value)
    return None


# --- GeoJSON ---------------------------------------------------------------

def _polygon(rings, project: ToDisplay) -> Polygon:
    if not rings:
        raise ValueError("Polygon without rings")
    return Polygon(tuple(project(c) for c in rings[0]))


def _geojson_geometries(geom: dict, project: ToDisplay) -> list[Geometry]:
    """Geometries of a GeoJSON geometry object; multi-parts other than
    MultiPolygon are split into one geometry per part."""
    if not isinstance(geom, dict):
        raise ValueError(f"Geometry must be an object, not {type(geom).__name__}")
    gtype = geom.get("type")
    coords = geom.get("coordinates")
    if gtype == "Point":
        return [Point(*project(coords))]
    if gtype == "MultiPoint":
        return [Point(*project(c)) for c in coords]
    if gtype == "LineString":
        return [LineString(tuple(project(c) for c in coords))]
    if gtype == "MultiLineString":
        return [LineString(tuple(project(c) for c in part)) for part in coords]
    if gtype == "Polygon":
        return [_polygon(coords, project)]
    if gtype == "MultiPolygon":
        return [MultiPolygon(tuple(_polygon(p, project) for p in coords))]
    if gtype == "GeometryCollection":
        return [g for part in geom.get("geometries", [])
                for g in _geojson_geometries(part, project)]
    raise ValueError(f"Unsupported GeoJSON geometry type: {gtype}")


def _geojson_features(records: list, project: ToDisplay) -> tuple[list[Feature], int]:
    features = []
    skipped = 0
    for record in records:
        if not isinstance(record, dict):
            logger.debug(f"Skipping non-object feature: {record!r}")
            skipped += 1
            continue
        geom = record.get("geometry")
        properties = record.get("properties") or {}
        if not geom or not isinstance(properties, dict):
            skipped += 1
            continue
        attributes = clean_attributes(properties)
        try:
            geometries = _geojson_geometries(geom, project)
        except (ProjectionError, ValueError, TypeError, IndexError, AttributeError) as exc:
            logger.debug(f"Skipping feature: {exc}")
            skipped += 1
            continue
        for g in geometries:
            features.append(Feature(geometry=g, attributes=dict(attributes),
                                    label=_label_from(attributes)))
    return features, skipped


def _geojson_records(doc) -> list:
    if not isinstance(doc, dict):
        raise ParseError("GeoJSON root must be an object")
    kind = doc.get("type")
    if kind == "FeatureCollection":
        records = doc.get("features") or []
        if not isinstance(records, list):
            raise ParseError("GeoJSON 'features' must be an array")
        return records
    if kind == "Feature":
        return [doc]
    if kind:
        return [{"type": "Feature", "geometry": doc, "properties": {}}]
    raise ParseError("Not a GeoJSON document")


def parse_geojson(text: str) -> tuple[list[Feature], int]:
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Invalid GeoJSON: {exc}") from exc
    return _geojson_features(_geojson_records(doc), to_display)


# --- KML / KMZ -------------------------------------------------------------

def _kml_value(value):
    if hasattr(value, "item"):  # numpy scalar
        value = value.item()
    return value


def _kml_attributes(row, geometry_column: str) -> dict:
    attributes = {}
    for key, value in row.items():
        if key == geometry_column or key in KML_STYLE_FIELDS:
            continue
        if value is None or pd.isna(value) or value == "":
            continue
        attributes[KML_RENAMES.get(key, key)] = _kml_value(value)
    return clean_attributes(attributes)


def _kml_geometries(geom) -> list[Geometry]:
    parts = _geojson_geometries(mapping(geom), to_display)
    # MultiGeometry of polygons only is kept as one feature
    if len(parts) > 1 and all(isinstance(p, Polygon) for p in parts):
        return [MultiPolygon(tuple(parts))]
    return parts


def _read_kml(path: Path) -> tuple[list[Feature], int]:
    try:
        gdf = gpd.read_file(path)
    except Exception as exc:
        raise ParseError(f"Failed to read KML file: {exc}") from exc
    if gdf.crs is not None and gdf.crs.to_epsg() not in (None, 4326):
        gdf = gdf.to_crs(epsg=4326)
    logger.debug(f"  - KML columns: {list(gdf.columns)}")

    features = []
    skipped = 0
    geometry_column = gdf.geometry.name
    for _, row in gdf.iterrows():
        attributes = _kml_attributes(row, geometry_column)
        geom = row[geometry_column]
        if geom is None or geom.is_empty:
            skipped += 1
            continue
        try:
            geometries = _kml_geometries(geom)
        except (ProjectionError, ValueError, TypeError, IndexError) as exc:
            logger.debug(f"Skipping placemark {attributes.get('name')!r}: {exc}")
            skipped += 1
            continue
        for g in geometries:
            features.append(Feature(geometry=g, attributes=dict(attributes),
                                    label=_label_from(attributes)))
    return features, skipped


def parse_kml(data: str | bytes) -> tuple[list[Feature], int]:
    """Read the placemarks of a KML document through geopandas."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "doc.kml"
        path.write_bytes(data)
        return _read_kml(path)


def parse_kmz(data: bytes) -> tuple[list[Feature], int, list[str]]:
    """Read the main KML of a KMZ; other members are reported as sidecars."""
    with tempfile.TemporaryDirectory() as tmpdir:
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as zf:
                names = zf.namelist()
                zf.extractall(tmpdir)
        except zipfile.BadZipFile as exc:
            raise ParseError("Invalid KMZ file - archive appears to be corrupted") from exc
        kml_names = sorted((n for n in names if n.lower().endswith(".kml")),
                           key=lambda n: (PurePath(n).name.lower() != "doc.kml", n))
        if not kml_names:
            raise ParseError("KMZ archive contains no .kml file")
        if len(kml_names) > 1:
            logger.warning(f"  - Multiple KML files found in KMZ, using: {kml_names[0]}")
        features, skipped = _read_kml(Path(tmpdir) / kml_names[0])
    sidecars = [n for n in names if n != kml_names[0] and not n.endswith("/")]
    return features, skipped, sidecars


# --- Shapefile ---------------------------------------------------------------

def _member(zf: zipfile.ZipFile, stem: str, ext: str) -> bytes | None:
    for name in zf.namelist():
        p = PurePath(name)
        if p.stem == stem and p.suffix.lower() == ext:
            return zf.read(name)
    return None


def _shapefile_projector(prj: bytes | None) -> ToDisplay:
    if not prj:
        logger.info("  - No .prj found, assuming WGS84 coordinates")
        return to_display
    try:
        src = ProjCRS.from_wkt(prj.decode("utf-8", errors="replace"))
    except CRSError as exc:
        logger.warning(f"  - Unreadable .prj ({exc}), assuming WGS84 coordinates")
        return to_display
    if src.equals(ProjCRS.from_epsg(4326), ignore_axis_order=True):
        return to_display
    transformer = Transformer.from_crs(src, WGS84, always_xy=True)
    return lambda c: to_display(transformer.transform(c[0], c[1]))


def parse_shapefile_zip(data: bytes) -> tuple[list[Feature], int, list[str]]:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            shp_names = [n for n in zf.namelist() if n.lower().endswith(".shp")]
            if not shp_names:
                raise ParseError("No shapefile (.shp) found in ZIP archive")
            if len(shp_names) > 1:
                logger.warning(f"  - Multiple shapefiles found in ZIP, using first: {shp_names[0]}")
            stem = PurePath(shp_names[0]).stem
            shp = zf.read(shp_names[0])
            dbf = _member(zf, stem, ".dbf")
            shx = _member(zf, stem, ".shx")
            prj = _member(zf, stem, ".prj")
            sidecars = [n for n in zf.namelist() if n != shp_names[0]]
    except zipfile.BadZipFile as exc:
        raise ParseError("Invalid ZIP file - archive appears to be corrupted") from exc

    project = _shapefile_projector(prj)
    members = {"shp": io.BytesIO(shp)}
    if dbf:
        members["dbf"] = io.BytesIO(dbf)
    if shx:
        members["shx"] = io.BytesIO(shx)
    try:
        reader = shapefile.Reader(**members)
        if dbf:
            pairs = ((sr.shape, sr.record.as_dict()) for sr in reader.iterShapeRecords())
        else:
            pairs = ((shape, {}) for shape in reader.iterShapes())
        records = []
        for shape, properties in pairs:
            if shape.shapeType == shapefile.NULL:
                continue
            records.append({"type": "Feature", "geometry": shape.__geo_interface__,
                            "properties": properties})
    except (shapefile.ShapefileException, struct.error, ValueError, IndexError) as exc:
        raise ParseError(f"Failed to read shapefile: {exc}") from exc

    features, skipped = _geojson_features(records, project)
    return features, skipped, sidecars


# --- DXF -------------------------------------------------------------------

def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("cp1252", errors="replace")


def parse_dxf(data: bytes, zone_code: str) -> tuple[list[Feature], int]:
    """Read LINE, LWPOLYLINE, POLYLINE and POINT entities drawn in *zone_code*.

    Vertices outside the zone are dropped; closed polylines become polygons.
    """
    try:
        doc = ezdxf.read(io.StringIO(_decode(data)))
    except DXFError as exc:
        raise ParseError(f"Invalid DXF: {exc}") from exc

    skipped = 0

    def project(points) -> list[Point2D]:
        nonlocal skipped
        result = []
        for p in points:
            try:
                result.append(forward((p[0], p[1]), zone_code, DISPLAY))
            except ProjectionError:
                skipped += 1
        return result

    features = []
    for entity in doc.modelspace():
        kind = entity.dxftype()
        closed = False
        if kind == "LINE":
            points = [entity.dxf.start, entity.dxf.end]
        elif kind == "LWPOLYLINE":
            points = list(entity.get_points("xy"))
            closed = entity.closed
        elif kind == "POLYLINE":
            points = list(entity.points())
            closed = entity.is_closed
        elif kind == "POINT":
            points = [entity.dxf.location]
        else:
            continue

        coords = project(points)
        attributes = {"layer": entity.dxf.layer, "type": kind}
        if kind == "POINT":
            if coords:
                features.append(Feature(Point(*coords[0]), attributes, source_crs=zone_code))
            continue
        try:
            if closed and len(coords) >= 3:
                geom = Polygon(tuple(coords))
            else:
                geom = LineString(tuple(coords))
        except ValueError:
            continue
        features.append(Feature(geom, attributes, source_crs=zone_code))
    return features, skipped


# --- Dispatch --------------------------------------------------------------

def load_file(filename: str, data: bytes, zone_code: str = WGS84) -> ImportResult:
    """Parse an uploaded vector file into display-CRS features.

    Args:
        filename: Original file name; its extension selects the parser.
        data: Raw file content.
        zone_code: CRS of DXF coordinates (other formats carry their own).

    Raises:
        ParseError: unsupported extension, corrupt file, or no usable feature.
    """
    ext = PurePath(filename).suffix.lower()
    kind = FORMATS.get(ext)
    if kind is None:
        raise ParseError(f"Unsupported file type: {ext or filename}")

    logger.info(f"Loading {kind} layer from: {filename}")
    sidecars: list[str] = []
    if ext in (".geojson", ".json"):
        features, skipped = parse_geojson(_decode(data))
        source = WGS84
    elif ext == ".kml":
        features, skipped = parse_kml(data)
        source = WGS84
    elif ext == ".kmz":
        features, skipped, sidecars = parse_kmz(data)
        source = WGS84
    elif ext == ".zip":
        features, skipped, sidecars = parse_shapefile_zip(data)
        source = None
    else:
        features, skipped = parse_dxf(data, zone_code)
        source = zone_code

    if not features:
        raise ParseError(f"{filename} contains no usable feature")
    for feature in features:
        if feature.source_crs is None:
            feature.source_crs = source

    logger.info(f"  - Loaded {len(features)} feature(s), skipped {skipped}")
    return ImportResult(name=filename, kind=kind, features=features,
                        skipped=skipped, sidecars=sidecars)
