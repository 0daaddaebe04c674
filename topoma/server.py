"""Flask application exposing drawing, import and raster export under /api."""

import io
import re
from dataclasses import dataclass

from flask import Blueprint, Flask, current_app, jsonify, request, send_file

from . import geocoding
from .config import Settings, load_settings
from .errors import (ExportBusyError, ExportStateError, ExportTooLargeError,
                     TopomaError)
from .export import ExportPipeline
from .geometry import Feature, Point, geometry_from_geojson, geometry_to_geojson, metrics_of
from .logger import get_logger
from .projection import (DISPLAY, WGS84, forward, from_display, get_crs,
                         project_to_zone, registered, to_display, zones)
from .scale import (EXPORT_SCALES, MAP_SCALES, format_area, format_area_parts,
                    format_length)
from .surface import Layer, MapSurface, TileLayer, View
from .tiles import TILE_SOURCES, tile_resolution
from .workspace import Workspace
from .writers import point_dxf, point_geojson, point_kml, point_text

logger = get_logger(__name__)

# Initial live view: Morocco at zoom 6
DEFAULT_CENTER = (-7.09, 31.79)
DEFAULT_ZOOM = 6
DEFAULT_SIZE = (1280, 800)

POINT_FORMATS = {
    "dxf": "application/dxf",
    "txt": "text/plain",
    "kml": "application/vnd.google-earth.kml+xml",
    "geojson": "application/geo+json",
}

api = Blueprint("api", __name__, url_prefix="/api")


@dataclass
class Session:
    settings: Settings
    workspace: Workspace
    surface: MapSurface
    pipeline: ExportPipeline


def _session() -> Session:
    return current_app.extensions["topoma"]


def _status_for(exc: TopomaError) -> int:
    if isinstance(exc, ExportTooLargeError):
        return 413
    if isinstance(exc, (ExportBusyError, ExportStateError)):
        return 409
    return 400


@api.errorhandler(TopomaError)
def topoma_error(exc: TopomaError):
    status = _status_for(exc)
    return jsonify({"error": str(exc)}), status


def _not_found(what: str, key):
    return jsonify({"error": f"Unknown {what}: {key}"}), 404


def _feature_dict(feature: Feature) -> dict:
    metrics = metrics_of(feature)
    return {
        "id": feature.id,
        "label": feature.label,
        "layer": feature.layer_id,
        "type": feature.kind,
        "geometry": geometry_to_geojson(feature.geometry),
        "attributes": feature.attributes,
        "area": metrics.area_sq_m,
        "perimeter": metrics.perimeter_m,
    }


# --- Reference data ----------------------------------------------------------

@api.route("/zones")
def list_zones():
    return jsonify({
        "zones": [{"code": c.code, "label": c.label, "type": c.kind} for c in zones()],
        "crs": [c.code for c in registered()],
        "export_scales": [{"label": label, "value": value} for label, value in EXPORT_SCALES],
        "map_scales": [{"label": label, "value": value} for label, value in MAP_SCALES],
        "tile_sources": {key: src["label"] for key, src in TILE_SOURCES.items()},
    })


@api.route("/reproject", methods=["POST"])
def reproject():
    data = request.get_json(force=True)
    try:
        x = float(data["x"])
        y = float(data["y"])
        src = str(data.get("from", WGS84))
        dst = str(data.get("to", DISPLAY))
    except (KeyError, TypeError, ValueError) as exc:
        return jsonify({"error": f"Invalid parameters: {exc}"}), 400
    rx, ry = forward((x, y), src, dst)
    return jsonify({"x": rx, "y": ry, "crs": dst})


@api.route("/view", methods=["POST"])
def set_view():
    """Mirror the browser map so selections report the scale on screen."""
    session = _session()
    session.pipeline.ensure_not_busy()
    surface = session.surface
    data = request.get_json(force=True)
    try:
        lon = float(data["lon"])
        lat = float(data["lat"])
        resolution = float(data["resolution"])
        width = int(data.get("width", surface.view.size[0]))
        height = int(data.get("height", surface.view.size[1]))
    except (KeyError, TypeError, ValueError) as exc:
        return jsonify({"error": f"Invalid parameters: {exc}"}), 400
    view = View(to_display((lon, lat)), resolution, (width, height))
    try:
        surface.set_view(view)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"center": list(surface.view.center),
                    "resolution": surface.view.resolution,
                    "size": list(surface.view.size)})


# --- Features ----------------------------------------------------------------

@api.route("/features", methods=["GET"])
def list_features():
    workspace = _session().workspace
    return jsonify({"features": [_feature_dict(f) for f in workspace.iter_features()]})


@api.route("/features", methods=["POST"])
def add_feature():
    data = request.get_json(force=True)
    try:
        kind = str(data["type"])
        geometry = geometry_from_geojson(data["geometry"])
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        return jsonify({"error": f"Invalid feature: {exc}"}), 400
    try:
        feature = _session().workspace.add_drawn(kind, geometry)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(_feature_dict(feature)), 201


@api.route("/features/<feature_id>", methods=["PUT"])
def modify_feature(feature_id):
    data = request.get_json(force=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Expected a JSON object"}), 400
    try:
        geometry = geometry_from_geojson(data["geometry"]) if data.get("geometry") else None
        label = data.get("label")
        attributes = data.get("attributes")
        if attributes is not None and not isinstance(attributes, dict):
            raise ValueError("attributes must be an object")
    except (TypeError, ValueError, AttributeError) as exc:
        return jsonify({"error": f"Invalid feature: {exc}"}), 400
    try:
        feature = _session().workspace.modify_feature(
            feature_id, geometry, None if label is None else str(label), attributes)
    except KeyError:
        return _not_found("feature", feature_id)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(_feature_dict(feature))


@api.route("/features/<feature_id>", methods=["DELETE"])
def delete_feature(feature_id):
    try:
        _session().workspace.delete_feature(feature_id)
    except KeyError:
        return _not_found("feature", feature_id)
    return jsonify({"deleted": feature_id})


@api.route("/points", methods=["POST"])
def add_point():
    data = request.get_json(force=True)
    try:
        x = float(data["x"])
        y = float(data["y"])
        zone = str(data.get("zone", WGS84))
        label = data.get("label")
    except (KeyError, TypeError, ValueError) as exc:
        return jsonify({"error": f"Invalid parameters: {exc}"}), 400
    feature = _session().workspace.add_point(x, y, zone, None if label is None else str(label))
    return jsonify(_feature_dict(feature)), 201


@api.route("/points/<feature_id>/download")
def download_point(feature_id):
    """Point sheet as DXF, plain-text report, KML or GeoJSON."""
    session = _session()
    fmt = request.args.get("format", "dxf").lower()
    zone = request.args.get("zone", WGS84)
    if fmt not in POINT_FORMATS:
        return jsonify({"error": f"format must be one of {list(POINT_FORMATS)}"}), 400
    try:
        feature = session.workspace.get_feature(feature_id)
    except KeyError:
        return _not_found("point", feature_id)
    if not isinstance(feature.geometry, Point):
        return jsonify({"error": f"{feature_id} is not a point"}), 400

    lon, lat = from_display((feature.geometry.x, feature.geometry.y))
    crs = get_crs(zone)
    x, y = project_to_zone(lon, lat, crs.code)
    z = 0.0
    if not session.settings.offline:
        z = geocoding.fetch_elevation(lat, lon, timeout=session.settings.http_timeout,
                                     user_agent=session.settings.user_agent)

    label = feature.label or feature_id
    if fmt == "dxf":
        body = point_dxf(x, y, z, label)
    elif fmt == "txt":
        body = point_text(x, y, z, lat, lon, label, crs.label).encode("utf-8")
    elif fmt == "kml":
        body = point_kml(lat, lon, label).encode("utf-8")
    else:
        body = point_geojson(lat, lon, label, z).encode("utf-8")

    return send_file(
        io.BytesIO(body),
        download_name=f"{re.sub(r'[^A-Za-z0-9_-]+', '_', label)}.{fmt}",
        as_attachment=True,
        mimetype=POINT_FORMATS[fmt],
    )


# --- Layers ------------------------------------------------------------------

@api.route("/import", methods=["POST"])
def import_layer():
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return jsonify({"error": "No file uploaded"}), 400
    zone = request.form.get("zone", WGS84)
    get_crs(zone)
    layer = _session().workspace.import_file(upload.filename, upload.read(), zone)
    return jsonify(layer.to_dict()), 201


@api.route("/layers")
def list_layers():
    layers = _session().workspace.layers.values()
    return jsonify({"layers": [layer.to_dict() for layer in layers]})


@api.route("/layers/<layer_id>", methods=["DELETE"])
def delete_layer(layer_id):
    try:
        _session().workspace.remove_layer(layer_id)
    except KeyError:
        return _not_found("layer", layer_id)
    return jsonify({"deleted": layer_id})


@api.route("/layers/<layer_id>/features")
def layer_features(layer_id):
    workspace = _session().workspace
    try:
        rows = workspace.layer_rows(layer_id)
        fields = workspace.available_fields(layer_id)
    except KeyError:
        return _not_found("layer", layer_id)
    return jsonify({"layer": layer_id, "fields": fields, "rows": rows})


@api.route("/layers/<layer_id>/label", methods=["PUT"])
def set_layer_label(layer_id):
    data = request.get_json(force=True)
    try:
        field_name = str(data["field"])
    except (KeyError, TypeError) as exc:
        return jsonify({"error": f"Invalid parameters: {exc}"}), 400
    try:
        _session().workspace.set_label_field(layer_id, field_name)
    except KeyError:
        return _not_found("layer", layer_id)
    return jsonify({"layer": layer_id, "label_field": field_name})


# --- Export ------------------------------------------------------------------

@api.route("/select", methods=["POST"])
def select():
    data = request.get_json(force=True)
    try:
        target = str(data["target"])
        scale = int(data["scale"])
        length_unit = data.get("length_unit", "m")
        area_unit = data.get("area_unit", "ha")
    except (KeyError, TypeError, ValueError) as exc:
        return jsonify({"error": f"Invalid parameters: {exc}"}), 400
    try:
        selection = _session().pipeline.select(target, scale)
    except KeyError:
        return _not_found("target", target)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    result = selection.to_dict()
    try:
        if selection.area_sq_m is not None:
            result["area_label"] = format_area(selection.area_sq_m, area_unit)
            result["area_parts"] = format_area_parts(selection.area_sq_m)
        if selection.perimeter_m is not None:
            result["perimeter_label"] = format_length(selection.perimeter_m, length_unit)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(result)


@api.route("/scale", methods=["POST"])
def set_scale():
    data = request.get_json(force=True)
    try:
        scale = int(data["scale"])
    except (KeyError, TypeError, ValueError) as exc:
        return jsonify({"error": f"Invalid parameters: {exc}"}), 400
    pipeline = _session().pipeline
    try:
        pipeline.set_scale(scale)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"scale": scale, "state": pipeline.state.value})


@api.route("/export", methods=["POST"])
def export():
    data = request.get_json(silent=True) or {}
    clip = bool(data.get("clip", True))
    overlays = bool(data.get("overlays", True))
    pipeline = _session().pipeline

    def progress(step: str, fraction: float):
        logger.debug(f"Export {step}: {fraction:.0%}")

    try:
        artifact = pipeline.export(progress, clip=clip, include_overlays=overlays)
    except KeyError as exc:
        return _not_found("target", exc.args[0] if exc.args else "")
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    result = artifact.to_dict()
    result["world_file"] = list(artifact.world_file.as_tuple())
    return jsonify(result)


@api.route("/download")
def download():
    file_name, data = _session().pipeline.download()
    return send_file(
        io.BytesIO(data),
        download_name=file_name,
        as_attachment=True,
        mimetype="application/zip",
    )


@api.route("/reset", methods=["POST"])
def reset():
    session = _session()
    session.pipeline.reset()
    session.workspace.reset()
    return jsonify({"state": session.pipeline.state.value})


# --- Lookups -----------------------------------------------------------------

@api.route("/search")
def search():
    session = _session()
    query = request.args.get("q", "")
    if session.settings.offline:
        return jsonify({"results": []})
    results = geocoding.search_places(query, timeout=session.settings.http_timeout,
                                      user_agent=session.settings.user_agent)
    return jsonify({"results": [r.to_dict() for r in results]})


@api.route("/elevation")
def elevation():
    session = _session()
    try:
        lat = float(request.args["lat"])
        lon = float(request.args["lon"])
    except (KeyError, ValueError) as exc:
        return jsonify({"error": f"Invalid parameters: {exc}"}), 400
    if session.settings.offline:
        return jsonify({"elevation": 0.0})
    value = geocoding.fetch_elevation(lat, lon, timeout=session.settings.http_timeout,
                                      user_agent=session.settings.user_agent)
    return jsonify({"elevation": value})


def create_app(settings: Settings | None = None,
               base_layers: list[Layer] | None = None) -> Flask:
    """Build the Flask app and its single editing session.

    Args:
        settings: Runtime settings, read from the environment when omitted.
        base_layers: Layers under the drawn/imported overlays; defaults to the
            configured basemap tile source.
    """
    settings = settings or load_settings()

    if base_layers is None:
        base_layers = [TileLayer(settings.tile_source, timeout=settings.http_timeout)]

    workspace = Workspace()
    view = View(to_display(DEFAULT_CENTER), tile_resolution(DEFAULT_ZOOM), DEFAULT_SIZE)
    surface = MapSurface(view, [*base_layers, *workspace.vector_layers()])

    locate = None
    if not settings.offline:
        def locate(lat: float, lon: float) -> str:
            return geocoding.reverse_geocode(lat, lon, timeout=settings.http_timeout,
                                             user_agent=settings.user_agent)

    pipeline = ExportPipeline(workspace, surface, max_px=settings.max_export_px,
                              suffix=settings.export_suffix, locate=locate)

    app = Flask(__name__)
    app.extensions["topoma"] = Session(settings, workspace, surface, pipeline)
    app.register_blueprint(api)
    logger.info(f"Topoma ready: basemap {settings.tile_source}, "
                f"export limit {settings.max_export_px} px")
    return app
