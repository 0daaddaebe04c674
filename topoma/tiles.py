"""Download and stitch basemap tiles covering a display-CRS extent."""

import io
import math
from dataclasses import dataclass

import requests
from PIL import Image, UnidentifiedImageError

from .geometry import BoundingBox
from .logger import get_logger

logger = get_logger(__name__)

TILE_SIZE = 256
# Half the side of the Web Mercator square, in metres.
ORIGIN_SHIFT = 20037508.342789244
# Resolution (m/px) of zoom level 0.
INITIAL_RESOLUTION = 2 * ORIGIN_SHIFT / TILE_SIZE

# Tile sources the user can choose from
TILE_SOURCES = {
    "google_sat": {
        "url": "https://mt{s}.google.com/vt/lyrs=s&x={x}&y={y}&z={z}",
        "label": "Satellite (Google)",
        "max_zoom": 22,
    },
    "google_hybrid": {
        "url": "https://mt{s}.google.com/vt/lyrs=y&x={x}&y={y}&z={z}",
        "label": "Satellite + Labels",
        "max_zoom": 22,
    },
    "google_roads": {
        "url": "https://mt{s}.google.com/vt/lyrs=m&x={x}&y={y}&z={z}",
        "label": "Roads (Google)",
        "max_zoom": 22,
    },
    "google_terrain": {
        "url": "https://mt{s}.google.com/vt/lyrs=p&x={x}&y={y}&z={z}",
        "label": "Terrain (Google)",
        "max_zoom": 20,
    },
    "osm_standard": {
        "url": "https://tile.openstreetmap.org/{z}/{x}/{y}.png",
        "label": "OSM Standard",
        "max_zoom": 19,
    },
    "osm_hot": {
        "url": "https://tile-{s}.openstreetmap.fr/hot/{z}/{x}/{y}.png",
        "label": "OSM Humanitarian",
        "max_zoom": 19,
    },
    "esri_sat": {
        "url": "https://server.arcgisonline.com/ArcGIS/rest/services/World_Imagery/MapServer/tile/{z}/{y}/{x}",
        "label": "Aerial Imagery (ESRI)",
        "max_zoom": 19,
    },
    "esri_streets": {
        "url": "https://server.arcgisonline.com/ArcGIS/rest/services/World_Street_Map/MapServer/tile/{z}/{y}/{x}",
        "label": "Streets (ESRI)",
        "max_zoom": 19,
    },
    "esri_topo": {
        "url": "https://server.arcgisonline.com/ArcGIS/rest/services/World_Topo_Map/MapServer/tile/{z}/{y}/{x}",
        "label": "Topographic (ESRI)",
        "max_zoom": 19,
    },
    "esri_terrain": {
        "url": "https://server.arcgisonline.com/ArcGIS/rest/services/World_Terrain_Base/MapServer/tile/{z}/{y}/{x}",
        "label": "Terrain (ESRI)",
        "max_zoom": 13,
    },
    "esri_shaded": {
        "url": "https://server.arcgisonline.com/ArcGIS/rest/services/World_Shaded_Relief/MapServer/tile/{z}/{y}/{x}",
        "label": "Shaded Relief (ESRI)",
        "max_zoom": 13,
    },
    "usgs_topo": {
        "url": "https://basemap.nationalmap.gov/arcgis/rest/services/USGSTopo/MapServer/tile/{z}/{y}/{x}",
        "label": "USGS Topographic",
        "max_zoom": 16,
    },
    "opentopo": {
        "url": "https://{s}.tile.opentopomap.org/{z}/{x}/{y}.png",
        "label": "OpenTopo Map",
        "max_zoom": 17,
    },
    # OpenTopoMap contours and hillshade, which cover Morocco down to zoom 17
    "morocco_topo": {
        "url": "https://{s}.tile.opentopomap.org/{z}/{x}/{y}.png",
        "label": "Morocco Topographic",
        "max_zoom": 17,
    },
}

_SUBDOMAINS = {"google": "0123", "osm_hot": "abc", "opentopo": "abc", "morocco_topo": "abc"}


def _subdomain(source: str, tx: int, ty: int) -> str:
    key = "google" if source.startswith("google") else source
    pool = _SUBDOMAINS.get(key, "")
    return pool[(tx + ty) % len(pool)] if pool else ""


def tile_resolution(zoom: int) -> float:
    """Metres per pixel of a tile at *zoom*."""
    return INITIAL_RESOLUTION / (2 ** zoom)


def _tile_span(bbox: BoundingBox, zoom: int) -> tuple[int, int, int, int]:
    """Return (x0, y0, x1, y1) tile indices covering *bbox* at *zoom*."""
    n = 2 ** zoom
    size = 2 * ORIGIN_SHIFT / n
    x0 = int(math.floor((bbox.min_x + ORIGIN_SHIFT) / size))
    x1 = int(math.floor((bbox.max_x + ORIGIN_SHIFT) / size))
    y0 = int(math.floor((ORIGIN_SHIFT - bbox.max_y) / size))
    y1 = int(math.floor((ORIGIN_SHIFT - bbox.min_y) / size))
    clamp = lambda v: max(0, min(n - 1, v))
    return clamp(x0), clamp(y0), clamp(x1), clamp(y1)


def pick_zoom(bbox: BoundingBox, resolution: float, max_zoom: int,
              max_tiles: int = 400) -> int:
    """Coarsest zoom at least as sharp as *resolution*, capped by tile count."""
    wanted = math.ceil(math.log2(INITIAL_RESOLUTION / resolution)) if resolution > 0 else max_zoom
    for z in range(max(0, min(max_zoom, wanted)), 0, -1):
        x0, y0, x1, y1 = _tile_span(bbox, z)
        if (x1 - x0 + 1) * (y1 - y0 + 1) <= max_tiles:
            return z
    return 0


@dataclass
class StitchedTiles:
    image: Image.Image
    bbox: BoundingBox   # exact tile boundaries, display CRS
    zoom: int
    missing: int = 0


def _download(sess: requests.Session, canvas: Image.Image, source: str, zoom: int,
              span: tuple[int, int, int, int], timeout: float) -> int:
    """Paste every tile of *span* onto *canvas*; returns the number missing."""
    cfg = TILE_SOURCES[source]
    x0, y0, x1, y1 = span
    missing = 0
    for ty in range(y0, y1 + 1):
        for tx in range(x0, x1 + 1):
            url = cfg["url"].format(s=_subdomain(source, tx, ty), z=zoom, x=tx, y=ty)
            try:
                resp = sess.get(url, timeout=timeout)
                resp.raise_for_status()
                tile = Image.open(io.BytesIO(resp.content)).convert("RGBA")
            except (requests.RequestException, UnidentifiedImageError, OSError) as exc:
                missing += 1
                logger.debug(f"Tile {zoom}/{tx}/{ty} unavailable: {exc}")
                continue
            canvas.paste(tile, ((tx - x0) * TILE_SIZE, (ty - y0) * TILE_SIZE))
    return missing


def fetch_tiles(bbox: BoundingBox, resolution: float,
                source: str = "google_hybrid",
                session: requests.Session | None = None,
                timeout: float = 30,
                max_tiles: int = 400) -> StitchedTiles:
    """Download tiles covering *bbox* and stitch them into one RGBA image.

    Tiles that fail to download are left transparent.  A session opened
    here is closed before returning; an injected one is left open.
    """
    cfg = TILE_SOURCES[source]
    zoom = pick_zoom(bbox, resolution, cfg["max_zoom"], max_tiles)
    span = _tile_span(bbox, zoom)
    x0, y0, x1, y1 = span
    nx = x1 - x0 + 1
    ny = y1 - y0 + 1

    canvas = Image.new("RGBA", (nx * TILE_SIZE, ny * TILE_SIZE), (0, 0, 0, 0))

    if session is not None:
        missing = _download(session, canvas, source, zoom, span, timeout)
    else:
        with requests.Session() as sess:
            missing = _download(sess, canvas, source, zoom, span, timeout)

    if missing:
        logger.warning(f"{missing} of {nx * ny} tiles missing at zoom {zoom}")

    size = 2 * ORIGIN_SHIFT / (2 ** zoom)
    tiles_bbox = BoundingBox(
        min_x=x0 * size - ORIGIN_SHIFT,
        min_y=ORIGIN_SHIFT - (y1 + 1) * size,
        max_x=(x1 + 1) * size - ORIGIN_SHIFT,
        max_y=ORIGIN_SHIFT - y0 * size,
    )
    return StitchedTiles(image=canvas, bbox=tiles_bbox, zoom=zoom, missing=missing)
