"""Export encoders: TIFF raster, world file, projection file and archive.

Also holds the small single-point sheets (DXF, text report, KML, GeoJSON)
offered for a clicked point.
"""

import io
import json
import zipfile
from dataclasses import dataclass
from xml.sax.saxutils import escape

import ezdxf
from PIL import Image

from .geometry import BoundingBox

# Fixed ESRI-style WKT; exported rasters are always georeferenced in WGS84.
WGS84_PRJ = (
    'GEOGCS["GCS_WGS_1984",DATUM["D_WGS_1984",'
    'SPHEROID["WGS_1984",6378137.0,298.257223563]],'
    'PRIMEM["Greenwich",0.0],UNIT["Degree",0.0174532925199433]]'
)

WORLD_FILE_DECIMALS = 14


def encode_tiff(rgba: bytes, width: int, height: int) -> bytes:
    """Encode a raw RGBA buffer (row-major, top row first) as TIFF."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid raster size {width}x{height}")
    expected = width * height * 4
    if len(rgba) != expected:
        raise ValueError(f"RGBA buffer has {len(rgba)} bytes, expected {expected}")
    image = Image.frombytes("RGBA", (width, height), bytes(rgba))
    buf = io.BytesIO()
    image.save(buf, format="TIFF")
    return buf.getvalue()


@dataclass(frozen=True)
class WorldFile:
    """Six-parameter affine transform, in world-file line order."""
    x_scale: float
    y_rotation: float
    x_rotation: float
    y_scale: float
    top_left_x: float
    top_left_y: float

    def as_tuple(self) -> tuple[float, ...]:
        return (self.x_scale, self.y_rotation, self.x_rotation,
                self.y_scale, self.top_left_x, self.top_left_y)


def world_file_params(extent: BoundingBox, width: int, height: int) -> WorldFile:
    """North-up transform mapping a width x height raster onto *extent*.

    Row 0 is the northern edge, hence the negative y-scale.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid raster size {width}x{height}")
    return WorldFile(
        x_scale=extent.width / width,
        y_rotation=0.0,
        x_rotation=0.0,
        y_scale=-(extent.height / height),
        top_left_x=extent.min_x,
        top_left_y=extent.max_y,
    )


def format_world_file(params: WorldFile) -> str:
    # f-string formatting ignores the locale, so '.' is always the separator
    return "\n".join(f"{v:.{WORLD_FILE_DECIMALS}f}" for v in params.as_tuple()) + "\n"


def build_archive(base_name: str, tiff: bytes, world_file: str,
                  prj: str = WGS84_PRJ) -> bytes:
    """Bundle raster, world file and projection file into a deflate zip."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(f"{base_name}.tif", tiff)
        zf.writestr(f"{base_name}.tfw", world_file)
        zf.writestr(f"{base_name}.prj", prj)
    return buf.getvalue()


def point_dxf(x: float, y: float, z: float, label: str) -> bytes:
    """A DXF holding one POINT on layer ``Points`` and its label on ``Labels``."""
    doc = ezdxf.new("R2010")
    doc.layers.add("Points")
    doc.layers.add("Labels")
    msp = doc.modelspace()
    msp.add_point((x, y, z), dxfattribs={"layer": "Points"})
    msp.add_text(label, height=2.5, dxfattribs={"layer": "Labels"}).set_placement((x, y, z))

    stream = io.StringIO()
    doc.write(stream)
    return stream.getvalue().encode("utf-8")


def point_text(x: float, y: float, z: float, lat: float, lon: float,
               label: str, zone_label: str) -> str:
    return (
        "POINT DATA REPORT\n"
        "-------------------\n"
        f"Label: {label}\n"
        f"Zone: {zone_label}\n"
        "\n"
        "PROJECTED COORDINATES (Meters)\n"
        f"X : {x:.3f} m\n"
        f"Y : {y:.3f} m\n"
        f"Z : {z:.3f} m\n"
        "\n"
        "GEOGRAPHIC COORDINATES (WGS84)\n"
        f"Latitude  : {lat:.7f}\n"
        f"Longitude : {lon:.7f}\n"
    )


def point_kml(lat: float, lon: float, label: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<kml xmlns="http://www.opengis.net/kml/2.2">\n'
        '  <Placemark>\n'
        f'    <name>{escape(label)}</name>\n'
        '    <Point>\n'
        f'      <coordinates>{lon},{lat},0</coordinates>\n'
        '    </Point>\n'
        '  </Placemark>\n'
        '</kml>\n'
    )


def point_geojson(lat: float, lon: float, label: str, z: float | None = None) -> str:
    coords = [lon, lat] if z is None else [lon, lat, z]
    return json.dumps({
        "type": "FeatureCollection",
        "features": [{
            "type": "Feature",
            "properties": {"label": label},
            "geometry": {"type": "Point", "coordinates": coords},
        }],
    }, indent=2)
