import io
import json
import zipfile

import ezdxf
import pytest
import shapefile
from pyproj import CRS as ProjCRS

from topoma.errors import ParseError
from topoma.geometry import LineString, MultiPolygon, Point, Polygon
from topoma.importers import load_file, parse_geojson, parse_kml, parse_kmz
from topoma.projection import from_display

PARCELS = {
    "type": "FeatureCollection",
    "features": [
        {"type": "Feature", "properties": {"name": "Parcelle 12", "surface": 1.5},
         "geometry": {"type": "Polygon",
                      "coordinates": [[[-6.85, 34.0], [-6.84, 34.0], [-6.84, 34.01],
                                       [-6.85, 34.01], [-6.85, 34.0]]]}},
        {"type": "Feature", "properties": {"nom": "Piste"},
         "geometry": {"type": "MultiLineString",
                      "coordinates": [[[-6.9, 34.0], [-6.8, 34.1]],
                                      [[-6.7, 34.0], [-6.6, 34.1]]]}},
        {"type": "Feature", "properties": {},
         "geometry": {"type": "Point", "coordinates": [-6.84, 34.02]}},
        {"type": "Feature", "properties": {"name": "broken"},
         "geometry": {"type": "Point", "coordinates": [-6.84, 95.0]}},
        {"type": "Feature", "properties": {"name": "empty"}, "geometry": None},
    ],
}

KML = """<?xml version="1.0" encoding="UTF-8"?>
<kml xmlns="http://www.opengis.net/kml/2.2">
  <Document>
    <Placemark>
      <name>Lot A</name>
      <description>Parcelle communale</description>
      <MultiGeometry>
        <Polygon><outerBoundaryIs><LinearRing>
          <coordinates>-6.85,34.0,0 -6.84,34.0,0 -6.84,34.01,0 -6.85,34.0,0</coordinates>
        </LinearRing></outerBoundaryIs></Polygon>
        <Polygon><outerBoundaryIs><LinearRing>
          <coordinates>-6.80,34.0 -6.79,34.0 -6.79,34.01 -6.80,34.0</coordinates>
        </LinearRing></outerBoundaryIs></Polygon>
      </MultiGeometry>
    </Placemark>
    <Placemark>
      <name>Source</name>
      <Point><coordinates>-6.83,34.03,120</coordinates></Point>
    </Placemark>
    <Placemark>
      <name>No geometry</name>
    </Placemark>
  </Document>
</kml>
"""


def _zip(members):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return buf.getvalue()


def test_geojson_feature_collection():
    features, skipped = parse_geojson(json.dumps(PARCELS))
    kinds = [type(f.geometry) for f in features]
    assert kinds == [Polygon, LineString, LineString, Point]
    assert skipped == 2
    assert features[0].label == "Parcelle 12"
    assert features[0].attributes == {"name": "Parcelle 12", "surface": 1.5}
    assert features[1].label == "Piste"
    lon, lat = from_display((features[3].geometry.x, features[3].geometry.y))
    assert (lon, lat) == pytest.approx((-6.84, 34.02))


def test_geojson_bare_geometry_and_multipolygon():
    doc = {"type": "MultiPolygon", "coordinates": [
        [[[-6.85, 34.0], [-6.84, 34.0], [-6.84, 34.01], [-6.85, 34.0]]],
        [[[-6.80, 34.0], [-6.79, 34.0], [-6.79, 34.01], [-6.80, 34.0]]],
    ]}
    features, _ = parse_geojson(json.dumps(doc))
    assert len(features) == 1
    assert isinstance(features[0].geometry, MultiPolygon)
    assert len(features[0].geometry.polygons) == 2


def test_load_geojson_file():
    result = load_file("parcelles.geojson", json.dumps(PARCELS).encode("utf-8"))
    assert result.kind == "GeoJSON"
    assert result.name == "parcelles.geojson"
    assert len(result.features) == 4
    assert result.skipped == 2


@pytest.mark.parametrize("filename, data", [
    ("bad.geojson", b"{not json"),
    ("empty.geojson", b'{"type": "FeatureCollection", "features": []}'),
    ("list.json", b"[1, 2, 3]"),
    ("track.gpx", b"<gpx/>"),
    ("bad.kml", b"<kml><Placemark>"),
    ("bad.kmz", b"not a zip"),
    ("bad.zip", b"not a zip"),
])
def test_unreadable_files(filename, data):
    with pytest.raises(ParseError):
        load_file(filename, data)


@pytest.mark.parametrize("records", [
    [42],
    [{"type": "Feature", "properties": {}, "geometry": "POINT (1 2)"}],
    [{"type": "Feature", "properties": ["a", "b"],
      "geometry": {"type": "Point", "coordinates": [-6.84, 34.02]}}],
])
def test_malformed_geojson_records_are_skipped(records):
    good = {"type": "Feature", "properties": {"name": "ok"},
            "geometry": {"type": "Point", "coordinates": [-6.84, 34.02]}}
    doc = {"type": "FeatureCollection", "features": records + [good]}
    features, skipped = parse_geojson(json.dumps(doc))
    assert [f.label for f in features] == ["ok"]
    assert skipped == 1

    with pytest.raises(ParseError):
        load_file("bad.geojson", json.dumps({"type": "FeatureCollection",
                                             "features": records}).encode("utf-8"))


def test_geojson_features_must_be_an_array():
    with pytest.raises(ParseError):
        parse_geojson(json.dumps({"type": "FeatureCollection", "features": {"a": 1}}))


def test_kml_placemarks():
    features, _ = parse_kml(KML)
    assert len(features) == 2
    lot, source = features
    assert isinstance(lot.geometry, MultiPolygon)
    assert len(lot.geometry.polygons) == 2
    assert lot.label == "Lot A"
    assert lot.attributes["description"] == "Parcelle communale"
    assert isinstance(source.geometry, Point)
    lon, lat = from_display((source.geometry.x, source.geometry.y))
    assert (lon, lat) == pytest.approx((-6.83, 34.03))


def test_kmz_reports_sidecars():
    data = _zip({"doc.kml": KML, "files/icon.png": b"\x89PNG", "styles/extra.kml": "<kml/>"})
    features, _, sidecars = parse_kmz(data)
    assert [f.label for f in features] == ["Lot A", "Source"]
    assert sorted(sidecars) == ["files/icon.png", "styles/extra.kml"]

    with pytest.raises(ParseError):
        parse_kmz(_zip({"readme.txt": "nothing"}))


def _shapefile_zip(tmp_path, shape_type, write, prj=None):
    base = tmp_path / "parcels"
    w = shapefile.Writer(str(base), shapeType=shape_type)
    w.field("name", "C")
    write(w)
    w.close()
    members = {f"parcels.{ext}": (tmp_path / f"parcels.{ext}").read_bytes()
               for ext in ("shp", "shx", "dbf")}
    if prj:
        members["parcels.prj"] = prj
    return _zip(members)


def test_shapefile_zip_in_wgs84(tmp_path):
    def write(w):
        # clockwise outer ring
        w.poly([[[-7.0, 33.0], [-7.0, 34.0], [-6.0, 34.0], [-6.0, 33.0], [-7.0, 33.0]]])
        w.record("Lot 1")

    result = load_file("parcels.zip", _shapefile_zip(tmp_path, shapefile.POLYGON, write))
    assert result.kind == "SHP"
    assert len(result.features) == 1
    feature = result.features[0]
    assert isinstance(feature.geometry, Polygon)
    assert feature.label == "Lot 1"
    lons = [from_display(c)[0] for c in feature.geometry.ring]
    assert min(lons) == pytest.approx(-7.0)
    assert sorted(result.sidecars) == ["parcels.dbf", "parcels.shx"]


def test_shapefile_zip_reprojects_from_prj(tmp_path):
    def write(w):
        w.point(500000.0, 300000.0)
        w.record("Borne")

    prj = ProjCRS.from_epsg(26191).to_wkt()
    data = _shapefile_zip(tmp_path, shapefile.POINT, write, prj=prj)
    feature = load_file("bornes.zip", data).features[0]
    lon, lat = from_display((feature.geometry.x, feature.geometry.y))
    assert lon == pytest.approx(-5.4, abs=0.01)
    assert lat == pytest.approx(33.3, abs=0.01)


def test_zip_without_shapefile():
    with pytest.raises(ParseError):
        load_file("archive.zip", _zip({"notes.txt": "hello"}))


def test_dxf_entities_in_zone():
    doc = ezdxf.new("R2010")
    msp = doc.modelspace()
    msp.add_lwpolyline([(500000, 300000), (500100, 300000), (500100, 300100), (500000, 300100)],
                       close=True, dxfattribs={"layer": "Parcelles"})
    msp.add_line((500000, 300000), (500200, 300200))
    msp.add_point((500050, 300050))
    msp.add_point((5_000_000, 300000))
    msp.add_circle((500000, 300000), 10)
    stream = io.StringIO()
    doc.write(stream)

    result = load_file("plan.dxf", stream.getvalue().encode("utf-8"), "EPSG:26191")
    kinds = [type(f.geometry) for f in result.features]
    assert kinds == [Polygon, LineString, Point]
    assert result.skipped == 1
    assert result.features[0].attributes == {"layer": "Parcelles", "type": "LWPOLYLINE"}
    assert all(f.source_crs == "EPSG:26191" for f in result.features)


def test_truncated_shapefile(tmp_path):
    w = shapefile.Writer(str(tmp_path / "cut"), shapeType=shapefile.POINT)
    w.field("name", "C")
    for i in range(5):
        w.point(-6.84 + i * 0.01, 34.02)
        w.record(f"pt {i}")
    w.close()
    # header plus one whole point record and two bytes of the next one
    shp = (tmp_path / "cut.shp").read_bytes()[:130]
    data = _zip({"cut.shp": shp, "cut.dbf": (tmp_path / "cut.dbf").read_bytes()})
    with pytest.raises(ParseError):
        load_file("cut.zip", data)
