import json

import pytest

from conftest import square
from topoma.errors import ParseError, ProjectionError
from topoma.geometry import LineString, Point, Polygon
from topoma.workspace import MANUAL, POINTS

GEOJSON = json.dumps({
    "type": "FeatureCollection",
    "features": [
        {"type": "Feature", "properties": {"name": "A", "code": 7},
         "geometry": {"type": "Point", "coordinates": [-6.84, 34.02]}},
        {"type": "Feature", "properties": {"name": "B", "code": 9},
         "geometry": {"type": "Point", "coordinates": [-6.83, 34.03]}},
    ],
}).encode("utf-8")


def test_drawn_labels_follow_kind_counters(workspace, rabat):
    x, y = rabat
    first = workspace.add_drawn("Polygon", square(rabat, 100))
    second = workspace.add_drawn("Polygon", square((x + 500, y), 100))
    line = workspace.add_drawn("Line", LineString(((x, y), (x + 10, y))))
    rect = workspace.add_drawn("Rectangle", square((x, y + 500), 50))
    point = workspace.add_drawn("Point", Point(x, y))

    assert [f.label for f in (first, second, line, rect, point)] == [
        "Polygone 1", "Polygone 2", "Ligne 1", "Rectangle 1", "P1"]
    assert len({f.id for f in (first, second, line, rect, point)}) == 5
    assert workspace.resolve_target(MANUAL) == [first, second, line, rect]
    assert workspace.resolve_target(POINTS) == [point]
    assert workspace.resolve_target(first.id) == [first]


def test_drawn_geometry_must_match_kind(workspace, rabat):
    with pytest.raises(ValueError):
        workspace.add_drawn("Line", square(rabat, 100))
    with pytest.raises(ValueError):
        workspace.add_drawn("Circle", square(rabat, 100))


def test_self_intersecting_polygon_is_rejected(workspace):
    bowtie = Polygon(((0, 0), (10, 10), (10, 0), (0, 10)))
    with pytest.raises(ValueError):
        workspace.add_drawn("Polygon", bowtie)


def test_manual_points(workspace):
    a = workspace.add_point(500000, 300000, "EPSG:26191")
    b = workspace.add_point(-6.84, 34.02)
    named = workspace.add_point(-6.8, 34.0, label="Puits")
    assert [a.label, b.label, named.label] == ["pt 01", "pt 02", "Puits"]
    assert a.attributes == {"x": 500000, "y": 300000, "zone": "EPSG:26191"}
    with pytest.raises(ProjectionError):
        workspace.add_point(5_000_000, 300000, "EPSG:26191")


def test_modify_and_delete_keep_ids(workspace, rabat):
    feature = workspace.add_drawn("Polygon", square(rabat, 100))
    fid = feature.id
    edited = workspace.modify_feature(fid, square(rabat, 200), label="Lot 4",
                                      attributes={"owner": "Commune"})
    assert edited.id == fid
    assert edited.label == "Lot 4"
    assert edited.attributes == {"owner": "Commune"}
    with pytest.raises(ValueError):
        workspace.modify_feature(fid, LineString(((0, 0), (1, 1))))

    workspace.delete_feature(fid)
    with pytest.raises(KeyError):
        workspace.get_feature(fid)
    with pytest.raises(KeyError):
        workspace.delete_feature(fid)


def test_import_creates_layer(workspace):
    layer = workspace.import_file("wells.geojson", GEOJSON)
    assert layer.id.startswith("layer_")
    assert [f.id for f in layer.features] == [f"{layer.id}_1", f"{layer.id}_2"]
    assert all(f.layer_id == layer.id for f in layer.features)
    assert workspace.resolve_target(layer.id) == layer.features
    assert workspace.available_fields(layer.id) == ["name", "code"]

    rows = workspace.layer_rows(layer.id)
    assert rows[0] == {"_featureId": f"{layer.id}_1", "label": "A", "name": "A", "code": 7}

    workspace.set_label_field(layer.id, "code")
    assert [f.label for f in layer.features] == ["7", "9"]

    workspace.set_attributes(f"{layer.id}_2", {"depth": 12.5})
    assert workspace.get_feature(f"{layer.id}_2").attributes["depth"] == 12.5


def test_tabular_import_creates_excel_layer(workspace):
    data = b"name,x,y\nB1,500000,300000\nB2,500100,300100\n"
    layer = workspace.import_file("bornes.csv", data, "EPSG:26191")
    assert layer.id.startswith("excel_")
    assert layer.kind == "XLS"
    assert [f.label for f in layer.features] == ["B1", "B2"]


def test_failed_import_leaves_workspace_unchanged(workspace):
    workspace.import_file("wells.geojson", GEOJSON)
    before = dict(workspace.layers)
    with pytest.raises(ParseError):
        workspace.import_file("broken.geojson", b"{")
    assert workspace.layers == before


def test_remove_layer_and_unknown_targets(workspace):
    layer = workspace.import_file("wells.geojson", GEOJSON)
    workspace.remove_layer(layer.id)
    with pytest.raises(KeyError):
        workspace.resolve_target(layer.id)
    with pytest.raises(KeyError):
        workspace.remove_layer(layer.id)


def test_vector_layers_follow_workspace(workspace, rabat):
    layers = workspace.vector_layers()
    assert [layer.name for layer in layers] == ["imported", "drawn", "points"]
    assert layers[1].features() == []
    feature = workspace.add_drawn("Polygon", square(rabat, 100))
    assert layers[1].features() == [feature]


def test_reset(workspace, rabat):
    workspace.add_drawn("Polygon", square(rabat, 100))
    workspace.add_point(-6.84, 34.02)
    workspace.import_file("wells.geojson", GEOJSON)
    workspace.reset()
    assert list(workspace.iter_features()) == []
    assert workspace.add_drawn("Polygon", square(rabat, 100)).label == "Polygone 1"
    assert workspace.add_point(-6.84, 34.02).label == "pt 01"
