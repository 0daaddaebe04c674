import io

import pytest
import requests
from PIL import Image

from topoma.geometry import BoundingBox
from topoma.surface import RenderFrame, TileLayer, View, composite
from topoma.tiles import (INITIAL_RESOLUTION, TILE_SIZE, TILE_SOURCES, _tile_span,
                          fetch_tiles, pick_zoom, tile_resolution)


def _png(color):
    buf = io.BytesIO()
    Image.new("RGB", (TILE_SIZE, TILE_SIZE), color).save(buf, format="PNG")
    return buf.getvalue()


class FakeResponse:
    def __init__(self, content=b"", status=200):
        self.content = content
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")


class FakeSession:
    def __init__(self, fail_every=0):
        self.urls = []
        self.fail_every = fail_every
        self.closed = False

    def get(self, url, timeout=None):
        self.urls.append(url)
        if self.fail_every and len(self.urls) % self.fail_every == 0:
            return FakeResponse(status=404)
        return FakeResponse(_png((200, 180, 40)))

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def test_tile_resolution():
    assert tile_resolution(0) == pytest.approx(INITIAL_RESOLUTION)
    assert tile_resolution(1) == pytest.approx(INITIAL_RESOLUTION / 2)


def test_pick_zoom_honours_max_zoom():
    bbox = BoundingBox(0.0, 0.0, 10.0, 10.0)
    assert pick_zoom(bbox, 0.01, max_zoom=19) == 19


def test_pick_zoom_matches_resolution():
    bbox = BoundingBox(0.0, 0.0, 10.0, 10.0)
    assert pick_zoom(bbox, tile_resolution(12) * 1.01, max_zoom=22) == 12


def test_pick_zoom_caps_tile_count():
    morocco = BoundingBox(-2_000_000.0, 2_300_000.0, 0.0, 4_300_000.0)
    z = pick_zoom(morocco, 1.0, max_zoom=22, max_tiles=16)

    def count(zoom):
        x0, y0, x1, y1 = _tile_span(morocco, zoom)
        return (x1 - x0 + 1) * (y1 - y0 + 1)

    assert count(z) <= 16
    assert count(z + 1) > 16


def test_fetch_tiles_stitches_canvas():
    bbox = BoundingBox(-760_000.0, 4_030_000.0, -755_000.0, 4_035_000.0)
    session = FakeSession()
    stitched = fetch_tiles(bbox, tile_resolution(14) * 1.01, "osm_standard", session=session)
    nx = stitched.image.size[0] // TILE_SIZE
    ny = stitched.image.size[1] // TILE_SIZE
    assert len(session.urls) == nx * ny
    assert all("/14/" in url for url in session.urls)
    assert stitched.missing == 0
    assert stitched.zoom == 14
    assert stitched.bbox.contains(bbox)
    assert stitched.image.getpixel((1, 1)) == (200, 180, 40, 255)


def test_fetch_tiles_counts_missing():
    bbox = BoundingBox(-760_000.0, 4_030_000.0, -740_000.0, 4_050_000.0)
    session = FakeSession(fail_every=2)
    stitched = fetch_tiles(bbox, tile_resolution(14) * 1.01, "osm_standard", session=session)
    assert stitched.missing == len(session.urls) // 2
    assert stitched.missing > 0
    assert stitched.image.getpixel((1, 1)) == (200, 180, 40, 255)


def test_fetch_tiles_closes_only_its_own_session(monkeypatch):
    bbox = BoundingBox(-760_000.0, 4_030_000.0, -755_000.0, 4_035_000.0)
    opened = []

    def make_session():
        opened.append(FakeSession())
        return opened[-1]

    monkeypatch.setattr(requests, "Session", make_session)
    fetch_tiles(bbox, tile_resolution(14) * 1.01, "osm_standard")
    assert len(opened) == 1 and opened[0].closed

    injected = FakeSession()
    fetch_tiles(bbox, tile_resolution(14) * 1.01, "osm_standard", session=injected)
    assert not injected.closed
    assert len(opened) == 1


@pytest.mark.parametrize("key", ["esri_terrain", "esri_shaded", "usgs_topo", "morocco_topo"])
def test_relief_and_topographic_basemaps(key):
    cfg = TILE_SOURCES[key]
    assert cfg["label"]
    assert 0 < cfg["max_zoom"] <= 22
    assert all(p in cfg["url"] for p in ("{x}", "{y}", "{z}"))


def test_every_source_can_render_a_tile():
    session = FakeSession()
    bbox = BoundingBox(-760_000.0, 4_030_000.0, -759_000.0, 4_031_000.0)
    for key in TILE_SOURCES:
        stitched = fetch_tiles(bbox, tile_resolution(12), key, session=session)
        assert stitched.missing == 0
    assert len(TILE_SOURCES) == 14
    assert not any("{" in url for url in session.urls)


def test_tile_layer_covers_view():
    view = View((-757_500.0, 4_032_500.0), tile_resolution(14) * 0.6, (64, 64))
    layer = TileLayer("osm_standard", session=FakeSession())
    target = layer.render(view)
    zoom = pick_zoom(view.extent, view.resolution, TILE_SOURCES["osm_standard"]["max_zoom"])
    a, b, c, d, e, f = target.transform
    assert zoom == 15
    assert a == pytest.approx(tile_resolution(15) / view.resolution)
    assert (b, c) == (0.0, 0.0) and a == d
    assert e <= 0 and f <= 0

    frame = RenderFrame(view, [target], complete=True)
    out = composite(frame)
    assert out.getpixel((0, 0))[3] == 255
    assert out.getpixel((63, 63))[3] == 255
