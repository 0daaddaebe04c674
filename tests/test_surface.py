import pytest
from PIL import Image

from conftest import SolidLayer, square
from topoma.geometry import Feature
from topoma.surface import (IDENTITY, MapSurface, RenderFrame, RenderTarget,
                            VectorLayer, View, _inverse, clip_mask, composite)


def test_view_extent_and_pixels():
    view = View((1000.0, 2000.0), 2.0, (100, 50))
    assert view.extent.as_list() == [900.0, 1950.0, 1100.0, 2050.0]
    assert view.to_pixel((900.0, 2050.0)) == (0.0, 0.0)
    assert view.to_pixel((1000.0, 2000.0)) == (50.0, 25.0)


def test_render_sync_fires_listeners_once():
    surface = MapSurface(View((0.0, 0.0), 1.0, (4, 4)), [SolidLayer()])
    frames = []
    surface.once_render_complete(frames.append)
    surface.render_sync()
    surface.render_sync()
    assert len(frames) == 1
    assert frames[0].complete
    assert [t.name for t in frames[0].targets] == ["solid"]


def test_temporary_view_restores_on_error():
    surface = MapSurface(View((0.0, 0.0), 1.0, (4, 4)), [SolidLayer()])
    original = surface.view
    with pytest.raises(RuntimeError):
        with surface.temporary_view((40, 30), 0.5, (10.0, 10.0)) as s:
            assert s.view.size == (40, 30)
            raise RuntimeError("boom")
    assert surface.view == original


def test_invalid_surface_size():
    surface = MapSurface(View((0.0, 0.0), 1.0, (4, 4)))
    with pytest.raises(ValueError):
        surface.set_size((0, 10))
    with pytest.raises(ValueError):
        surface.set_resolution(0)


def test_composite_applies_transform_and_opacity():
    view = View((0.0, 0.0), 1.0, (8, 8))
    red = Image.new("RGBA", (4, 4), (255, 0, 0, 255))
    frame = RenderFrame(view, [RenderTarget("shifted", red, (1.0, 0.0, 0.0, 1.0, 2.0, 2.0), 0.5)],
                        complete=True)
    out = composite(frame)
    assert out.size == (8, 8)
    assert out.getpixel((0, 0))[3] == 0
    r, g, b, a = out.getpixel((4, 4))
    assert r == 255
    assert a == pytest.approx(128, abs=1)


def test_composite_requires_complete_frame():
    frame = RenderFrame(View((0.0, 0.0), 1.0, (2, 2)))
    with pytest.raises(ValueError):
        composite(frame)


def test_clip_mask_limits_layers():
    view = View((0.0, 0.0), 1.0, (10, 10))
    frame = RenderFrame(view, [SolidLayer((0, 255, 0, 255)).render(view)], complete=True)
    mask = clip_mask(view.size, [[(0, 0), (4, 0), (4, 9), (0, 9)]])
    out = composite(frame, mask)
    assert out.getpixel((2, 5))[3] == 255
    assert out.getpixel((8, 5))[3] == 0


def test_overlays_can_be_suppressed(rabat):
    view = View(rabat, 10.0, (50, 50))
    vectors = VectorLayer("drawn", lambda: [Feature(square(rabat, 100))])
    frame = RenderFrame(view, [vectors.render(view)], complete=True)
    assert frame.targets[0].overlay
    assert composite(frame).getbbox() is not None
    assert composite(frame, include_overlays=False).getbbox() is None


def test_inverse_matrix():
    assert _inverse(IDENTITY) == (1.0, 0.0, 0.0, 0.0, 1.0, 0.0)
    assert _inverse((2.0, 0.0, 0.0, 2.0, 10.0, 20.0)) == (0.5, 0.0, -5.0, 0.0, 0.5, -10.0)
    with pytest.raises(ValueError):
        _inverse((0.0, 0.0, 0.0, 0.0, 1.0, 1.0))
