"""Offscreen map surface used to capture export rasters.

Each layer renders into its own ``RenderTarget``: an RGBA image plus the
2D affine matrix ``(a, b, c, d, e, f)`` that maps its pixels onto the
surface (canvas ``setTransform`` order) and an opacity.  Compositing reads
those values directly.
"""

import math
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Sequence

import requests
from PIL import Image, ImageChops, ImageDraw

from .geometry import (BoundingBox, Feature, LineString, MultiPolygon, Point,
                       Polygon)
from .logger import get_logger
from .projection import Point2D
from .tiles import fetch_tiles, tile_resolution

logger = get_logger(__name__)

Matrix = tuple[float, float, float, float, float, float]
IDENTITY: Matrix = (1.0, 0.0, 0.0, 1.0, 0.0, 0.0)


@dataclass(frozen=True)
class View:
    center: Point2D
    resolution: float          # display units per pixel
    size: tuple[int, int]      # (width, height) in pixels

    @property
    def extent(self) -> BoundingBox:
        cx, cy = self.center
        half_w = self.size[0] * self.resolution / 2.0
        half_h = self.size[1] * self.resolution / 2.0
        return BoundingBox(cx - half_w, cy - half_h, cx + half_w, cy + half_h)

    def to_pixel(self, point: Point2D) -> tuple[float, float]:
        extent = self.extent
        return ((point[0] - extent.min_x) / self.resolution,
                (extent.max_y - point[1]) / self.resolution)


@dataclass
class RenderTarget:
    name: str
    image: Image.Image
    transform: Matrix = IDENTITY
    opacity: float = 1.0
    overlay: bool = False


@dataclass
class RenderFrame:
    view: View
    targets: list[RenderTarget] = field(default_factory=list)
    complete: bool = False


class Layer:
    """A map layer able to render itself for a given view."""

    overlay = False

    def __init__(self, name: str, opacity: float = 1.0, visible: bool = True):
        self.name = name
        self.opacity = opacity
        self.visible = visible

    def render(self, view: View) -> RenderTarget:
        raise NotImplementedError


class TileLayer(Layer):
    """Basemap imagery.

    Tiles are stitched at their native zoom and placed with a scale and
    translation matrix instead of being resampled up front.
    """

    def __init__(self, source: str, name: str = "basemap", opacity: float = 1.0,
                 session: requests.Session | None = None, timeout: float = 30,
                 max_tiles: int = 400):
        super().__init__(name, opacity)
        self.source = source
        self.session = session
        self.timeout = timeout
        self.max_tiles = max_tiles

    def render(self, view: View) -> RenderTarget:
        extent = view.extent
        stitched = fetch_tiles(extent, view.resolution, self.source,
                               session=self.session, timeout=self.timeout,
                               max_tiles=self.max_tiles)
        s = tile_resolution(stitched.zoom) / view.resolution
        e = (stitched.bbox.min_x - extent.min_x) / view.resolution
        f = (extent.max_y - stitched.bbox.max_y) / view.resolution
        return RenderTarget(self.name, stitched.image, (s, 0.0, 0.0, s, e, f),
                            self.opacity)


@dataclass(frozen=True)
class VectorStyle:
    stroke: tuple[int, int, int, int] = (34, 197, 94, 255)
    width: int = 2
    fill: tuple[int, int, int, int] | None = None
    point_radius: int = 6
    point_fill: tuple[int, int, int, int] = (37, 99, 235, 255)


class VectorLayer(Layer):
    """Drawn or imported features, rasterized at the view resolution."""

    overlay = True

    def __init__(self, name: str, features: Callable[[], Sequence[Feature]],
                 style: VectorStyle | None = None, opacity: float = 1.0):
        super().__init__(name, opacity)
        self.features = features
        self.style = style or VectorStyle()

    def render(self, view: View) -> RenderTarget:
        image = Image.new("RGBA", view.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)
        for feature in self.features():
            self._draw(draw, feature.geometry, view)
        return RenderTarget(self.name, image, IDENTITY, self.opacity, overlay=True)

    def _draw(self, draw: ImageDraw.ImageDraw, geom, view: View):
        style = self.style
        if isinstance(geom, Point):
            px, py = view.to_pixel((geom.x, geom.y))
            r = style.point_radius
            draw.ellipse((px - r, py - r, px + r, py + r), fill=style.point_fill,
                         outline=(255, 255, 255, 255), width=2)
        elif isinstance(geom, LineString):
            draw.line([view.to_pixel(c) for c in geom.coords], fill=style.stroke,
                      width=style.width)
        elif isinstance(geom, Polygon):
            draw.polygon([view.to_pixel(c) for c in geom.ring], fill=style.fill,
                         outline=style.stroke, width=style.width)
        elif isinstance(geom, MultiPolygon):
            for poly in geom.polygons:
                self._draw(draw, poly, view)
        else:
            raise TypeError(f"Unsupported geometry: {type(geom).__name__}")


class MapSurface:
    """Holds the layer stack and the current view.

    ``render_sync`` renders every visible layer before returning and then
    fires the one-shot render-complete listeners with the finished frame.
    """

    def __init__(self, view: View, layers: Sequence[Layer] = ()):
        self.view = view
        self.layers: list[Layer] = list(layers)
        self._on_complete: list[Callable[[RenderFrame], None]] = []

    def add_layer(self, layer: Layer) -> None:
        self.layers.append(layer)

    def set_view(self, view: View) -> None:
        """Replace size, resolution and center at once; an invalid view changes nothing."""
        w, h = view.size
        if w <= 0 or h <= 0:
            raise ValueError(f"Invalid surface size {view.size}")
        if not (math.isfinite(view.resolution) and view.resolution > 0):
            raise ValueError(f"Invalid resolution {view.resolution}")
        self.view = View((float(view.center[0]), float(view.center[1])),
                         float(view.resolution), (int(w), int(h)))

    def set_size(self, size: tuple[int, int]) -> None:
        self.set_view(View(self.view.center, self.view.resolution, size))

    def set_resolution(self, resolution: float) -> None:
        self.set_view(View(self.view.center, resolution, self.view.size))

    def set_center(self, center: Point2D) -> None:
        self.view = View((float(center[0]), float(center[1])),
                         self.view.resolution, self.view.size)

    def once_render_complete(self, callback: Callable[[RenderFrame], None]) -> None:
        self._on_complete.append(callback)

    def render_sync(self) -> RenderFrame:
        view = self.view
        frame = RenderFrame(view)
        started = time.perf_counter()
        for layer in self.layers:
            if layer.visible:
                frame.targets.append(layer.render(view))
        frame.complete = True
        logger.debug(f"Rendered {len(frame.targets)} layers at {view.size} "
                     f"in {time.perf_counter() - started:.2f}s")

        listeners, self._on_complete = self._on_complete, []
        for callback in listeners:
            callback(frame)
        return frame

    @contextmanager
    def temporary_view(self, size: tuple[int, int], resolution: float,
                       center: Point2D) -> Iterator["MapSurface"]:
        """Switch to an export view; the previous view is always restored."""
        original = self.view
        try:
            self.set_size(size)
            self.set_resolution(resolution)
            self.set_center(center)
            yield self
        finally:
            self.view = original
            self._on_complete.clear()


def _inverse(matrix: Matrix) -> tuple[float, ...]:
    """Inverse of a canvas matrix in PIL's AFFINE coefficient order."""
    a, b, c, d, e, f = matrix
    det = a * d - b * c
    if det == 0:
        raise ValueError(f"Singular layer transform {matrix}")
    return (d / det, -c / det, (c * f - d * e) / det,
            -b / det, a / det, (b * e - a * f) / det)


def _place(target: RenderTarget, size: tuple[int, int]) -> Image.Image:
    image = target.image.convert("RGBA")
    if target.transform == IDENTITY and image.size == size:
        return image.copy()
    return image.transform(size, Image.Transform.AFFINE, _inverse(target.transform),
                           resample=Image.Resampling.BILINEAR)


def clip_mask(size: tuple[int, int], rings: Sequence[Sequence[tuple[float, float]]]) -> Image.Image:
    """8-bit mask, opaque inside the given pixel-space rings."""
    mask = Image.new("L", size, 0)
    draw = ImageDraw.Draw(mask)
    for ring in rings:
        draw.polygon([tuple(p) for p in ring], fill=255)
    return mask


def composite(frame: RenderFrame, mask: Image.Image | None = None,
              include_overlays: bool = True) -> Image.Image:
    """Flatten a rendered frame into one RGBA image.

    Layers are drawn in stack order with their own transform and opacity;
    *mask* (if any) limits every layer to the clip region.
    """
    if not frame.complete:
        raise ValueError("Frame is not fully rendered")
    size = frame.view.size
    out = Image.new("RGBA", size, (0, 0, 0, 0))
    for target in frame.targets:
        if target.overlay and not include_overlays:
            continue
        layer_img = _place(target, size)
        alpha = layer_img.getchannel("A")
        if target.opacity < 1.0:
            opacity = max(0.0, target.opacity)
            alpha = alpha.point(lambda v: round(v * opacity))
        if mask is not None:
            alpha = ImageChops.multiply(alpha, mask)
        layer_img.putalpha(alpha)
        out = Image.alpha_composite(out, layer_img)
    return out
