from datetime import datetime

import pytest
import requests
from PIL import Image

from topoma.config import Settings
from topoma.export import ExportPipeline
from topoma.geometry import Polygon
from topoma.projection import to_display
from topoma.server import create_app
from topoma.surface import IDENTITY, Layer, MapSurface, RenderTarget, View
from topoma.workspace import Workspace

RABAT = (-6.84, 34.02)


class SolidLayer(Layer):
    """In-memory basemap: one flat color, remembers every view it rendered."""

    def __init__(self, color=(10, 120, 200, 255), name="solid", opacity=1.0):
        super().__init__(name, opacity)
        self.color = color
        self.renders = []

    def render(self, view):
        self.renders.append(view)
        return RenderTarget(self.name, Image.new("RGBA", view.size, self.color),
                            IDENTITY, self.opacity)


def square(center, half_size):
    cx, cy = center
    return Polygon(((cx - half_size, cy - half_size), (cx + half_size, cy - half_size),
                    (cx + half_size, cy + half_size), (cx - half_size, cy + half_size)))


@pytest.fixture(autouse=True)
def no_network(monkeypatch):
    def blocked(self, method, url, *args, **kwargs):
        raise requests.ConnectionError(f"network disabled in tests: {url}")
    monkeypatch.setattr(requests.sessions.Session, "request", blocked)


@pytest.fixture
def rabat():
    return to_display(RABAT)


@pytest.fixture
def basemap():
    return SolidLayer()


@pytest.fixture
def workspace():
    return Workspace()


@pytest.fixture
def surface(workspace, basemap, rabat):
    return MapSurface(View(rabat, 10.0, (800, 600)), [basemap, *workspace.vector_layers()])


@pytest.fixture
def pipeline(workspace, surface):
    return ExportPipeline(workspace, surface,
                          locate=lambda lat, lon: "rabat",
                          clock=lambda: datetime(2026, 2, 14, 10, 30))


@pytest.fixture
def app():
    return create_app(Settings(offline=True), base_layers=[SolidLayer()])


@pytest.fixture
def client(app):
    return app.test_client()
