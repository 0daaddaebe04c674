"""Georeferenced raster export.

The pipeline moves through ``IDLE -> SELECTED -> PROCESSING -> DONE`` and
falls back to ``IDLE`` when an export fails.  While ``PROCESSING`` no other
export or scale change is accepted.
"""

import math
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

from .config import MAX_EXPORT_PX
from .errors import (EmptySelectionError, ExportBusyError, ExportError,
                     ExportStateError, ExportTooLargeError)
from .geocoding import DEFAULT_LOCATION, RequestSequencer
from .geometry import BoundingBox, Selection, extent_of, polygon_rings, summarize
from .logger import get_logger
from .projection import from_display
from .scale import resolution_for_scale, scale_label
from .surface import MapSurface, RenderFrame, clip_mask, composite
from .workspace import Workspace
from .writers import (WGS84_PRJ, WorldFile, build_archive, encode_tiff,
                      format_world_file, world_file_params)

logger = get_logger(__name__)

DEFAULT_SUFFIX = "topoma"

Progress = Callable[[str, float], None]


class ExportState(Enum):
    IDLE = "idle"
    SELECTED = "selected"
    PROCESSING = "processing"
    DONE = "done"


@dataclass(frozen=True)
class ExportTarget:
    """What the user picked: a target id, a scale and the derived summary."""
    target_id: str
    scale: int
    selection: Selection


@dataclass
class ExportArtifact:
    base_name: str
    data: bytes
    width: int
    height: int
    world_file: WorldFile
    created: datetime
    lat: float
    lon: float

    @property
    def file_name(self) -> str:
        return f"{self.base_name}.zip"

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def size_label(self) -> str:
        mb = self.size / (1024 * 1024)
        return f"{self.size / 1024:.0f} KB" if mb < 1 else f"{mb:.2f} MB"

    def to_dict(self) -> dict:
        return {
            "name": f"{self.base_name}.tif",
            "file_name": self.file_name,
            "date": self.created.strftime("%d/%m/%Y"),
            "size": self.size_label,
            "bytes": self.size,
            "width": self.width,
            "height": self.height,
            "coords": f"Lat:{self.lat:.4f}, Lon:{self.lon:.4f}",
        }


def _degrees(value: float) -> int:
    return abs(math.floor(value))


def build_base_name(location_slug: str, label: str, lat: float, lon: float,
                    when: datetime, suffix: str = DEFAULT_SUFFIX) -> str:
    """``{slug}_{scale}_{n|s}{lat}_{e|w}{lon:03d}_{MM.YY}_{suffix}``."""
    ns = "n" if lat >= 0 else "s"
    ew = "e" if lon >= 0 else "w"
    return (f"{location_slug}_{''.join(label.split())}_"
            f"{ns}{_degrees(lat)}_{ew}{_degrees(lon):03d}_"
            f"{when:%m}.{when:%y}_{suffix}")


def export_dimensions(bbox: BoundingBox, resolution: float,
                      limit: int = MAX_EXPORT_PX) -> tuple[int, int]:
    """Pixel size covering *bbox* at *resolution*.

    Raises:
        ExportTooLargeError: when either side exceeds *limit*.
    """
    width = max(1, math.ceil(bbox.width / resolution))
    height = max(1, math.ceil(bbox.height / resolution))
    if width > limit or height > limit:
        raise ExportTooLargeError(width, height, limit)
    return width, height


def _noop(step: str, fraction: float):
    pass


class ExportPipeline:
    """Drives one export at a time against a workspace and a map surface."""

    def __init__(self, workspace: Workspace, surface: MapSurface,
                 max_px: int = MAX_EXPORT_PX, suffix: str = DEFAULT_SUFFIX,
                 locate: Callable[[float, float], str] | None = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.workspace = workspace
        self.surface = surface
        self.max_px = max_px
        self.suffix = suffix
        self.locate = locate
        self.clock = clock
        self.location_slug = DEFAULT_LOCATION
        self._lookups = RequestSequencer()
        self._lock = threading.Lock()
        self._state = ExportState.IDLE
        self._target: ExportTarget | None = None
        self._artifact: ExportArtifact | None = None

    @property
    def state(self) -> ExportState:
        return self._state

    @property
    def target(self) -> ExportTarget | None:
        return self._target

    @property
    def artifact(self) -> ExportArtifact | None:
        return self._artifact

    def ensure_not_busy(self):
        if self._state is ExportState.PROCESSING:
            raise ExportBusyError("An export is already running.")

    def select(self, target_id: str, scale: int) -> Selection:
        """Pick the export target and scale.

        Raises:
            KeyError: unknown target id.
            EmptySelectionError: the target holds no feature.
        """
        self.ensure_not_busy()
        if scale <= 0:
            raise ValueError(f"scale must be positive, got {scale}")
        features = self.workspace.resolve_target(target_id)
        if not features:
            raise EmptySelectionError(f"Layer {target_id!r} is empty.")
        selection = summarize(features, self.surface.view.resolution)
        self._target = ExportTarget(target_id, int(scale), selection)
        self._artifact = None
        self._state = ExportState.SELECTED
        self._refresh_location(selection)
        return selection

    def set_scale(self, scale: int) -> None:
        self.ensure_not_busy()
        if self._target is None:
            raise ExportStateError("Select an area before choosing a scale.")
        if scale <= 0:
            raise ValueError(f"scale must be positive, got {scale}")
        self._target = ExportTarget(self._target.target_id, int(scale), self._target.selection)
        self._artifact = None
        self._state = ExportState.SELECTED

    def _refresh_location(self, selection: Selection) -> None:
        request_id = self._lookups.next()
        self.location_slug = DEFAULT_LOCATION
        if self.locate is None:
            return
        slug = self.locate(selection.lat, selection.lon)
        self._lookups.apply(request_id, self._set_location, slug)

    def _set_location(self, slug: str) -> None:
        self.location_slug = slug or DEFAULT_LOCATION

    def export(self, progress: Progress | None = None, clip: bool = True,
               include_overlays: bool = True) -> ExportArtifact:
        """Render, georeference and zip the selected area.

        Args:
            progress: Called with (step, fraction) as the export advances.
            clip: Mask the raster to the target polygons (if any) instead of
                keeping the whole bounding rectangle.
            include_overlays: Keep drawn/imported vector layers in the raster.

        Raises:
            ExportBusyError: an export is already running.
            ExportStateError: nothing is selected.
            Any failure is re-raised once the pipeline is back to IDLE.
        """
        with self._lock:
            self.ensure_not_busy()
            if self._target is None or self._state not in (ExportState.SELECTED, ExportState.DONE):
                raise ExportStateError("Nothing selected for export.")
            target = self._target
            self._state = ExportState.PROCESSING
            self._artifact = None

        try:
            artifact = self._run(target, progress or _noop, clip, include_overlays)
        except Exception as exc:
            self._state = ExportState.IDLE
            self._target = None
            logger.error(f"Export of {target.target_id!r} failed: {exc}")
            raise
        self._artifact = artifact
        self._state = ExportState.DONE
        logger.info(f"Export ready: {artifact.file_name} ({artifact.size_label})")
        return artifact

    def _run(self, target: ExportTarget, progress: Progress, clip: bool,
             include_overlays: bool) -> ExportArtifact:
        features = self.workspace.resolve_target(target.target_id)
        bbox = extent_of(features)
        progress("extent", 0.1)

        lon, lat = from_display(bbox.center)
        resolution = resolution_for_scale(target.scale, lat)
        width, height = export_dimensions(bbox, resolution, self.max_px)
        logger.info(f"Exporting {target.target_id!r} at 1:{target.scale}: "
                    f"{width}x{height} px, {resolution:.4f} m/px")
        progress("size", 0.2)

        # Pixel grid anchored on the top-left corner of the bbox
        grid = BoundingBox(bbox.min_x, bbox.max_y - height * resolution,
                           bbox.min_x + width * resolution, bbox.max_y)
        rings = []
        if clip:
            rings = [ring for f in features for ring in polygon_rings(f.geometry)]

        with self.surface.temporary_view((width, height), resolution, grid.center) as surface:
            frames: list[RenderFrame] = []
            surface.once_render_complete(frames.append)
            surface.render_sync()
            if not frames or not frames[0].complete:
                raise ExportError("The map did not finish rendering.")
            frame = frames[0]
            progress("render", 0.6)

            mask = None
            if rings:
                mask = clip_mask(frame.view.size,
                                 [[frame.view.to_pixel(c) for c in ring] for ring in rings])
            image = composite(frame, mask, include_overlays)
        progress("composite", 0.7)

        min_lon, min_lat = from_display((grid.min_x, grid.min_y))
        max_lon, max_lat = from_display((grid.max_x, grid.max_y))
        params = world_file_params(BoundingBox(min_lon, min_lat, max_lon, max_lat),
                                   width, height)

        tiff = encode_tiff(image.tobytes(), width, height)
        progress("encode", 0.9)

        created = self.clock()
        base_name = build_base_name(self.location_slug, scale_label(target.scale),
                                    lat, lon, created, self.suffix)
        data = build_archive(base_name, tiff, format_world_file(params), WGS84_PRJ)
        progress("archive", 1.0)

        return ExportArtifact(base_name=base_name, data=data, width=width, height=height,
                              world_file=params, created=created, lat=lat, lon=lon)

    def download(self) -> tuple[str, bytes]:
        if self._state is not ExportState.DONE or self._artifact is None:
            raise ExportStateError("No export is ready for download.")
        return self._artifact.file_name, self._artifact.data

    def reset(self) -> None:
        self.ensure_not_busy()
        self._state = ExportState.IDLE
        self._target = None
        self._artifact = None
        self.location_slug = DEFAULT_LOCATION
