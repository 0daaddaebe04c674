"""Exception taxonomy shared by the projection, import and export layers."""


class TopomaError(Exception):
    """Base class for every error raised by the mapping core."""


class ProjectionError(TopomaError):
    """Coordinate outside a CRS validity envelope, or a failed transform."""


class InvalidLatitudeError(TopomaError, ValueError):
    """Latitude too close to a pole for a scale/resolution conversion."""


class ParseError(TopomaError):
    """An imported file could not be read."""


class ExportError(TopomaError):
    """Raster export aborted."""


class ExportTooLargeError(ExportError):
    """Requested raster exceeds the pixel ceiling."""

    def __init__(self, width: int, height: int, limit: int):
        super().__init__(
            f"Export of {width}x{height} px exceeds the {limit} px limit.")
        self.width = width
        self.height = height
        self.limit = limit


class EmptySelectionError(ExportError):
    """Export or extent requested against zero features."""


class ExportBusyError(ExportError):
    """An export is already in progress."""


class ExportStateError(ExportError):
    """Operation not allowed in the pipeline's current state."""
