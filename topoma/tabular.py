"""Point import from spreadsheets (XLSX, CSV).

Coordinate columns are found by header name, values are read leniently
(thousands separators, non-breaking spaces, comma decimals) and every pair
is projected from the user-selected zone.  Rows that cannot be read or
projected are skipped, never fatal.
"""

import csv
import io
import math
import re
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePath

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .errors import ParseError, ProjectionError
from .geometry import Feature, Point, clean_attributes
from .logger import get_logger
from .projection import DISPLAY, forward

logger = get_logger(__name__)

X_COLUMN = re.compile(r"^(x|lng|lon|longitude|easting)$", re.IGNORECASE)
Y_COLUMN = re.compile(r"^(y|lat|latitude|northing)$", re.IGNORECASE)
LABEL_COLUMN = re.compile(r"^(id|name|nom|label|point)$", re.IGNORECASE)


@dataclass
class PointImport:
    name: str
    features: list[Feature] = field(default_factory=list)
    skipped: int = 0


def parse_coordinate(value) -> float:
    """Read a coordinate cell; returns NaN when it is not a number.

    ``"1 234 567,89"``, ``"1,234,567.89"`` and ``"1.234.567,89"`` all read
    as 1234567.89.
    """
    if isinstance(value, bool) or value is None:
        return math.nan
    if isinstance(value, (int, float)):
        return float(value)
    # \s also matches non-breaking and narrow no-break spaces
    text = re.sub(r"\s", "", str(value))
    if not text:
        return math.nan
    if "," in text and "." in text:
        # whichever separator comes last is the decimal one
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif text.count(",") > 1:
        text = text.replace(",", "")
    elif text.count(".") > 1:
        text = text.replace(".", "")
    else:
        text = text.replace(",", ".")
    try:
        return float(text)
    except ValueError:
        return math.nan


def _find_column(headers: list[str], pattern: re.Pattern) -> str | None:
    return next((h for h in headers if pattern.match(h.strip())), None)


def _read_xlsx(data: bytes) -> list[dict]:
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise ParseError(f"Invalid spreadsheet: {exc}") from exc
    try:
        sheet = workbook.worksheets[0]
        rows = sheet.iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            return []
        headers = [str(h) if h is not None else "" for h in header]
        return [
            {h: ("" if v is None else v) for h, v in zip(headers, row) if h}
            for row in rows
            if row and any(v not in (None, "") for v in row)
        ]
    finally:
        workbook.close()


def _read_csv(data: bytes) -> list[dict]:
    text = data.decode("utf-8-sig", errors="replace")
    try:
        dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel
    reader = csv.DictReader(io.StringIO(text), dialect=dialect)
    return [row for row in reader if any((v or "").strip() for v in row.values() if isinstance(v, str))]


def rows_to_points(rows: list[dict], zone_code: str) -> tuple[list[Feature], int]:
    """Turn spreadsheet rows into display-CRS point features.

    Raises:
        ParseError: if no X/Y column pair can be identified.
    """
    if not rows:
        return [], 0
    headers = [h for h in rows[0].keys() if h is not None]
    x_key = _find_column(headers, X_COLUMN)
    y_key = _find_column(headers, Y_COLUMN)
    label_key = _find_column(headers, LABEL_COLUMN)
    if x_key is None or y_key is None:
        raise ParseError(f"No X/Y coordinate columns found in {headers}")

    features = []
    skipped = 0
    for row in rows:
        x = parse_coordinate(row.get(x_key))
        y = parse_coordinate(row.get(y_key))
        if math.isnan(x) or math.isnan(y):
            skipped += 1
            continue
        try:
            px, py = forward((x, y), zone_code, DISPLAY)
        except ProjectionError as exc:
            logger.debug(f"Skipping row outside {zone_code}: {exc}")
            skipped += 1
            continue
        label = row.get(label_key) if label_key else None
        label = str(label) if label not in (None, "") else f"P{len(features) + 1}"
        attributes = clean_attributes({k: v for k, v in row.items() if k})
        features.append(Feature(Point(px, py), attributes, label=label,
                                kind="Point", source_crs=zone_code))
    return features, skipped


def load_points(filename: str, data: bytes, zone_code: str) -> PointImport:
    """Read an XLSX or CSV point table expressed in *zone_code*.

    Raises:
        ParseError: unsupported or unreadable file, or no valid point.
    """
    ext = PurePath(filename).suffix.lower()
    if ext in (".xlsx", ".xlsm"):
        rows = _read_xlsx(data)
    elif ext in (".csv", ".txt"):
        rows = _read_csv(data)
    else:
        raise ParseError(f"Unsupported spreadsheet type: {ext or filename}")

    features, skipped = rows_to_points(rows, zone_code)
    if not features:
        raise ParseError("No valid point found.")
    logger.info(f"Loaded {len(features)} point(s) from {filename}, skipped {skipped} row(s)")
    return PointImport(name=filename, features=features, skipped=skipped)
