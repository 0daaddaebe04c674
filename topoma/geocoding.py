"""Best-effort network lookups: reverse geocoding, place search, elevation.

None of these may block an export: every failure is logged and replaced by
a default (``"location"``, an empty list, ``0.0``).
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import Callable

import requests

from .logger import get_logger

logger = get_logger(__name__)

NOMINATIM_URL = "https://nominatim.openstreetmap.org"
ELEVATION_URL = "https://api.open-elevation.com/api/v1/lookup"

DEFAULT_USER_AGENT = "Topoma/1.0 (georeferenced map export)"

DEFAULT_LOCATION = "location"
FALLBACK_PLACE = "maroc"
MIN_QUERY_LENGTH = 3

# Address keys tried in order when naming an export
PLACE_KEYS = ["village", "town", "city", "municipality", "county"]


@dataclass
class SearchResult:
    place_id: int
    display_name: str
    lat: float
    lon: float

    def to_dict(self) -> dict:
        return {"place_id": self.place_id, "display_name": self.display_name,
                "lat": self.lat, "lon": self.lon}


def slugify(name: str) -> str:
    """Lowercase ASCII slug: whitespace to ``_``, anything else dropped."""
    ascii_name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode()
    slug = re.sub(r"\s+", "_", ascii_name.strip().lower())
    return re.sub(r"[^a-z0-9_]", "", slug)


def _get(url: str, params: dict, session: requests.Session | None,
         timeout: float, user_agent: str | None = None) -> dict | list:
    getter = session.get if session is not None else requests.get
    headers = {"User-Agent": user_agent or DEFAULT_USER_AGENT}
    resp = getter(url, params=params, headers=headers, timeout=timeout)
    resp.raise_for_status()
    return resp.json()


def reverse_geocode(lat: float, lon: float, session: requests.Session | None = None,
                    timeout: float = 15, user_agent: str | None = None) -> str:
    """Slug of the place name at (lat, lon), ``"location"`` on failure."""
    try:
        data = _get(f"{NOMINATIM_URL}/reverse",
                    {"format": "json", "lat": lat, "lon": lon, "zoom": 12,
                     "addressdetails": 1},
                    session, timeout, user_agent)
    except (requests.RequestException, ValueError) as exc:
        logger.warning(f"Reverse geocoding failed for ({lat}, {lon}): {exc}")
        return DEFAULT_LOCATION

    address = data.get("address") if isinstance(data, dict) else None
    if not address:
        return DEFAULT_LOCATION
    name = next((address[k] for k in PLACE_KEYS if address.get(k)), FALLBACK_PLACE)
    return slugify(name) or DEFAULT_LOCATION


def search_places(query: str, session: requests.Session | None = None,
                  timeout: float = 15, limit: int = 5,
                  user_agent: str | None = None) -> list[SearchResult]:
    """Free-text place search; short queries return nothing."""
    if not query or len(query.strip()) < MIN_QUERY_LENGTH:
        return []
    try:
        data = _get(f"{NOMINATIM_URL}/search",
                    {"format": "json", "q": query, "limit": limit, "addressdetails": 1},
                    session, timeout, user_agent)
    except (requests.RequestException, ValueError) as exc:
        logger.warning(f"Place search failed for {query!r}: {exc}")
        return []

    results = []
    for item in data if isinstance(data, list) else []:
        try:
            results.append(SearchResult(
                place_id=int(item.get("place_id", 0)),
                display_name=str(item.get("display_name", "")),
                lat=float(item["lat"]),
                lon=float(item["lon"]),
            ))
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.debug(f"Skipping malformed search result: {item}")
    return results


def fetch_elevation(lat: float, lon: float, session: requests.Session | None = None,
                    timeout: float = 15, user_agent: str | None = None) -> float:
    """Ground elevation in metres, ``0.0`` when the service is unavailable."""
    try:
        data = _get(ELEVATION_URL, {"locations": f"{lat},{lon}"}, session, timeout,
                    user_agent)
        return float(data["results"][0]["elevation"])
    except (requests.RequestException, ValueError, KeyError, IndexError, TypeError) as exc:
        logger.warning(f"Elevation lookup failed for ({lat}, {lon}), defaulting to 0: {exc}")
        return 0.0


class RequestSequencer:
    """Hands out monotonic request ids so stale responses can be dropped.

    A result is applied only when its id is still the newest one issued.
    """

    def __init__(self):
        self._latest = 0

    def next(self) -> int:
        self._latest += 1
        return self._latest

    def is_current(self, request_id: int) -> bool:
        return request_id == self._latest

    def apply(self, request_id: int, callback: Callable, *args) -> bool:
        if not self.is_current(request_id):
            logger.debug(f"Dropping stale response for request {request_id}")
            return False
        callback(*args)
        return True
