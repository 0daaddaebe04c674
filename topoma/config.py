"""Runtime settings read from the environment.

``HOST`` and ``PORT`` keep their plain names so ``run.py`` works the same
way behind a process manager; everything else is ``TOPOMA_``-prefixed.
"""

import os
from dataclasses import dataclass
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent

MAX_EXPORT_PX = 16384


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 5050
    tile_source: str = "google_hybrid"
    max_export_px: int = MAX_EXPORT_PX
    user_agent: str = "Topoma/1.0 (georeferenced map export)"
    http_timeout: float = 15.0
    export_suffix: str = "topoma"
    log_dir: Path | None = None
    offline: bool = False


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """Build a :class:`Settings` from the current environment.

    Raises:
        ValueError: if a numeric variable cannot be parsed.
    """
    log_dir = os.environ.get("TOPOMA_LOG_DIR")
    return Settings(
        host=os.environ.get("HOST", Settings.host),
        port=int(os.environ.get("PORT", Settings.port)),
        tile_source=os.environ.get("TOPOMA_TILE_SOURCE", Settings.tile_source),
        max_export_px=int(os.environ.get("TOPOMA_MAX_EXPORT_PX", MAX_EXPORT_PX)),
        user_agent=os.environ.get("TOPOMA_USER_AGENT", Settings.user_agent),
        http_timeout=float(os.environ.get("TOPOMA_HTTP_TIMEOUT", Settings.http_timeout)),
        export_suffix=os.environ.get("TOPOMA_EXPORT_SUFFIX", Settings.export_suffix),
        log_dir=Path(log_dir) if log_dir else None,
        offline=_env_bool("TOPOMA_OFFLINE", False),
    )
