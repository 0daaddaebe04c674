import logging

import pytest

from topoma.config import MAX_EXPORT_PX, Settings, load_settings
from topoma.logger import get_logger, setup_logging


def test_defaults(monkeypatch):
    for name in ("HOST", "PORT", "TOPOMA_MAX_EXPORT_PX", "TOPOMA_OFFLINE", "TOPOMA_LOG_DIR"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings == Settings()
    assert settings.max_export_px == MAX_EXPORT_PX == 16384


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("TOPOMA_MAX_EXPORT_PX", "4096")
    monkeypatch.setenv("TOPOMA_OFFLINE", "yes")
    monkeypatch.setenv("TOPOMA_LOG_DIR", str(tmp_path))
    settings = load_settings()
    assert settings.port == 8080
    assert settings.max_export_px == 4096
    assert settings.offline is True
    assert settings.log_dir == tmp_path


def test_bad_number(monkeypatch):
    monkeypatch.setenv("PORT", "eighty")
    with pytest.raises(ValueError):
        load_settings()


def test_log_file(tmp_path):
    log_file = setup_logging(tmp_path / "logs")
    try:
        get_logger("export").debug("render finished")
        for handler in logging.getLogger("topoma").handlers:
            handler.flush()
        assert log_file.parent == tmp_path / "logs"
        assert "topoma.export - DEBUG - render finished" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in logging.getLogger("topoma").handlers:
            handler.close()
        logging.getLogger("topoma").handlers.clear()


def test_logger_names():
    assert get_logger("topoma.tiles").name == "topoma.tiles"
    assert get_logger("conftest").name == "topoma.conftest"
    assert setup_logging() is None
    logging.getLogger("topoma").handlers.clear()
