#!/usr/bin/env python3
"""TOPOMA - georeferenced map export for Moroccan Lambert zones.

Starts the Flask API and opens the browser on it.
"""

import os
import threading
import webbrowser

from topoma.config import load_settings
from topoma.logger import setup_logging
from topoma.server import create_app

settings = load_settings()


def open_browser():
    webbrowser.open(f"http://127.0.0.1:{settings.port}/api/zones")


if __name__ == "__main__":
    log_file = setup_logging(settings.log_dir)
    if log_file:
        print(f"Logging to {log_file}")
    app = create_app(settings)
    # Only open browser in local development mode
    if settings.host == "127.0.0.1" and os.environ.get("FLASK_ENV") != "production":
        threading.Timer(1.0, open_browser).start()
    app.run(host=settings.host, port=settings.port, debug=False)
