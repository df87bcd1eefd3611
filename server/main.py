"""Entry point: starts the NiceGUI server with the trip detection REST API mounted."""

import logging
import logging.handlers
import os

from nicegui import app, ui

from api import router
from database import init_db

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
LOG_DIR = os.environ.get("LOG_DIR", "/data" if os.path.isdir("/data") else ".")
LOG_FILE = os.path.join(LOG_DIR, "trip-detector.log")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(),
        logging.handlers.RotatingFileHandler(
            LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3,
        ),
    ],
)
logger = logging.getLogger("tripdetector")

# Quiet noisy libraries
logging.getLogger("watchfiles").setLevel(logging.WARNING)
logging.getLogger("multipart").setLevel(logging.WARNING)

# Mount the REST endpoints used by the mobile client and the dashboard
app.include_router(router)

# Initialize the database tables on startup
app.on_startup(init_db)

ui.run(
    title="Trip Detector",
    port=int(os.environ.get("PORT", "8080")),
    storage_secret=os.environ.get("STORAGE_SECRET", "change-me-in-production"),
    show=False,
)
