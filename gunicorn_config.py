"""
Gunicorn config. Preview requests hold a worker thread for up to the
preview timeout (30 s by default) while Street View and Vision calls run,
so workers get threads and a timeout comfortably above that budget.

when_ready logs the resolved cache path and missing keys once the server
is accepting connections.
"""

import logging
import os

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"
workers = int(os.environ.get("WEB_CONCURRENCY", "2"))
threads = int(os.environ.get("GUNICORN_THREADS", "4"))
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "90"))


def when_ready(server):
    """Report configuration problems once gunicorn is listening."""
    logger = logging.getLogger("gunicorn.error")
    from preview_config import DB_PATH
    logger.info("SafeRoute preview service ready (cache db: %s)", DB_PATH)
    for key in ("GOOGLE_MAPS_API_KEY", "GOOGLE_CLOUD_VISION_API_KEY"):
        if not os.environ.get(key):
            logger.error("%s is not set; /api/preview will return 503", key)
