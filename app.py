"""
Delta server for container image updates.

Devices ask for the delta between the image they run (src) and the image
they update to (dest). The server builds the delta on first request, keeps
it (registry for delta images, local store for patch files) and answers
later requests from the cache.

Architecture:
    1. Device requests GET /api/v3/delta?src=...&dest=... (or /api/v2/delta)
    2. Server validates the references and the bearer token
    3. Server derives the delta key <dest id>:delta-<src id prefix>
    4. Cached delta: returned at once
    5. Otherwise the build lock for the key is taken and the build started
       in the background; the device gets 504 and retries
    6. The build pulls both images, computes the delta, publishes it and
       releases the lock
    7. A retry finds the delta in the cache

Endpoints:
    - GET /ping - Health check
    - GET /api/v3/delta - Delta image name
    - GET /api/v2/delta - Redirect to patch download
    - GET /api/v2/delta/download - Patch bytes

Environment Variables:
    LOG_LEVEL, FLASK_HOST, FLASK_PORT, REGISTRY_HOST, REGISTRY_USERNAME,
    REGISTRY_PASSWORD, JWT_ALGORITHM, JWT_SECRET, JWT_PUBLIC_KEY, BASE_DOMAIN,
    WORK_DIR, LOCK_DIR, STORE_DIR, STORAGE_DRIVER, DELTAIMAGE_BIN,
    COMMAND_TIMEOUT, BUSY_TIMEOUT, WAIT_TIMEOUT, POLL_INTERVAL,
    LOCK_STALE_AFTER, MAX_CONCURRENT_BUILDS, MAX_REFERENCE_LENGTH

Example:
    $ LOG_LEVEL=DEBUG REGISTRY_HOST=registry.example.com python app.py
    $ curl -H "Authorization: Bearer $TOKEN" \\
        "localhost/api/v3/delta?src=registry.example.com/v2/aaaa&dest=registry.example.com/v2/bbbb"
"""

import atexit
import logging

from deltaserver.config import Config
from deltaserver.context import build_context
from deltaserver.routes import create_app

config = Config()

# Configure logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    """Main entry point for the delta server."""
    debug_mode = logger.getEffectiveLevel() == logging.DEBUG
    logger.info(f"Starting delta server on {config.FLASK_HOST}:{config.FLASK_PORT}")
    logger.info(f"Configuration: {config}")
    logger.info(f"Log level: {logging.getLevelName(logger.getEffectiveLevel())}")

    context = build_context(config)
    atexit.register(context.shutdown)
    app = create_app(context)

    if debug_mode:
        logger.info("Flask debug mode enabled")
    # The reloader would start a second process with its own build pool
    app.run(host=config.FLASK_HOST, port=config.FLASK_PORT, debug=debug_mode, use_reloader=False, threaded=True)


if __name__ == "__main__":
    main()
