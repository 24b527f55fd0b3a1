"""
Web SSH Gateway entry point

Starts the HTTP/WebSocket server for the browser file manager and terminal.
"""

import logging
import os
import sys

from web_ssh_gateway.server import main as server_main


def setup_logging():
    """Configure logging"""
    log_level = os.getenv("WEB_SSH_LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def main():
    setup_logging()
    logger = logging.getLogger(__name__)

    logger.info("Starting web SSH gateway...")

    try:
        server_main(sys.argv[1] if len(sys.argv) > 1 else None)
    except KeyboardInterrupt:
        logger.info("Server interrupted by user")
    except Exception as e:
        logger.error(f"Server failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
