#!/usr/bin/env python3
"""
Microlending Ledger Entry Point

Starts the FastAPI server with settings from LENDING_* environment variables.
"""

import sys

from microlending.config import get_config
from microlending.logging_config import setup_logging
from microlending.api import run_server


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format)
    logger.info(
        "Starting microlending ledger",
        extra={"extra": {"host": config.api_host, "port": config.api_port,
                         "database_url": config.database_url.split("@")[-1]}}
    )

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down microlending ledger")
    except Exception:
        logger.exception("Error starting server")
        sys.exit(1)
