#!/usr/bin/env python3
"""
Microlending Core Entry Point

Starts the FastAPI server with settings from MICROLENDING_* environment
variables (or .env).
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from microlending.api import run_server
from microlending.config import get_config
from microlending.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    logger.info(f"Starting Microlending API on {config.api_host}:{config.api_port} "
                f"(storage: {config.storage_backend}, reporting timezone: {config.reporting_timezone})")

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=False,
            workers=config.api_workers
        )
    except KeyboardInterrupt:
        logger.info("Shutting down Microlending API")
    except Exception:
        logger.exception("Error starting server")
        sys.exit(1)
