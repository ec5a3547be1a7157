#!/usr/bin/env python3
"""
Pawnshop Settlement Core Entry Point

Starts the FastAPI server with settings taken from PAWNSHOP_* environment
variables (or .env).
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from pawnshop_core.api import run_server
from pawnshop_core.config import get_config
from pawnshop_core.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger.info(f"Starting pawnshop settlement API on {config.api_host}:{config.api_port}")
    logger.info(f"Storage backend: {config.database_url.split('://')[0]}")

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down pawnshop settlement API")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
