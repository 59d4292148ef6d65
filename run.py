#!/usr/bin/env python3
"""
Mini Loan Ledger Entry Point

Starts the FastAPI server with host, port and logging taken from configuration.
"""

import sys

from mini_loan.api import run_server
from mini_loan.config import get_config
from mini_loan.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format, config.log_file)
    logger.info("Starting Mini Loan API on %s:%s", config.api_host, config.api_port)

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        logger.info("Shutting down Mini Loan API")
    except Exception:
        logger.exception("Error starting server")
        sys.exit(1)
