# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from .utils.key_formatter import format_key_for_display

FAILURE_LOG_DIR_ENV = "KEY_LIFECYCLE_LOG_DIR"


def setup_failure_logger():
    """Sets up a dedicated JSON logger for failed token refreshes."""
    log_dir = os.getenv(FAILURE_LOG_DIR_ENV, "logs")
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    logger = logging.getLogger('key_lifecycle.refresh_failures')
    logger.setLevel(logging.INFO)

    # Prevent logs from propagating to the library logger
    logger.propagate = False

    # Use a rotating file handler to keep log files from growing too large
    handler = RotatingFileHandler(
        os.path.join(log_dir, 'refresh_failures.log'),
        maxBytes=5*1024*1024,  # 5 MB
        backupCount=2
    )

    # Custom JSON formatter
    class JsonFormatter(logging.Formatter):
        def format(self, record):
            log_record = {
                "timestamp": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "message": record.getMessage()
            }
            return json.dumps(log_record)

    handler.setFormatter(JsonFormatter())

    # Add handler only if it hasn't been added before
    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        logger.addHandler(handler)

    return logger


_failure_logger: Optional[logging.Logger] = None


def get_failure_logger() -> logging.Logger:
    global _failure_logger
    if _failure_logger is None:
        _failure_logger = setup_failure_logger()
    return _failure_logger


def log_refresh_failure(key: str, trigger: str, error: BaseException, deactivated: bool):
    """Logs a structured message for a failed token refresh."""
    log_data = {
        "api_key_ending": format_key_for_display(key),
        "trigger": trigger,
        "error_type": type(error).__name__,
        "error_message": str(error),
        "status_code": getattr(error, "status_code", None),
        "deactivated": deactivated,
    }
    get_failure_logger().error(log_data)
