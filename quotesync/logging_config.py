"""
Logging setup shared by the publisher and client entry points.
"""

import logging
import logging.handlers
import os
import sys
from typing import Optional

DETAILED_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)-20s | %(funcName)-20s | %(message)s'
SIMPLE_FORMAT = '%(asctime)s | %(levelname)-8s | %(message)s'

REQUEST_LOGGER_NAME = 'request_processor'


def setup_logging(log_path: Optional[str] = None, dump_log: bool = False, level: int = logging.INFO) -> Optional[str]:
    """Configure root, request and console logging.

    When ``dump_log`` is set the root logger writes to ``log_path`` through a
    rotating handler and HTTP request lines go to ``request_processing.log``
    next to it. The console handler is always installed. Returns the log
    directory, or ``None`` when nothing is written to disk.
    """

    detailed_formatter = logging.Formatter(DETAILED_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')
    simple_formatter = logging.Formatter(SIMPLE_FORMAT, datefmt='%H:%M:%S')

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    log_dir = None
    request_logger = logging.getLogger(REQUEST_LOGGER_NAME)
    for handler in request_logger.handlers[:]:
        request_logger.removeHandler(handler)

    if dump_log and log_path:
        log_dir = os.path.dirname(os.path.abspath(log_path))
        os.makedirs(log_dir, exist_ok=True)

        main_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5
        )
        main_handler.setLevel(logging.DEBUG)
        main_handler.setFormatter(detailed_formatter)
        root_logger.addHandler(main_handler)

        request_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, "request_processing.log"),
            maxBytes=5*1024*1024,  # 5MB
            backupCount=3
        )
        request_handler.setLevel(logging.INFO)
        request_handler.setFormatter(detailed_formatter)
        request_logger.addHandler(request_handler)
        request_logger.setLevel(logging.INFO)
        request_logger.propagate = False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(simple_formatter)
    root_logger.addHandler(console_handler)

    return log_dir
