import logging
import sys
from typing import Optional

from pythonjsonlogger import jsonlogger

from fleet_rental.core.environment import get_log_level


def setup_logging(level: Optional[str] = None):
    """
    Configures centralized JSON logging on stdout.
    Keeps SQLAlchemy quiet unless something goes wrong.
    """
    # 1. Get the root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level or get_log_level())

    # 2. Prevent duplicate logs by removing existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # 3. Create StreamHandler for stdout
    log_handler = logging.StreamHandler(sys.stdout)

    # 4. Define JSON Format
    formatter = jsonlogger.JsonFormatter(
        fmt='%(asctime)s %(levelname)s %(name)s %(threadName)s %(message)s',
        datefmt='%Y-%m-%dT%H:%M:%SZ'
    )
    log_handler.setFormatter(formatter)
    root_logger.addHandler(log_handler)

    # 5. Library-Specific Verbosity Management
    logging.getLogger("fleet_rental").setLevel(level or get_log_level())

    # Engine/pool chatter only at WARNING
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

    root_logger.info("Logging infrastructure initialized successfully.")
