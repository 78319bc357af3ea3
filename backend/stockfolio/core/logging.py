"""
Logging configuration for the application.

One stdout handler on the root logger; modules log through
logging.getLogger(__name__).
"""

import logging
import sys
from typing import Optional

from stockfolio.core.config import settings


def setup_logging(level: Optional[str] = None) -> None:
    """Configure application logging. `level` overrides LOG_LEVEL."""
    level_name = (level or settings.LOG_LEVEL).upper()

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # SQL is only interesting when DB_ECHO is on
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DB_ECHO else logging.WARNING
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)

    if settings.ENVIRONMENT == "production":
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
        # one METRIC line per ledger write
        logging.getLogger("stockfolio.core.metrics").setLevel(logging.WARNING)
