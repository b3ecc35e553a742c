"""Logging setup shared by the API and background tasks."""

from __future__ import annotations

import logging
from typing import Optional

from shopfront.shared.config import Settings, get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure the root logger from settings.

    Safe to call more than once; later calls only adjust the level.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    root.setLevel(level)

    # SQLAlchemy echo handles its own engine logging
    if not settings.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
