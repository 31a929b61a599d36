from __future__ import annotations

import logging

from taxcalendar.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure the root logger once; app factories and workers may both call this.
    global _configured
    if _configured:
        return
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # SQLAlchemy echoes every statement at INFO; keep it quiet unless debugging.
    logging.getLogger("sqlalchemy.engine").setLevel(max(level, logging.WARNING))
    _configured = True
