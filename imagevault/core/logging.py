from __future__ import annotations

import logging

from imagevault.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Apply the configured level once; repeated app factory calls must not stack handlers.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # httpx logs every request at INFO; keep provider traffic out of the app log.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
