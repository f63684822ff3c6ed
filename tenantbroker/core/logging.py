from __future__ import annotations

import logging

from tenantbroker.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once per process; repeat calls only adjust the level.
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # botocore logs request details at DEBUG, including signed headers.
    logging.getLogger("botocore").setLevel(max(level, logging.WARNING))
    logging.getLogger("azure").setLevel(max(level, logging.WARNING))
