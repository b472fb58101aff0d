from __future__ import annotations

import logging

from peerlink.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure the root logger once; repeated app factories must not stack handlers.
    global _configured
    if _configured:
        return
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # SQL echo is too noisy at INFO; keep engine logs for warnings only.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True
