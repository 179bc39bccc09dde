from __future__ import annotations

import logging

from tenantplane.core.config import get_settings


_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once; repeated app factories must not stack handlers.
    global _configured
    resolved = (level or get_settings().log_level or "INFO").upper()
    if _configured:
        logging.getLogger().setLevel(resolved)
        return
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # Keep driver chatter out of request logs unless explicitly debugging.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True
