# =============================================
# File: app/utils/logging.py
# Purpose: Logging configuration (loguru file sink)
# =============================================
import os

from loguru import logger

_configured = False

def configure_logging() -> None:
    """Attach the optional rotating file sink once per process (LOG_FILE)."""
    global _configured
    if _configured:
        return
    path = os.getenv("LOG_FILE", "").strip()
    if path:
        logger.add(path, rotation="10 MB", level=os.getenv("LOG_LEVEL", "INFO").upper())
    _configured = True
