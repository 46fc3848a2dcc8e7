import logging
import os
from typing import Optional

_NOISY_LOGGERS = ("httpx", "httpcore", "stripe")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure logging once for the API process and the renewal CLI."""
    resolved = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # client libraries log every request at INFO
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, logging.getLogger().level))
