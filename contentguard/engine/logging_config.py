"""
Logging setup for the screening pipeline.

Every module logs through logging.getLogger(__name__); this only wires the
root handler and turns down chatty SDK loggers.
"""

import logging
import sys
from typing import Any, Optional

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)-28s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

NOISY_LOGGERS = ("httpx", "httpcore", "google_genai", "groq", "urllib3", "transformers")


def setup_logging(level: str = "INFO") -> None:
    """Configure a single stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO,
              **fields: Optional[Any]) -> None:
    """Emit one `event=NAME k=v ...` line."""
    if not logger.isEnabledFor(level):
        return
    parts = [f"event={event}"]
    for key, value in fields.items():
        parts.append(f"{key}={value}")
    logger.log(level, " ".join(parts))
