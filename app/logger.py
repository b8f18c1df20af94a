from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

DATA_DIR = Path(os.environ.get("CARPOOL_DATA_DIR") or Path(__file__).resolve().parent / "data")
LOG_PATH = DATA_DIR / "logs" / "carpool.log"

# Ensure directory exists
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)

logger = logging.getLogger("carpool")
logger.setLevel(logging.INFO)

# Prevent duplicate handlers if imported multiple times
if not logger.handlers:
    file_handler = logging.FileHandler(LOG_PATH, encoding="utf-8")
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))

    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)


def get_logger(name: str) -> logging.Logger:
    """Return a child of the project logger, e.g. ``carpool.fairness``."""
    return logger.getChild(name)
