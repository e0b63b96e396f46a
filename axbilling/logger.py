# axbilling/logger.py
import logging
import os
from logging.handlers import RotatingFileHandler

from .config import settings

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def get_logger(name: str) -> logging.Logger:
    os.makedirs(settings.log_dir, exist_ok=True)

    logger = logging.getLogger(f"axbilling.{name}")
    logger.setLevel(getattr(logging, settings.log_level, logging.INFO))

    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        handler = RotatingFileHandler(
            os.path.join(settings.log_dir, settings.log_file),
            maxBytes=5 * 1024 * 1024,   # 5 MB
            backupCount=5               # keep 5 logs
        )
        handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(handler)

        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(console)

    return logger
