from __future__ import annotations

import logging

from .settings import settings


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger (RSC_LOG_LEVEL, default INFO)."""
    numeric_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Silence noisy loggers
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
