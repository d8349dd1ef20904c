"""
common.logging_setup

Set up standard logging for the project.
"""
import logging
from typing import Union


def setup_logging(level: Union[int, str] = logging.INFO):
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    # requests/urllib3 are noisy at DEBUG during long catch-ups
    logging.getLogger("urllib3").setLevel(max(level, logging.INFO))
