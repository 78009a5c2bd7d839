import logging
import os
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
    """Attach a console handler to the root logger once.

    ``level`` defaults to the ``LOG_LEVEL`` environment variable, then INFO. Calling this
    again (tests build many apps) leaves existing handlers alone.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)
