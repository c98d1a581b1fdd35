"""
Logging utilities.

All modules log to children of the ``statespace`` logger
(``statespace.builder``, ``statespace.inference``, ...).
"""

import logging
from pathlib import Path
from typing import Union

LOGGER_NAME = "statespace"


def setup_logger(level: int = logging.INFO) -> None:
    """
    Set up a ``StreamHandler`` that prints log messages to the terminal.

    The level of the project logger can be adjusted afterwards::

        import logging
        logging.getLogger("statespace").setLevel(logging.WARNING)
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Keep messages away from the root logger to avoid duplicates
    logger.propagate = False

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(name)s - %(levelname)s - %(message)s"))
    logger.addHandler(handler)


def reset_logger() -> None:
    """
    Reset the project logger: level ``NOTSET``, ``propagate=True`` and
    no handlers. Useful before installing a custom logging configuration.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True

    for handler in list(logger.handlers):
        logger.removeHandler(handler)


def add_file_handler(
    path: Union[str, Path],
    level: str,
    logger: str = LOGGER_NAME,
    fmt: str = "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
) -> None:
    """
    Add a file handler to a logger.

    Parameters
    ----------
    path : str or Path
        Absolute path to the log file. Missing parent directories are created.
    level : str
        ``"debug"``, ``"info"``, ``"warning"``, ``"error"`` or ``"critical"``.
    logger : str
        Name of the logger, e.g. ``"statespace.inference"`` to capture only
        sampling messages. Default ``"statespace"``.
    fmt : str
        Format string for :class:`logging.Formatter`.
    """
    path = Path(path)

    if not path.is_absolute():
        raise ValueError("Provided path for logging file handler must be absolute")

    path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(path)
    handler.setLevel(getattr(logging, level.upper()))
    handler.setFormatter(logging.Formatter(fmt, "%Y-%m-%d %H:%M:%S"))

    logging.getLogger(logger).addHandler(handler)
