from __future__ import annotations

import logging
from pathlib import Path

FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATEFMT = "%Y-%m-%dT%H:%M:%S"


def setup_logging(level: str | int = logging.WARNING, log_file: str | Path | None = None) -> logging.Logger:
    """Configure the ``quotamon`` logger tree once; later calls only adjust the level."""
    logger = logging.getLogger("quotamon")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter(FORMAT, datefmt=DATEFMT)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if log_file is not None:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
