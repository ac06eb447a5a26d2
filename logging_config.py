import logging
import os
import sys
from pathlib import Path
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def _parse_level(value, default: int = logging.INFO) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if text in _LEVELS:
        return _LEVELS[text]
    try:
        return int(text)
    except ValueError:
        return default


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure root logging for the service.

    Safe to call more than once; existing root handlers are replaced.
    """
    level = _parse_level(log_level)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_file and log_file.strip():
        path = Path(os.path.expanduser(log_file))
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    formatter = logging.Formatter(DEFAULT_FORMAT)
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
    root.setLevel(level)

    # uvicorn access logs are noisy at DEBUG
    logging.getLogger("uvicorn.access").setLevel(max(level, logging.INFO))
    logging.captureWarnings(True)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
