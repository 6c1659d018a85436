"""Process-wide logging.

``sampler.*`` loggers write at ``LOG_LEVEL`` to stdout and, unless ``LOG_FILE``
is set to an empty string, to a file as well. Chatty libraries are held at the
levels listed in ``QUIET``.
"""

import logging.config
import os
import sys

FORMAT = "%(asctime)s %(levelname)-6s %(name)s:%(lineno)d %(message)s"
DATEFMT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_FILE = "/tmp/sampler.log"

QUIET = {
    "fastapi": "INFO",
    "uvicorn.access": "WARNING",  # one line per request otherwise
    "httpx": "WARNING",
    "xrpl": "WARNING",
}


def logging_config(level: str | None = None, log_file: str | None = None) -> dict:
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if log_file is None:
        log_file = os.getenv("LOG_FILE", DEFAULT_LOG_FILE)

    handlers = {"stdout": {"class": "logging.StreamHandler", "formatter": "plain", "stream": sys.stdout}}
    if log_file:
        handlers["logfile"] = {"class": "logging.FileHandler", "formatter": "plain", "filename": log_file}
    targets = list(handlers)

    loggers = {name: {"level": lvl, "handlers": targets, "propagate": False} for name, lvl in QUIET.items()}
    loggers["sampler"] = {"level": level, "handlers": targets, "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"plain": {"format": FORMAT, "datefmt": DATEFMT}},
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": "WARNING", "handlers": targets},
    }


def setup_logging(level: str | None = None, log_file: str | None = None) -> None:
    logging.config.dictConfig(logging_config(level, log_file))
