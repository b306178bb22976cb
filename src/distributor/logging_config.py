import logging
import logging.config
import os
import sys

# Chatty third-party loggers, held at WARNING regardless of our own level
QUIET = ("xrpl", "httpx", "httpcore", "uvicorn.access")

FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


def build_logging_config(level: str = "INFO", log_file: str | None = None) -> dict:
    """dictConfig for the service: console always, a file only when one is configured.

    Job and task ids are carried in the message ("[job X task Y] ..."), so the
    format only adds time, level and the emitting component.
    """
    level = level.upper()
    handlers: dict[str, dict] = {
        "console": {"class": "logging.StreamHandler", "formatter": "plain", "stream": sys.stdout},
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "formatter": "plain",
            "filename": log_file,
            "mode": "a",
            "delay": True,
        }
    names = list(handlers)

    loggers = {name: {"level": "WARNING", "handlers": names, "propagate": False} for name in QUIET}
    loggers["distributor"] = {"level": level, "handlers": names, "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"plain": {"format": FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"}},
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": "WARNING", "handlers": names},
    }


def setup_logging(conf: dict | None = None) -> dict:
    """Apply the [logging] section of the loaded config. Returns the dictConfig used."""
    section = (conf or {}).get("logging", {})
    config = build_logging_config(section.get("level", "INFO"), section.get("file") or None)
    logging.config.dictConfig(config)
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
    return config
