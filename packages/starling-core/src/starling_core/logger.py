import logging
import logging.config
import os
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


def _stderr_handler() -> logging.Handler:
    # Logs go to stderr so `--json` output on stdout stays parseable.
    return RichHandler(console=Console(stderr=True), show_path=False)


def get_logging_config(level: Optional[str] = None) -> dict:
    level_name = (level or os.getenv("LOG_LEVEL", "WARNING")).upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": "%(name)s: %(message)s"},
        },
        "handlers": {
            "console": {
                "()": "starling_core.logger._stderr_handler",
                "formatter": "default",
            },
        },
        "loggers": {
            "starling_core": {"handlers": ["console"], "level": level_name},
            "starling_cli": {"handlers": ["console"], "level": level_name},
            "httpx": {"handlers": ["console"], "level": "WARNING"},
        },
    }


def setup_logging(level: Optional[str] = None) -> None:
    logging.config.dictConfig(get_logging_config(level))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
