from datetime import datetime
import logging
import logging.config
import os

from pytz import timezone


LOGGER_NAME = "knowledge_engine"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVEL_MARKERS = {logging.WARNING: "⚠️ ", logging.ERROR: "⛔ ", logging.CRITICAL: "⛔ "}


class ZonedFormatter(logging.Formatter):
    """Renders timestamps in the configured TIMEZONE and marks warnings and errors."""

    def __init__(self, tz_name: str, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.tz = timezone(tz_name)

    def formatTime(self, record, datefmt=None):
        stamp = datetime.fromtimestamp(record.created, self.tz)
        return stamp.strftime(datefmt) if datefmt else stamp.isoformat()

    def format(self, record):
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            # bad %-args from a library logger
            message = str(record.msg)
        record.msg = _LEVEL_MARKERS.get(record.levelno, "") + message
        record.args = ()
        return super().format(record)


def _log_level() -> int:
    return logging.DEBUG if os.getenv("LOG_LEVEL", "info").lower() == "debug" else logging.INFO


def setup_logging() -> logging.Logger:
    """Configure console and file logging and return the application logger.

    Log files go to ``$ROOT_DIR/logs/knowledge_engine.log`` (ROOT_DIR defaults to the
    working directory). LOG_LEVEL=debug enables debug output, including httpx request logs.
    """
    level = _log_level()
    log_dir = os.path.join(os.getenv("ROOT_DIR", os.getcwd()), "logs")
    os.makedirs(log_dir, exist_ok=True)

    formatter = {
        "()": ZonedFormatter,
        "format": LOG_FORMAT,
        "datefmt": DATE_FORMAT,
        "tz_name": os.getenv("TIMEZONE", "Europe/Berlin"),
    }
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"zoned": formatter},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "zoned",
                "level": level,
                "stream": "ext://sys.stdout",
            },
            "file": {
                "class": "logging.FileHandler",
                "formatter": "zoned",
                "level": level,
                "filename": os.path.join(log_dir, f"{LOGGER_NAME}.log"),
                "encoding": "utf-8",
            },
        },
        "root": {"handlers": ["console", "file"], "level": level},
    })

    logging.getLogger("httpx").setLevel(logging.DEBUG if level == logging.DEBUG else logging.WARNING)
    return logging.getLogger(LOGGER_NAME)
