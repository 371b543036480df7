import logging
import sys

from config import settings


def configure_logging() -> None:
    """Configure root logging once for the API and worker processes.

    Level comes from LOG_LEVEL; noisy third-party loggers stay at WARNING
    unless LOG_LEVEL is DEBUG.
    """
    level_name = (settings.LOG_LEVEL or "INFO").strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    root.handlers.clear()

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    )
    root.addHandler(stream_handler)
    root.setLevel(level)

    if level > logging.DEBUG:
        for noisy in ("uvicorn.access", "sqlalchemy.engine", "stripe", "rq.worker"):
            logging.getLogger(noisy).setLevel(logging.WARNING)
