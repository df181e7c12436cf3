import logging, json, sys, time, os

from config import LOG_LEVEL, LOG_FILE


def get_logger(name="trustshelf", level=None, to_file=None):
    """Structured JSON logger shared by every engine module and the API."""
    logger = logging.getLogger(name)
    logger.setLevel(level or getattr(logging, LOG_LEVEL, logging.INFO))
    to_file = to_file or LOG_FILE

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter(
            fmt=json.dumps({
                "ts": "%(asctime)s",
                "level": "%(levelname)s",
                "name": "%(name)s",
                "msg": "%(message)s"
            }),
            datefmt="%Y-%m-%dT%H:%M:%SZ",
        )
        formatter.converter = time.gmtime  # UTC timestamps
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        if to_file:
            os.makedirs(os.path.dirname(to_file) or ".", exist_ok=True)
            file_handler = logging.FileHandler(to_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger
