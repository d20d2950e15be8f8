import logging

from backend.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging() -> logging.Logger:
    level = getattr(logging, LOG_LEVEL, logging.INFO)

    logger = logging.getLogger("dutytrack")
    logger.setLevel(level)

    # Avoid duplicate console handlers on reload
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        ch.setLevel(level)
        logger.addHandler(ch)

    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    base = logging.getLogger("dutytrack")
    return base.getChild(name) if name else base


logger = setup_logging()
