import logging

from casehub.config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
# Per-request lines from the HTTP stack, only wanted when debugging.
QUIET_LOGGERS = ("httpx", "httpcore")


def get_logger(name: str) -> logging.Logger:
    """
    Return a module-scoped logger at the service-wide LOG_LEVEL.
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
        if level != logging.DEBUG:
            for noisy in QUIET_LOGGERS:
                logging.getLogger(noisy).setLevel(logging.WARNING)
    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger
