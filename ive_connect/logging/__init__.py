import logging
import sys

from ive_connect.config import LOG_DATETIME_FORMAT, LOG_FORMAT, LOG_LEVEL, LOGGER_NAME

# Python logs to stderr without a date format by default,
# applications can reconfigure the logger after importing ive_connect
_formatter: logging.Formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATETIME_FORMAT)
_handler: logging.StreamHandler = logging.StreamHandler(sys.stdout)
_handler.setLevel(LOG_LEVEL)
_handler.setFormatter(_formatter)


# modules use logging.getLogger(__name__) and inherit from this logger
logger: logging.Logger = logging.getLogger(LOGGER_NAME)
logger.setLevel(LOG_LEVEL)
logger.addHandler(_handler)
