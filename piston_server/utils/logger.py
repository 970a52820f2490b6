# piston_server/utils/logger.py

import  os
import  sys
import  logging

# Color codes shared with the mosquitto log formatter
COLORS = {
    'DEBUG':    '\033[94m',  # Blue
    'INFO':     '\033[92m',  # Green
    'WARNING':  '\033[93m',  # Yellow
    'ERROR':    '\033[91m',  # Red
    'CRITICAL': '\033[95m',  # Magenta
    'RESET':    '\033[0m',   # Reset color
}

LOG_FORMAT  = "%(asctime)s | %(name)-15s | %(levelname)s | %(threadName)-18s  | %(message)s"
DATE_FORMAT = "%H:%M:%S"

_handler = None


class ColorFormatter(logging.Formatter):
    """Pads and colorizes the level name, leaves the rest of the record alone."""

    def __init__(self, use_color: bool = True):
        super().__init__(LOG_FORMAT, DATE_FORMAT)
        self.use_color = use_color

    def format(self, record):
        original = record.levelname
        padded = f"{original:<7}"
        if self.use_color:
            padded = f"{COLORS.get(original, COLORS['RESET'])}{padded}{COLORS['RESET']}"
        record.levelname = padded
        try:
            return super().format(record)
        finally:
            record.levelname = original


def _get_handler() -> logging.Handler:
    global _handler
    if _handler is None:
        _handler = logging.StreamHandler(sys.stdout)
        _handler.setFormatter(ColorFormatter(use_color=sys.stdout.isatty()))
    return _handler


def getLogger(name: str, level: str = None) -> logging.Logger:
    logger = logging.getLogger(name)
    handler = _get_handler()
    if handler not in logger.handlers:
        logger.addHandler(handler)
    logger.setLevel(level or os.getenv("LOG_LEVEL", "INFO").upper())
    logger.propagate = False
    return logger


def attachLibraryLoggers(*names: str, level: str = "WARNING"):
    """Route third-party loggers (paho, apscheduler) through our handler."""
    for name in names:
        getLogger(name, level)
