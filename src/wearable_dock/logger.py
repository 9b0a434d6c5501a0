import logging
import os
from typing import Optional

from termcolor import colored

# per-module colour for routine records; warnings and errors use LEVEL_COLORS
MODULE_COLORS = {
    'main': 'light_grey',
    'usb_monitor': 'light_grey',
    'dock_controller': 'light_green',
    'firmware_updater': 'light_red',
    'storage_mounter': 'cyan',
    'extractor': 'light_blue',
    'archiver': 'light_blue',
    'publisher': 'blue',
    'process_supervisor': 'yellow',
    'status_store': 'green',
}

LEVEL_COLORS = {
    'WARNING': 'yellow',
    'ERROR': 'red',
    'CRITICAL': 'red',
}

LOG_FORMAT = '%(asctime)s.%(msecs)03d: %(levelname)s: %(module)s %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class ColoredFormatter(logging.Formatter):
    """Bold, coloured ``LEVEL: module message`` after a plain millisecond timestamp."""

    module_width = 18

    def _color(self, record) -> str:
        if record.levelno >= logging.WARNING:
            return LEVEL_COLORS.get(record.levelname, 'red')
        return MODULE_COLORS.get(record.module, 'green' if record.levelno == logging.INFO else 'dark_grey')

    def format(self, record):
        body = f"{record.levelname}: {record.module:<{self.module_width}} {record.getMessage()}"
        if record.exc_info:
            body += "\n" + self.formatException(record.exc_info)
        stamp = f"{self.formatTime(record, self.datefmt)}.{int(record.msecs):03d}"
        return f"{stamp}: {colored(body, self._color(record), attrs=['bold'])}"


def configure_logging(level=logging.INFO, log_dir: Optional[str] = None,
                      file_name: str = "dock.log") -> logging.Logger:
    formatter = ColoredFormatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    logger = logging.getLogger()
    logger.setLevel(level)

    # Clean existing handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # File handler (plain text)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(os.path.join(log_dir, file_name))
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(file_handler)

    return logger
