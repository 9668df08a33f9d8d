"""Logging for recoct.

Modules import this instead of the standard library module::

    from recoct import logging
    log = logging.getLogger(__name__)

The standard :mod:`logging` API is re-exported unchanged. recoct installs no
handlers of its own; `setup_custom_logger` attaches a colored console
handler and an optional log file to the ``recoct`` package logger, which
every ``recoct.*`` logger propagates to.
"""
import logging as _logging
import traceback
from logging import *


__all__ = _logging.__all__ + ['setup_custom_logger', 'ColoredLogFormatter', 'log_exception']

PACKAGE_LOGGER = __name__.rpartition('.')[0] or __name__

_RESET = '\033[0m'
_LEVEL_COLORS = {
    DEBUG: '\033[36m',
    INFO: '\033[32m',
    WARNING: '\033[33m',
    ERROR: '\033[31m',
    CRITICAL: '\033[1;37;41m',
}


class ColoredLogFormatter(_logging.Formatter):
    """Formatter that wraps each message in the ANSI color of its level."""

    def formatMessage(self, record):
        color = _LEVEL_COLORS.get(record.levelno)
        if color is not None:
            record.message = f'{color}{record.message}{_RESET}'
        return super().formatMessage(record)


def setup_custom_logger(lfname=None, stream_to_console=True, level=DEBUG):
    """Attach handlers to the ``recoct`` package logger.

    Parameters
    ----------
    lfname : str, optional
        Log file receiving every record, DEBUG included. No file is written
        when omitted.
    stream_to_console : bool, optional
        Print records to stderr with colored messages (default: True).
    level : int or str, optional
        Threshold of the console handler (default: DEBUG).

    Returns
    -------
    logging.Logger
        The package logger.
    """
    logger = _logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(DEBUG)
    if lfname is not None:
        file_handler = _logging.FileHandler(lfname)
        file_handler.setLevel(DEBUG)
        file_handler.setFormatter(_logging.Formatter(
            '%(asctime)s %(levelname)-8s %(name)s:%(lineno)d  %(message)s'))
        logger.addHandler(file_handler)
    if stream_to_console:
        console = _logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(ColoredLogFormatter('%(asctime)s %(message)s', datefmt='%H:%M:%S'))
        logger.addHandler(console)
    return logger


def log_exception(logger, err, fmt='    %s'):
    """Write the traceback of `err` to `logger` at ERROR, one record per line."""
    for chunk in traceback.format_exception(type(err), err, err.__traceback__):
        for line in chunk.rstrip().splitlines():
            logger.error(fmt, line)
