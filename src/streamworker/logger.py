"""
Logging for Stream Worker.

Console output is colored, file output is plain and rotated. Records from
supervisors and pipelines carry the channel (``app/name``) and, when known,
the pipeline generation, so the interleaved output of many channels stays
readable.
"""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

ROOT_LOGGER = 'stream_worker'

RESET = "\033[0m"
GRAY = "\033[90m"
CYAN = "\033[96m"
BLUE = "\033[94m"

LEVEL_COLORS = {
    logging.DEBUG: GRAY,
    logging.INFO: "\033[92m",
    logging.WARNING: "\033[93m",
    logging.ERROR: "\033[91m",
    logging.CRITICAL: "\033[95m",
}


def _component(record: logging.LogRecord) -> str:
    """``stream_worker.pipeline`` -> ``pipeline``."""
    if record.name.startswith(ROOT_LOGGER + '.'):
        return record.name[len(ROOT_LOGGER) + 1:]
    return record.name


def _context(record: logging.LogRecord) -> str:
    channel = getattr(record, 'channel', None)
    if not channel:
        return ''
    generation = getattr(record, 'generation', None)
    return f"{channel} g{generation}" if generation else channel


class ColoredFormatter(logging.Formatter):
    """Console format: ``12:00:01 INFO     pipeline   [live/alpha] message``."""

    def format(self, record: logging.LogRecord) -> str:
        color = LEVEL_COLORS.get(record.levelno, RESET)
        stamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        context = _context(record)

        line = (
            f"{GRAY}{stamp}{RESET} {color}{record.levelname:8}{RESET} "
            f"{BLUE}{_component(record):10}{RESET} "
        )
        if context:
            line += f"{CYAN}[{context}]{RESET} "
        line += record.getMessage()

        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


class FileFormatter(logging.Formatter):
    """Pipe-separated format for the rotating log file."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        line = (
            f"{stamp} | {record.levelname:8} | {_component(record):10} | "
            f"{_context(record) or '-':24} | {record.getMessage()}"
        )
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


class ChannelLoggerAdapter(logging.LoggerAdapter):
    """Stamps ``channel`` (and optionally ``generation``) on every record."""

    def __init__(self, logger: logging.Logger, channel: str, generation: Optional[int] = None):
        super().__init__(logger, {'channel': channel, 'generation': generation})

    def process(self, msg, kwargs):
        extra = kwargs.setdefault('extra', {})
        for key, value in self.extra.items():
            extra.setdefault(key, value)
        return msg, kwargs


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the ``stream_worker`` logger tree.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR).
        log_file: Rotating log file path. None logs to the console only.
        max_size_mb: Size at which the log file is rotated.
        backup_count: Rotated files kept.

    Returns:
        The root application logger.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ColoredFormatter())
    logger.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding='utf-8'
        )
        rotating.setFormatter(FileFormatter())
        logger.addHandler(rotating)

    # aiohttp logs every failed connection on its own; the stats client reports those
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Application logger, or its ``name`` child."""
    return logging.getLogger(f'{ROOT_LOGGER}.{name}' if name else ROOT_LOGGER)


def get_channel_logger(
    channel: str,
    name: Optional[str] = None,
    generation: Optional[int] = None
) -> ChannelLoggerAdapter:
    """
    Logger adapter for one channel.

    Args:
        channel: Channel label, ``app/name``.
        name: Optional child logger name.
        generation: Pipeline generation number, if the records belong to one.
    """
    return ChannelLoggerAdapter(get_logger(name), channel, generation)
