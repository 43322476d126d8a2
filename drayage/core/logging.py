# drayage/core/logging.py
"""
Component loggers: `get_logger('queue')` -> 'drayage.queue'.

Each component logger writes to stdout with its own handler and does not
propagate. Output is colored on a terminal and plain otherwise (worker
processes under systemd or docker), or when NO_COLOR is set.
"""

import logging
import os
import sys
from datetime import datetime
from typing import TextIO

ROOT_LOGGER = 'drayage'

# Level for loggers created from now on; set_default_level() also updates existing ones
_default_level: int = logging.INFO


class PlainFormatter(logging.Formatter):
    """`HH:MM:SS [component]      [LEVEL]   message`"""

    def _sections(self, record: logging.LogRecord) -> tuple[str, str, str, str]:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        # 'drayage.queue' -> 'queue'
        component = record.name.rsplit('.', 1)[-1]
        component_padded = f'[{component}]'.ljust(16)  # [consistency] = 13 chars
        level_padded = f'[{record.levelname}]'.ljust(10)  # [WARNING] = 9 chars
        return time_str, component_padded, level_padded, record.getMessage()

    def _render(self, time_str: str, component: str, level: str, message: str) -> str:
        return f'[{time_str}] {component}{level}{message}'

    def format(self, record: logging.LogRecord) -> str:
        formatted = self._render(*self._sections(record))
        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)
        return formatted


class ColoredFormatter(PlainFormatter):
    """PlainFormatter layout with ANSI colors per level."""

    COLORS = {
        'RESET': '\033[0m',
        'LIGHT_BLUE': '\033[94m',
        'WHITE': '\033[97m',
        'GRAY': '\033[90m',
        'GREEN': '\033[92m',
        'YELLOW': '\033[93m',
        'RED': '\033[91m',
        'BRIGHT_RED': '\033[1;91m',
    }

    LEVEL_COLORS = {
        'DEBUG': COLORS['GRAY'],
        'INFO': COLORS['GREEN'],
        'WARNING': COLORS['YELLOW'],
        'ERROR': COLORS['RED'],
        'CRITICAL': COLORS['BRIGHT_RED'],
    }

    def format(self, record: logging.LogRecord) -> str:
        time_str, component, level, message = self._sections(record)
        c = self.COLORS
        level_color = self.LEVEL_COLORS.get(record.levelname, c['WHITE'])
        formatted = (
            f"{c['LIGHT_BLUE']}[{time_str}]{c['RESET']} "
            f"{c['WHITE']}{component}{c['RESET']}"
            f"{level_color}{level}{c['RESET']}"
            f"{c['WHITE']}{message}{c['RESET']}"
        )
        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)
        return formatted


def formatter_for(stream: TextIO) -> logging.Formatter:
    isatty = getattr(stream, 'isatty', None)
    if 'NO_COLOR' not in os.environ and isatty is not None and isatty():
        return ColoredFormatter()
    return PlainFormatter()


def set_default_level(level: int) -> None:
    """Set the level of every drayage logger, existing and future."""
    global _default_level
    _default_level = level
    logging.getLogger(ROOT_LOGGER).setLevel(level)
    for name in list(logging.Logger.manager.loggerDict):
        if isinstance(name, str) and name.startswith(f'{ROOT_LOGGER}.'):
            logger = logging.getLogger(name)
            logger.setLevel(level)
            for handler in logger.handlers:
                handler.setLevel(level)


def get_logger(component_name: str) -> logging.Logger:
    """Get a logger for the specified component."""
    logger = logging.getLogger(f'{ROOT_LOGGER}.{component_name}')

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter_for(sys.stdout))
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)
        # Prevent duplicate logs from parent loggers
        logger.propagate = False

    return logger
