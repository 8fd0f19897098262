import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List

from arena.config import Config

# One console and one file handler shared by every arena logger
_handlers: List[logging.Handler] = []

NOISY_LIBRARIES = ('discord', 'sqlalchemy.engine', 'aiosqlite')


def _log_level() -> int:
    if Config.DEBUG:
        return logging.DEBUG
    return getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO)


def _shared_handlers() -> List[logging.Handler]:
    if _handlers:
        return _handlers

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(_log_level())
    console_handler.setFormatter(formatter)

    log_dir = Path(Config.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(
        log_dir / f'contest_arena_{datetime.now().strftime("%Y%m%d")}.log',
        encoding='utf-8'
    )
    # Everything goes to the file, the console follows the configured level
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    _handlers.extend([console_handler, file_handler])
    return _handlers


def setup_logger(name: str) -> logging.Logger:
    """Logger writing to the shared arena console and daily file"""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(_log_level())
    for handler in _shared_handlers():
        logger.addHandler(handler)
    logger.propagate = False
    return logger


def quiet_libraries(level: int = logging.WARNING):
    """Keep library chatter out of the arena logs unless debugging"""
    if Config.DEBUG:
        return
    for library in NOISY_LIBRARIES:
        logging.getLogger(library).setLevel(level)
