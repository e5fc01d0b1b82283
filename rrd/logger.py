"""
Logging for the round-robin store.

Every component logs under the "rrd" namespace. RRDLogger.setup() attaches
one timestamped log file (and optionally stdout) to that namespace; loggers
handed out before setup trigger it with defaults.
"""

import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Dict, Optional

NAMESPACE = "rrd"

FILE_FORMAT = '%(asctime)s | %(name)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s'
CONSOLE_FORMAT = '%(asctime)s | %(levelname)s | %(name)s | %(message)s'


def _parse_level(name: Optional[str], default: int = logging.INFO) -> int:
    if not name:
        return default
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else default


class RRDLogger:
    """Process-wide logging setup shared by all components."""

    _loggers: Dict[str, logging.Logger] = {}
    _initialized = False
    _log_file: Optional[Path] = None
    _level = logging.INFO

    @classmethod
    def setup(cls, log_dir: str = "./logs", log_level: str = "INFO", console_output: bool = False,
              console_level: Optional[str] = None):
        """Attach the file (and console) handlers. Later calls are no-ops."""
        if cls._initialized:
            return

        cls._level = _parse_level(log_level)
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        cls._log_file = directory / f"rrd_{datetime.now():%Y%m%d_%H%M%S}.log"

        # Third-party loggers (aiohttp, asyncio) keep their own configuration
        base = logging.getLogger(NAMESPACE)
        base.handlers.clear()
        base.propagate = False
        base.setLevel(cls._level)

        file_handler = logging.FileHandler(cls._log_file)
        file_handler.setLevel(cls._level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        base.addHandler(file_handler)

        console = _parse_level(console_level, logging.WARNING)
        if console_output:
            stream_handler = logging.StreamHandler(sys.stdout)
            stream_handler.setLevel(console)
            stream_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            base.addHandler(stream_handler)

        cls._initialized = True

        log = cls.get_logger("RRDLogger")
        log.info(f"Logging to {cls._log_file} at {logging.getLevelName(cls._level)}")
        if console_output:
            log.info(f"Console output at {logging.getLevelName(console)}+")

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        if not cls._initialized:
            cls.setup()

        logger = cls._loggers.get(name)
        if logger is None:
            logger = logging.getLogger(f"{NAMESPACE}.{name}")
            logger.setLevel(cls._level)
            cls._loggers[name] = logger
        return logger

    @classmethod
    def set_level(cls, level: str):
        """Change the level of the namespace and every logger handed out so far."""
        cls._level = _parse_level(level)
        logging.getLogger(NAMESPACE).setLevel(cls._level)
        for logger in cls._loggers.values():
            logger.setLevel(cls._level)

    @classmethod
    def get_log_file(cls) -> Optional[Path]:
        return cls._log_file if cls._initialized else None


def get_logger(name: str) -> logging.Logger:
    """Shorthand for RRDLogger.get_logger."""
    return RRDLogger.get_logger(name)
