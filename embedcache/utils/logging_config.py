# utils/logging_config.py

import json
import logging
import logging.handlers
import threading
import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path

import numpy as np

ROOT_LOGGER_NAME = "embedcache"
CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'

perf_logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.performance")


def setup_logging(log_level: str = "INFO",
                  log_dir: str = "logs",
                  json_logs: bool = True) -> logging.Logger:
    """
    Configure the package logger with console, rotating text and JSON handlers

    Calling it again replaces the handlers installed by the previous call.
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    for handler in list(logger.handlers):
        if getattr(handler, '_embedcache_handler', False):
            logger.removeHandler(handler)
            handler.close()

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    # File handler (rotating)
    file_handler = logging.handlers.RotatingFileHandler(
        log_path / f"{ROOT_LOGGER_NAME}.log",
        maxBytes=10*1024*1024,  # 10 MB
        backupCount=5
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))

    handlers = [console_handler, file_handler]

    # JSON handler for structured logs
    if json_logs:
        json_handler = logging.handlers.RotatingFileHandler(
            log_path / f"{ROOT_LOGGER_NAME}_structured.json",
            maxBytes=10*1024*1024,
            backupCount=5
        )
        json_handler.setLevel(logging.INFO)
        json_handler.setFormatter(JSONFormatter())
        handlers.append(json_handler)

    for handler in handlers:
        handler._embedcache_handler = True
        logger.addHandler(handler)

    return logger


# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRIBUTES = set(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}


class JSONFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields are kept as top-level keys"""

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'thread': record.threadName,
            'location': f"{record.module}.{record.funcName}:{record.lineno}"
        }
        for name, value in vars(record).items():
            if name not in _RECORD_ATTRIBUTES and not name.startswith('_'):
                entry[name] = value

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class PerformanceLogger:
    """
    Rolling window of operation timings
    """

    def __init__(self, max_samples: int = 1000):
        self.max_samples = max_samples
        self._samples = deque(maxlen=max_samples)
        self._lock = threading.Lock()

    @property
    def metrics(self) -> list:
        with self._lock:
            return list(self._samples)

    def log_metric(self, operation: str, duration: float, **metadata):
        """Record one timing and emit it as a DEBUG record"""
        sample = dict(metadata, operation=operation, duration_seconds=duration,
                      recorded_at=time.time())
        with self._lock:
            self._samples.append(sample)

        perf_logger.debug(f"{operation} took {duration * 1000:.2f}ms",
                          extra={'operation': operation, 'duration_seconds': duration})

    def get_statistics(self, operation: str = None) -> dict:
        """count / mean / median / min / max / std / total for one operation (or all)"""
        durations = [s['duration_seconds'] for s in self.metrics
                     if operation is None or s['operation'] == operation]
        if not durations:
            return {}

        values = np.asarray(durations)
        return {
            'count': int(values.size),
            'mean': float(values.mean()),
            'median': float(np.median(values)),
            'min': float(values.min()),
            'max': float(values.max()),
            'std': float(values.std()),
            'total': float(values.sum())
        }

    def summary(self) -> dict:
        operations = sorted({s['operation'] for s in self.metrics})
        return {op: self.get_statistics(op) for op in operations}
