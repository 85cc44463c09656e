# core/cache_sweeper.py

import logging
import threading
from typing import Callable, Optional

from embedcache.core.embedding_cache import EmbeddingCache
from embedcache.utils.performance_monitor import memory_pressure

logger = logging.getLogger(__name__)


class CacheSweeper:
    """
    Background thread that keeps an EmbeddingCache inside its limits

    Every interval it drops entries past their maximum age and, when the
    system is under memory pressure, trims the oldest fraction of entries.
    """

    def __init__(self,
                 cache: EmbeddingCache,
                 interval_seconds: float = 60.0,
                 memory_pressure_percent: Optional[float] = 90.0,
                 trim_fraction: float = 0.25,
                 pressure_check: Callable[[float], bool] = memory_pressure):
        self.cache = cache
        self.interval_seconds = interval_seconds
        self.memory_pressure_percent = memory_pressure_percent
        self.trim_fraction = trim_fraction
        self._pressure_check = pressure_check
        self._stop_event = threading.Event()
        self.thread = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._sweep_loop,
                                       name="embedcache-sweeper", daemon=True)
        self.thread.start()

    def stop(self):
        self._stop_event.set()
        if self.thread:
            self.thread.join()
            self.thread = None

    def sweep_once(self) -> dict:
        """Run a single sweep; returns how many entries were removed and why"""
        expired = self.cache.evict_expired()
        over_limit = self.cache.enforce_limits()

        trimmed = 0
        if (self.memory_pressure_percent is not None and
                self._pressure_check(self.memory_pressure_percent)):
            logger.warning("Memory pressure detected, trimming embedding cache")
            trimmed = self.cache.trim(self.trim_fraction) if len(self.cache) else 0

        return {'expired': expired, 'over_limit': over_limit, 'trimmed': trimmed}

    def _sweep_loop(self):
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.sweep_once()
            except Exception:
                logger.exception("Cache sweep failed")
