# tests/test_cache_sweeper.py

import time

import pytest

from embedcache.core.cache_sweeper import CacheSweeper
from embedcache.core.embedding_cache import EmbeddingCache


class FakeClock:
    def __init__(self):
        self.now = 1_000_000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    cache = EmbeddingCache(max_age_seconds=30, clock=clock)
    for i in range(4):
        cache.put(f"item_{i}", [float(i + 1), 1.0])
        clock.now += 10
    return cache


def test_sweep_drops_expired(cache, clock):
    sweeper = CacheSweeper(cache, pressure_check=lambda threshold: False)

    # Inserted at t, t+10, t+20, t+30; now t+40
    result = sweeper.sweep_once()

    assert result == {'expired': 1, 'over_limit': 0, 'trimmed': 0}
    assert cache.keys() == ["item_1", "item_2", "item_3"]


def test_sweep_trims_under_memory_pressure(cache):
    sweeper = CacheSweeper(cache, memory_pressure_percent=80.0, trim_fraction=0.5,
                           pressure_check=lambda threshold: threshold == 80.0)
    result = sweeper.sweep_once()

    assert result['trimmed'] == 2
    assert len(cache) == 1


def test_pressure_check_disabled(cache):
    sweeper = CacheSweeper(cache, memory_pressure_percent=None,
                           pressure_check=lambda threshold: True)
    assert sweeper.sweep_once()['trimmed'] == 0


def test_background_thread_lifecycle(cache):
    calls = []

    def pressure(threshold):
        calls.append(threshold)
        return False

    sweeper = CacheSweeper(cache, interval_seconds=0.01, pressure_check=pressure)
    sweeper.start()
    assert sweeper.running

    deadline = time.monotonic() + 2.0
    while not calls and time.monotonic() < deadline:
        time.sleep(0.01)

    sweeper.stop()
    assert not sweeper.running
    assert calls
    assert len(cache) == 3
