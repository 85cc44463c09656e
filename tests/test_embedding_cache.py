# tests/test_embedding_cache.py

import json
import threading
from datetime import datetime, timezone

import numpy as np
import pytest

from embedcache.core.embedding_cache import EmbeddingCache, content_key
from embedcache.core.errors import (CapacityExceededError, DegenerateVectorError,
                                    DimensionMismatchError, InvalidOptionsError,
                                    InvalidSnapshotError)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def populated_cache():
    cache = EmbeddingCache()
    rng = np.random.default_rng(0)
    for i in range(5):
        cache.put(f"img_{i}", rng.normal(size=8), {'index': i})
    return cache


def test_put_and_get():
    cache = EmbeddingCache()
    cache.put("a", [1.0, 0.0, 0.0], {'sku': 'A-1'})

    np.testing.assert_allclose(cache.get("a"), [1.0, 0.0, 0.0])
    assert cache.get_entry("a").metadata == {'sku': 'A-1'}
    assert cache.get("missing") is None
    assert "a" in cache
    assert cache.hits == 1
    assert cache.misses == 1


def test_first_insert_fixes_dimension():
    cache = EmbeddingCache()
    cache.put("a", [1.0, 2.0, 3.0])

    assert cache.dimension == 3
    with pytest.raises(DimensionMismatchError):
        cache.put("b", [1.0, 2.0])
    assert len(cache) == 1


def test_invalid_vectors_rejected():
    cache = EmbeddingCache()
    with pytest.raises(DegenerateVectorError):
        cache.put("nan", [np.nan, 1.0])
    with pytest.raises(DegenerateVectorError):
        cache.put("empty", [])
    with pytest.raises(InvalidOptionsError):
        cache.put("", [1.0])


def test_vectors_are_stored_unit_length():
    cache = EmbeddingCache()
    cache.put("b", [0.9, 0.1, 0.0])

    stored = cache.get("b")
    assert np.linalg.norm(stored) == pytest.approx(1.0, abs=1e-6)
    np.testing.assert_allclose(stored, np.array([0.9, 0.1, 0.0]) / np.hypot(0.9, 0.1), rtol=1e-6)

    with pytest.raises(DegenerateVectorError):
        cache.put("zero", [0.0, 0.0, 0.0])
    assert "zero" not in cache


def test_stored_vectors_are_read_only():
    cache = EmbeddingCache()
    source = np.array([1.0, 0.0], dtype=np.float32)
    entry = cache.put("a", source)

    source[0] = 99.0
    assert entry.vector[0] == 1.0
    with pytest.raises(ValueError):
        entry.vector[0] = 5.0


def test_eviction_oldest_first():
    # 64 float32 components = 256 bytes per entry, four fit under 1 KiB
    cache = EmbeddingCache(max_bytes=1024)
    for i in range(6):
        cache.put(f"k{i}", np.full(64, i + 1.0))
        assert cache.estimated_bytes <= 1024

    assert cache.keys() == ["k2", "k3", "k4", "k5"]
    assert cache.evictions == 2
    assert cache.estimated_bytes == 1024


def test_overwrite_moves_entry_to_young_end():
    cache = EmbeddingCache(max_entries=3)
    for key in ("a", "b", "c"):
        cache.put(key, [1.0, 0.0])

    cache.put("a", [0.0, 1.0])
    cache.put("d", [1.0, 1.0])

    assert cache.keys() == ["c", "a", "d"]
    np.testing.assert_allclose(cache.get("a"), [0.0, 1.0])


def test_raise_policy_refuses_insert():
    cache = EmbeddingCache(max_entries=2, eviction_policy='raise')
    cache.put("a", [1.0])
    cache.put("b", [2.0])

    with pytest.raises(CapacityExceededError):
        cache.put("c", [3.0])
    assert cache.keys() == ["a", "b"]

    # Overwriting an existing key never needs room
    cache.put("a", [4.0])
    assert cache.keys() == ["b", "a"]


def test_vector_larger_than_ceiling_always_raises():
    cache = EmbeddingCache(max_bytes=16)
    with pytest.raises(CapacityExceededError):
        cache.put("big", np.ones(8))


def test_unknown_eviction_policy():
    with pytest.raises(InvalidOptionsError):
        EmbeddingCache(eviction_policy='lru')


def test_delete_and_clear(populated_cache):
    version = populated_cache.version

    assert populated_cache.delete("img_0") is True
    assert populated_cache.delete("img_0") is False
    assert populated_cache.version == version + 1

    populated_cache.clear()
    assert len(populated_cache) == 0
    assert populated_cache.estimated_bytes == 0


def test_evict_expired_uses_insert_time():
    clock = FakeClock()
    cache = EmbeddingCache(max_age_seconds=60, clock=clock)

    cache.put("old", [1.0, 0.0])
    clock.advance(50)
    cache.put("new", [0.0, 1.0])
    clock.advance(20)

    assert cache.evict_expired() == 1
    assert cache.keys() == ["new"]


def test_trim_removes_oldest_fraction(populated_cache):
    assert populated_cache.trim(0.5) == 3
    assert populated_cache.keys() == ["img_3", "img_4"]

    with pytest.raises(InvalidOptionsError):
        populated_cache.trim(0.0)


def test_snapshot_round_trip(populated_cache):
    snapshot = populated_cache.export_snapshot()
    restored = EmbeddingCache()
    count = restored.import_snapshot(json.dumps(snapshot))

    assert count == 5
    assert restored.keys() == populated_cache.keys()
    assert restored.dimension == populated_cache.dimension
    for key in populated_cache.keys():
        np.testing.assert_array_equal(restored.get(key), populated_cache.get(key))
        assert restored.get_entry(key).metadata == populated_cache.get_entry(key).metadata
        assert restored.get_entry(key).inserted_at == pytest.approx(
            populated_cache.get_entry(key).inserted_at, abs=1e-3)


def test_snapshot_format(populated_cache):
    snapshot = populated_cache.export_snapshot()

    assert snapshot['version'] == 1
    assert snapshot['config']['dimension'] == 8
    entry = snapshot['entries'][0]
    assert set(entry) == {'key', 'vector', 'metadata', 'insertedAt'}
    assert entry['insertedAt'].endswith('+00:00')


def test_invalid_snapshot_leaves_cache_untouched(populated_cache):
    before = populated_cache.keys()
    bad_snapshot = {
        'entries': [
            {'key': 'ok', 'vector': [0.1] * 8},
            {'key': 'short', 'vector': [0.1] * 3},
        ]
    }

    with pytest.raises(InvalidSnapshotError):
        populated_cache.import_snapshot(bad_snapshot)
    assert populated_cache.keys() == before


@pytest.mark.parametrize("snapshot", [
    "not json",
    [],
    {'entries': 'nope'},
    {'entries': [{'key': 'a', 'vector': [1.0]}, {'key': 'a', 'vector': [2.0]}]},
    {'entries': [{'key': 'a', 'vector': ['x']}]},
    {'entries': [{'key': 'a', 'vector': [1.0], 'metadata': 'x'}]},
    {'entries': [{'key': 'a', 'vector': [1.0], 'insertedAt': 'yesterday'}]},
    {'entries': [], 'config': {'dimension': -1}},
])
def test_malformed_snapshots_rejected(snapshot):
    cache = EmbeddingCache()
    with pytest.raises(InvalidSnapshotError):
        cache.import_snapshot(snapshot)


@pytest.mark.parametrize("inserted_at", [
    "2024-03-01T12:00:00.000Z",
    "2024-03-01T12:00:00+00:00",
    "2024-03-01T12:00:00",
])
def test_snapshot_timestamps_are_utc(inserted_at):
    cache = EmbeddingCache()
    cache.import_snapshot({'entries': [{'key': 'a', 'vector': [1.0, 0.0], 'insertedAt': inserted_at}]})

    expected = datetime(2024, 3, 1, 12, tzinfo=timezone.utc).timestamp()
    assert cache.get_entry("a").inserted_at == expected


def test_snapshot_dimension_must_match_cache():
    cache = EmbeddingCache(dimension=4)
    with pytest.raises(InvalidSnapshotError):
        cache.import_snapshot({'entries': [], 'config': {'dimension': 8}})


def test_import_over_capacity_evicts_oldest(populated_cache):
    snapshot = populated_cache.export_snapshot()
    small = EmbeddingCache(max_entries=2)

    assert small.import_snapshot(snapshot) == 2
    assert small.keys() == ["img_3", "img_4"]

    strict = EmbeddingCache(max_entries=2, eviction_policy='raise')
    with pytest.raises(CapacityExceededError):
        strict.import_snapshot(snapshot)
    assert len(strict) == 0


def test_save_and_load_snapshot_file(populated_cache, tmp_path):
    path = populated_cache.save_snapshot(tmp_path / "cache" / "embeddings.json")
    assert path.exists()

    restored = EmbeddingCache()
    assert restored.load_snapshot(path) == 5

    with pytest.raises(InvalidSnapshotError):
        restored.load_snapshot(tmp_path / "missing.json")

    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{")
    with pytest.raises(InvalidSnapshotError):
        restored.load_snapshot(corrupt)
    assert len(restored) == 5


def test_content_key():
    assert content_key("/data/shoe.jpg") == content_key("/data/shoe.jpg")
    assert content_key("/data/shoe.jpg").startswith("uri_")
    assert content_key("/data/shoe.jpg") != content_key("/data/boot.jpg")
    assert content_key({'id': 'sku-42', 'uri': '/data/shoe.jpg'}) == 'sku-42'
    assert content_key({'uri': '/data/shoe.jpg'}) == content_key("/data/shoe.jpg")

    generated = content_key(b"raw bytes")
    assert generated.startswith("obj_")
    assert generated != content_key(b"raw bytes")


def test_hit_and_miss_counters_under_concurrency(populated_cache):
    def read():
        for _ in range(500):
            populated_cache.get("img_0")
            populated_cache.get("missing")

    threads = [threading.Thread(target=read) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert populated_cache.hits == 4000
    assert populated_cache.misses == 4000


def test_stats(populated_cache):
    stats = populated_cache.stats()
    assert stats['entry_count'] == 5
    assert stats['estimated_bytes'] == 5 * 8 * 4
    assert stats['eviction_policy'] == 'evict'
