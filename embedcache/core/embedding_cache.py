# core/embedding_cache.py

import hashlib
import json
import logging
import os
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from embedcache.core.errors import (CapacityExceededError, DegenerateVectorError,
                                    DimensionMismatchError, InvalidOptionsError,
                                    InvalidSnapshotError)

logger = logging.getLogger(__name__)

EVICTION_POLICIES = ('evict', 'raise')
SNAPSHOT_VERSION = 1
UNIT_NORM_TOLERANCE = 1e-5


def content_key(image_reference) -> str:
    """
    Derive a stable cache key from an image's content reference

    Paths and URIs hash to ``uri_<digest>``; mappings or objects carrying an
    explicit ``id`` use it verbatim. References with no identifier at all
    (raw bytes, decoded arrays) get a generated ``obj_`` key.
    """
    uri = None

    if isinstance(image_reference, (str, os.PathLike)):
        uri = os.fspath(image_reference)
    elif isinstance(image_reference, dict):
        if image_reference.get('id'):
            return str(image_reference['id'])
        uri = image_reference.get('uri')
    elif getattr(image_reference, 'uri', None):
        uri = image_reference.uri

    if uri:
        digest = hashlib.sha1(str(uri).encode('utf-8')).hexdigest()[:16]
        return f"uri_{digest}"

    return f"obj_{uuid.uuid4().hex}"


@dataclass
class CacheEntry:
    """Single cached embedding"""
    key: str
    vector: np.ndarray
    inserted_at: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0

    @property
    def nbytes(self) -> int:
        return int(self.vector.nbytes)


def _freeze(vector, expected_dim: Optional[int], context: str) -> np.ndarray:
    arr = np.array(vector, dtype=np.float32).ravel()

    if arr.size == 0:
        raise DegenerateVectorError(f"{context} is empty")

    if expected_dim is not None and arr.size != expected_dim:
        raise DimensionMismatchError(expected_dim, arr.size, context=context)

    if not np.all(np.isfinite(arr)):
        raise DegenerateVectorError(f"{context} contains NaN or infinite components")

    # Stored vectors are unit length; already-unit input is kept bit-for-bit
    norm = float(np.linalg.norm(arr.astype(np.float64)))
    if norm == 0.0:
        raise DegenerateVectorError(f"{context} has zero norm")
    if abs(norm - 1.0) > UNIT_NORM_TOLERANCE:
        arr = (arr.astype(np.float64) / norm).astype(np.float32)

    arr.setflags(write=False)
    return arr


def _isoformat(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _parse_timestamp(value) -> float:
    """ISO-8601 string to epoch seconds; a trailing Z and naive values mean UTC"""
    if not isinstance(value, str):
        raise TypeError(f"Expected an ISO-8601 string, got {type(value).__name__}")
    if value.endswith(('Z', 'z')):
        value = value[:-1] + '+00:00'

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class EmbeddingCache:
    """
    Memory-bounded key -> embedding store

    Entries are kept in insertion order. When a byte or entry ceiling would be
    exceeded the oldest entries are evicted first (or the insert is refused
    when ``eviction_policy='raise'``). Mutations are serialized with a lock;
    stored vectors are read-only so lookups never observe a partial write.

    Vectors are stored L2-normalized, matching the query side of a search,
    so index buckets and distance metrics compare like with like.
    """

    def __init__(self,
                 dimension: Optional[int] = None,
                 max_bytes: Optional[int] = None,
                 max_entries: Optional[int] = None,
                 max_age_seconds: Optional[float] = None,
                 eviction_policy: str = 'evict',
                 clock: Callable[[], float] = time.time):
        if eviction_policy not in EVICTION_POLICIES:
            raise InvalidOptionsError(
                f"Unknown eviction policy: {eviction_policy}",
                details={'recognized': list(EVICTION_POLICIES)}
            )
        for name, value in (('dimension', dimension), ('max_bytes', max_bytes),
                            ('max_entries', max_entries), ('max_age_seconds', max_age_seconds)):
            if value is not None and value <= 0:
                raise InvalidOptionsError(f"{name} must be positive, got {value}")

        self.dimension = dimension
        self.max_bytes = max_bytes
        self.max_entries = max_entries
        self.max_age_seconds = max_age_seconds
        self.eviction_policy = eviction_policy
        self._clock = clock

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._sequence = 0
        self._bytes = 0
        # Bumped on every mutation; lets derived structures detect staleness
        self.version = 0

        self._counter_lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[np.ndarray]:
        """Return the cached vector, or None when absent"""
        entry = self._entries.get(key)
        with self._counter_lock:
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
        return entry.vector

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def keys(self) -> List[str]:
        """Keys ordered from oldest to newest insertion"""
        with self._lock:
            return list(self._entries.keys())

    def items(self) -> List[Tuple[str, CacheEntry]]:
        with self._lock:
            return list(self._entries.items())

    def __contains__(self, key) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    @property
    def estimated_bytes(self) -> int:
        return self._bytes

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def put(self, key: str, vector, metadata: Optional[Dict[str, Any]] = None) -> CacheEntry:
        """
        Insert or overwrite an entry

        Re-inserting an existing key replaces its vector and metadata and
        makes it the newest entry.

        Raises:
            DegenerateVectorError: empty, zero-norm or non-finite vector
            DimensionMismatchError: vector length differs from the cache dimension
            CapacityExceededError: the entry can never fit, or policy is 'raise'
        """
        if not isinstance(key, str) or not key:
            raise InvalidOptionsError("Cache key must be a non-empty string")
        if metadata is not None and not isinstance(metadata, dict):
            raise InvalidOptionsError("Metadata must be a mapping")

        with self._lock:
            frozen = _freeze(vector, self.dimension, context=f"vector for '{key}'")
            self._make_room(key, frozen.nbytes)

            previous = self._entries.pop(key, None)
            if previous is not None:
                self._bytes -= previous.nbytes

            self._sequence += 1
            entry = CacheEntry(
                key=key,
                vector=frozen,
                inserted_at=self._clock(),
                metadata=dict(metadata or {}),
                sequence=self._sequence
            )
            self._entries[key] = entry
            self._bytes += entry.nbytes
            self.version += 1

            if self.dimension is None:
                self.dimension = int(frozen.size)

            return entry

    def delete(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self._bytes -= entry.nbytes
            self.version += 1
            return True

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._bytes = 0
            self.version += 1
        logger.info("Embedding cache cleared")

    def _make_room(self, key: str, incoming_bytes: int):
        """Evict (or refuse) so that an incoming entry fits the limits"""
        existing = self._entries.get(key)
        freed = existing.nbytes if existing is not None else 0
        growth = 0 if existing is not None else 1

        if self.max_bytes is not None and incoming_bytes > self.max_bytes:
            raise CapacityExceededError(
                f"Vector of {incoming_bytes} bytes exceeds cache ceiling of {self.max_bytes} bytes",
                details={'max_bytes': self.max_bytes, 'incoming_bytes': incoming_bytes}
            )

        def over_limit() -> bool:
            current = self._bytes - freed
            count = len(self._entries) - (1 - growth)
            if self.max_bytes is not None and current + incoming_bytes > self.max_bytes:
                return True
            if self.max_entries is not None and count + 1 > self.max_entries:
                return True
            return False

        if not over_limit():
            return

        if self.eviction_policy == 'raise':
            raise CapacityExceededError(
                "Cache capacity exceeded",
                details={
                    'max_bytes': self.max_bytes,
                    'max_entries': self.max_entries,
                    'estimated_bytes': self._bytes,
                    'entry_count': len(self._entries)
                }
            )

        while over_limit():
            oldest_key = next((k for k in self._entries if k != key), None)
            if oldest_key is None:
                break
            self._evict(oldest_key)

    def _evict(self, key: str):
        entry = self._entries.pop(key)
        self._bytes -= entry.nbytes
        self.evictions += 1
        self.version += 1
        logger.debug(f"Evicted '{key}' (inserted {_isoformat(entry.inserted_at)})")

    def evict_expired(self, now: Optional[float] = None) -> int:
        """Remove entries older than max_age_seconds"""
        if self.max_age_seconds is None:
            return 0

        now = self._clock() if now is None else now
        cutoff = now - self.max_age_seconds

        with self._lock:
            expired = [k for k, e in self._entries.items() if e.inserted_at < cutoff]
            for key in expired:
                self._evict(key)

        if expired:
            logger.info(f"Swept {len(expired)} expired embeddings")
        return len(expired)

    def trim(self, fraction: float) -> int:
        """Evict the oldest ``fraction`` of entries"""
        if not 0.0 < fraction <= 1.0:
            raise InvalidOptionsError(f"Trim fraction must be in (0, 1], got {fraction}")

        with self._lock:
            count = int(np.ceil(len(self._entries) * fraction))
            victims = list(self._entries.keys())[:count]
            for key in victims:
                self._evict(key)

        if victims:
            logger.info(f"Trimmed {len(victims)} oldest embeddings")
        return len(victims)

    def enforce_limits(self) -> int:
        """Evict oldest entries until byte and entry ceilings hold"""
        removed = 0
        with self._lock:
            while self._entries and (
                    (self.max_bytes is not None and self._bytes > self.max_bytes) or
                    (self.max_entries is not None and len(self._entries) > self.max_entries)):
                self._evict(next(iter(self._entries)))
                removed += 1
        return removed

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def export_snapshot(self) -> dict:
        """Serializable copy of every entry plus the cache configuration"""
        with self._lock:
            entries = [
                {
                    'key': entry.key,
                    'vector': entry.vector.tolist(),
                    'metadata': entry.metadata,
                    'insertedAt': _isoformat(entry.inserted_at)
                }
                for entry in self._entries.values()
            ]

        return {
            'version': SNAPSHOT_VERSION,
            'entries': entries,
            'config': self.config_dict(),
            'exportedAt': datetime.now(timezone.utc).isoformat()
        }

    def import_snapshot(self, data) -> int:
        """
        Replace the cache contents with a snapshot

        The snapshot is validated in full before anything changes; on any
        problem the cache is left untouched.

        Returns:
            Number of entries loaded
        """
        if isinstance(data, (str, bytes)):
            try:
                data = json.loads(data)
            except ValueError as e:
                raise InvalidSnapshotError(f"Snapshot is not valid JSON: {e}") from e

        with self._lock:
            dimension, entries = self._validate_snapshot(data)

            total_bytes = sum(e.nbytes for e in entries)
            over_bytes = self.max_bytes is not None and total_bytes > self.max_bytes
            over_count = self.max_entries is not None and len(entries) > self.max_entries
            if (over_bytes or over_count) and self.eviction_policy == 'raise':
                raise CapacityExceededError(
                    "Snapshot does not fit in the cache",
                    details={'entries': len(entries), 'bytes': total_bytes}
                )

            self._entries = OrderedDict((e.key, e) for e in entries)
            self._bytes = total_bytes
            self.dimension = dimension
            self._sequence = entries[-1].sequence if entries else self._sequence
            self.version += 1
            dropped = self.enforce_limits()

        logger.info(f"Imported snapshot with {len(entries) - dropped} embeddings")
        return len(entries) - dropped

    def _validate_snapshot(self, data) -> Tuple[Optional[int], List[CacheEntry]]:
        if not isinstance(data, dict):
            raise InvalidSnapshotError("Snapshot must be a JSON object")

        raw_entries = data.get('entries')
        if not isinstance(raw_entries, list):
            raise InvalidSnapshotError("Snapshot is missing an 'entries' list")

        config = data.get('config') or {}
        if not isinstance(config, dict):
            raise InvalidSnapshotError("Snapshot 'config' must be an object")

        declared = config.get('dimension')
        if declared is not None and (not isinstance(declared, int) or declared <= 0):
            raise InvalidSnapshotError(f"Invalid snapshot dimension: {declared!r}")

        if self.dimension is not None and declared is not None and declared != self.dimension:
            raise InvalidSnapshotError(
                f"Snapshot dimension {declared} does not match cache dimension {self.dimension}",
                details={'expected': self.dimension, 'actual': declared}
            )

        dimension = self.dimension or declared
        seen = set()
        entries = []
        now = self._clock()
        sequence = self._sequence

        for position, raw in enumerate(raw_entries):
            if not isinstance(raw, dict):
                raise InvalidSnapshotError(f"Entry {position} is not an object")

            key = raw.get('key')
            if not isinstance(key, str) or not key:
                raise InvalidSnapshotError(f"Entry {position} has no valid key")
            if key in seen:
                raise InvalidSnapshotError(f"Duplicate key in snapshot: {key}")
            seen.add(key)

            vector = raw.get('vector')
            if not isinstance(vector, list) or not all(
                    isinstance(v, (int, float)) and not isinstance(v, bool) for v in vector):
                raise InvalidSnapshotError(f"Entry '{key}' has a malformed vector")

            if dimension is None:
                dimension = len(vector)
            if len(vector) != dimension or dimension == 0:
                raise InvalidSnapshotError(
                    f"Entry '{key}' has dimension {len(vector)}, expected {dimension}",
                    details={'key': key, 'expected': dimension, 'actual': len(vector)}
                )

            metadata = raw.get('metadata')
            if metadata is None:
                metadata = {}
            if not isinstance(metadata, dict):
                raise InvalidSnapshotError(f"Entry '{key}' has non-object metadata")

            inserted_at = now
            if raw.get('insertedAt') is not None:
                try:
                    inserted_at = _parse_timestamp(raw['insertedAt'])
                except (TypeError, ValueError) as e:
                    raise InvalidSnapshotError(f"Entry '{key}' has an invalid insertedAt") from e

            try:
                frozen = _freeze(vector, dimension, context=f"vector for '{key}'")
            except DegenerateVectorError as e:
                raise InvalidSnapshotError(str(e)) from e

            sequence += 1
            entries.append(CacheEntry(key=key, vector=frozen, inserted_at=inserted_at,
                                      metadata=dict(metadata), sequence=sequence))

        return dimension, entries

    def save_snapshot(self, path: str) -> Path:
        """Write a snapshot to disk (temp file + rename)"""
        snapshot_path = Path(path)
        snapshot_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = snapshot_path.with_name(snapshot_path.name + '.tmp')

        with open(tmp_path, 'w') as f:
            json.dump(self.export_snapshot(), f)
        os.replace(tmp_path, snapshot_path)

        logger.info(f"Saved {len(self)} embeddings to {snapshot_path}")
        return snapshot_path

    def load_snapshot(self, path: str) -> int:
        snapshot_path = Path(path)
        try:
            with open(snapshot_path, 'r') as f:
                data = json.load(f)
        except OSError as e:
            raise InvalidSnapshotError(f"Cannot read snapshot {snapshot_path}: {e}") from e
        except ValueError as e:
            raise InvalidSnapshotError(f"Snapshot {snapshot_path} is not valid JSON: {e}") from e

        return self.import_snapshot(data)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def config_dict(self) -> dict:
        return {
            'dimension': self.dimension,
            'max_bytes': self.max_bytes,
            'max_entries': self.max_entries,
            'max_age_seconds': self.max_age_seconds,
            'eviction_policy': self.eviction_policy
        }

    def stats(self) -> dict:
        with self._lock:
            oldest = next(iter(self._entries.values()), None)
            return {
                'entry_count': len(self._entries),
                'estimated_bytes': self._bytes,
                'estimated_mb': self._bytes / (1024 * 1024),
                'hits': self.hits,
                'misses': self.misses,
                'evictions': self.evictions,
                'oldest_inserted_at': _isoformat(oldest.inserted_at) if oldest else None,
                **self.config_dict()
            }
