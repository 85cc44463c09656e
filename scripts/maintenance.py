# scripts/maintenance.py

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import psutil

from embedcache.config import SystemConfig
from embedcache.core.embedding_cache import EmbeddingCache
from embedcache.core.errors import EmbeddingCacheError


def _cache_for(config: SystemConfig) -> EmbeddingCache:
    cache_config = config.cache
    return EmbeddingCache(
        dimension=cache_config.dimension,
        max_bytes=cache_config.max_bytes,
        max_entries=cache_config.max_entries,
        max_age_seconds=cache_config.max_age_seconds,
        eviction_policy='evict'
    )


def sweep_snapshot(config: SystemConfig) -> int:
    """Drop expired and over-limit entries from the snapshot file"""
    snapshot_path = config.cache.snapshot_path
    cache = _cache_for(config)
    loaded = cache.load_snapshot(snapshot_path)
    expired = cache.evict_expired()
    cache.save_snapshot(snapshot_path)

    removed = cache.evictions
    print(f"Loaded {loaded} embeddings, removed {removed} ({expired} expired)")
    return removed


def verify_snapshot(config: SystemConfig) -> bool:
    """Verify snapshot integrity"""
    snapshot_path = config.cache.snapshot_path
    if not Path(snapshot_path).exists():
        print(f"Snapshot not found: {snapshot_path}")
        return False

    cache = EmbeddingCache(dimension=config.cache.dimension, max_bytes=None)
    try:
        count = cache.load_snapshot(snapshot_path)
    except EmbeddingCacheError as e:
        print(f"Snapshot corrupted: {e}")
        return False

    print(f"Snapshot loaded successfully: {count} embeddings, dimension {cache.dimension}")
    return True


def generate_report(config: SystemConfig, reports_dir: str = "reports") -> str:
    """Generate system health report"""
    snapshot_path = Path(config.cache.snapshot_path)
    entries = 0
    snapshot_size = 0.0
    if snapshot_path.exists():
        snapshot_size = snapshot_path.stat().st_size / (1024**2)
        with open(snapshot_path, 'r') as f:
            entries = len(json.load(f).get('entries', []))

    # System stats
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage('.')

    report = f"""
    Embedding Cache - System Report
    ===============================

    Snapshot:
       Path: {snapshot_path}
       Cached embeddings: {entries}
       Snapshot size: {snapshot_size:.2f} MB
       Configured ceiling: {(config.cache.max_bytes or 0) / (1024**2):.2f} MB

    System Resources:
       Memory usage: {memory.percent}%
       Available memory: {memory.available / (1024**3):.2f} GB
       Disk usage: {disk.percent}%
       Available disk: {disk.free / (1024**3):.2f} GB

    Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')} UTC
    """

    print(report)

    # Save to file
    Path(reports_dir).mkdir(parents=True, exist_ok=True)
    report_path = Path(reports_dir) / f"health_report_{datetime.now().strftime('%Y%m%d')}.txt"
    with open(report_path, 'w') as f:
        f.write(report)
    return str(report_path)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Maintenance utilities")
    parser.add_argument('action', choices=['sweep', 'verify', 'report'])
    parser.add_argument('-c', '--config', default='config.yaml', help='YAML configuration file')
    parser.add_argument('-s', '--snapshot', help='Snapshot file (overrides cache.snapshot_path)')
    parser.add_argument('--reports-dir', default='reports', help='Where report files go')

    args = parser.parse_args(argv)

    config = SystemConfig.load(args.config)
    if args.snapshot:
        config.cache.snapshot_path = args.snapshot

    if args.action == 'sweep':
        try:
            sweep_snapshot(config)
        except EmbeddingCacheError as e:
            print(f"Sweep failed: {e}")
            return 1
    elif args.action == 'verify':
        return 0 if verify_snapshot(config) else 1
    elif args.action == 'report':
        generate_report(config, args.reports_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())
