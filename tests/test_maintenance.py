# tests/test_maintenance.py

import json
from datetime import datetime, timedelta, timezone

import pytest

from embedcache.config import SystemConfig
from scripts.maintenance import main, sweep_snapshot, verify_snapshot


@pytest.fixture
def snapshot_file(tmp_path):
    now = datetime.now(timezone.utc)
    snapshot = {
        'version': 1,
        'config': {'dimension': 2},
        'entries': [
            {'key': 'stale', 'vector': [1.0, 0.0],
             'insertedAt': (now - timedelta(hours=2)).isoformat()},
            {'key': 'fresh', 'vector': [0.0, 1.0], 'insertedAt': now.isoformat()},
        ]
    }
    path = tmp_path / "embeddings.json"
    path.write_text(json.dumps(snapshot))
    return path


@pytest.fixture
def config(snapshot_file):
    config = SystemConfig()
    config.cache.snapshot_path = str(snapshot_file)
    return config


def test_sweep_removes_expired_entries(config, snapshot_file):
    assert sweep_snapshot(config) == 1

    entries = json.loads(snapshot_file.read_text())['entries']
    assert [e['key'] for e in entries] == ['fresh']


def test_verify_snapshot(config, snapshot_file, capsys):
    assert verify_snapshot(config) is True
    assert "2 embeddings" in capsys.readouterr().out

    snapshot_file.write_text('{"entries": [{"key": "a", "vector": "oops"}]}')
    assert verify_snapshot(config) is False

    config.cache.snapshot_path = str(snapshot_file.with_name("absent.json"))
    assert verify_snapshot(config) is False


def test_main_actions(snapshot_file, tmp_path, capsys):
    common = ['--config', str(tmp_path / "absent.yaml"), '--snapshot', str(snapshot_file)]

    assert main(['verify'] + common) == 0
    assert main(['report', '--reports-dir', str(tmp_path / "reports")] + common) == 0
    assert "Cached embeddings: 2" in capsys.readouterr().out
    assert list((tmp_path / "reports").glob("health_report_*.txt"))

    assert main(['sweep'] + common) == 0
    assert main(['verify'] + common) == 0
    assert "1 embeddings" in capsys.readouterr().out
