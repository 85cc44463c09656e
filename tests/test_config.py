# tests/test_config.py

import pytest
import yaml

from embedcache.config import SystemConfig
from embedcache.core.errors import InvalidOptionsError


def test_defaults_are_valid():
    config = SystemConfig().validate()

    assert config.feature_extraction.model_type == 'histogram'
    assert config.cache.max_bytes == 64 * 1024 * 1024
    assert config.similarity_search.metric == 'cosine'
    assert config.similarity_search.quantization_levels == 8


def test_yaml_round_trip(tmp_path):
    config = SystemConfig()
    config.cache.max_entries = 500
    config.similarity_search.metric = 'manhattan'
    config.api.port = 9100

    path = tmp_path / "settings" / "config.yaml"
    config.save(str(path))
    loaded = SystemConfig.load(str(path))

    assert loaded == config
    assert yaml.safe_load(path.read_text())['cache']['max_entries'] == 500


def test_missing_file_gives_defaults(tmp_path):
    assert SystemConfig.load(str(tmp_path / "absent.yaml")) == SystemConfig()


def test_partial_sections_keep_defaults():
    config = SystemConfig.from_dict({'cache': {'max_age_seconds': 60}, 'log_level': 'DEBUG'})

    assert config.cache.max_age_seconds == 60
    assert config.cache.eviction_policy == 'evict'
    assert config.log_level == 'DEBUG'


@pytest.mark.parametrize("data", [
    {'unknown_root': 1},
    {'cache': {'max_megabytes': 5}},
    {'similarity_search': {'topK': 3}},
    {'api': 'localhost'},
])
def test_unknown_keys_rejected(data):
    with pytest.raises(InvalidOptionsError):
        SystemConfig.from_dict(data)


@pytest.mark.parametrize("data", [
    {'log_level': 'LOUD'},
    {'feature_extraction': {'model_type': 'resnet'}},
    {'cache': {'eviction_policy': 'lru'}},
    {'cache': {'max_bytes': 0}},
    {'similarity_search': {'metric': 'hamming'}},
    {'similarity_search': {'similarity_threshold': 2.0}},
    {'similarity_search': {'quantization_levels': 32}},
])
def test_invalid_values_rejected(data):
    with pytest.raises(InvalidOptionsError):
        SystemConfig.from_dict(data)
