# tests/test_logging_config.py

import json
import logging
import sys

import pytest

from embedcache.utils.logging_config import JSONFormatter, PerformanceLogger, setup_logging


@pytest.fixture
def package_logger(tmp_path):
    logger = setup_logging("WARNING", str(tmp_path / "logs"), json_logs=True)
    yield logger
    for handler in list(logger.handlers):
        if getattr(handler, '_embedcache_handler', False):
            logger.removeHandler(handler)
            handler.close()


def test_setup_logging_creates_files(package_logger, tmp_path):
    logging.getLogger("embedcache.core.embedding_cache").warning("cache warning")
    for handler in package_logger.handlers:
        handler.flush()

    log_dir = tmp_path / "logs"
    assert "cache warning" in (log_dir / "embedcache.log").read_text()

    record = json.loads((log_dir / "embedcache_structured.json").read_text().splitlines()[-1])
    assert record['message'] == "cache warning"
    assert record['level'] == "WARNING"
    assert record['logger'] == "embedcache.core.embedding_cache"


def test_setup_logging_is_idempotent(package_logger, tmp_path):
    before = len(package_logger.handlers)
    setup_logging("INFO", str(tmp_path / "logs"), json_logs=True)
    assert len(package_logger.handlers) == before


def test_json_formatter_includes_exception():
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord("embedcache", logging.ERROR, __file__, 1, "failed", None,
                                   exc_info=sys.exc_info())

    data = json.loads(JSONFormatter().format(record))
    assert data['message'] == "failed"
    assert "ValueError: boom" in data['exception']


def test_performance_logger_statistics():
    perf = PerformanceLogger(max_samples=3)
    for duration in (0.1, 0.2, 0.3, 0.4):
        perf.log_metric('search', duration, matches=1)
    perf.log_metric('extract', 1.0)

    stats = perf.get_statistics('search')
    assert stats['count'] == 2
    assert stats['mean'] == pytest.approx(0.35)
    assert perf.get_statistics('missing') == {}
    assert set(perf.summary()) == {'search', 'extract'}


def test_json_formatter_keeps_extra_fields():
    record = logging.LogRecord("embedcache.performance", logging.DEBUG, __file__, 1,
                               "search took 1.00ms", None, None)
    record.operation = 'search'
    record.duration_seconds = 0.001

    data = json.loads(JSONFormatter().format(record))
    assert data['operation'] == 'search'
    assert data['duration_seconds'] == 0.001
    assert data['timestamp'].endswith('+00:00')
