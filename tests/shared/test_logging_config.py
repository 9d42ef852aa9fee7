"""Tests for logging setup."""

import logging

import pytest

from shared.logging_config import setup_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for h in root.handlers:
        if h not in handlers:
            h.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_writes_file(tmp_path, restore_logging):
    log_file = setup_logging(tmp_path / 'log')
    logging.getLogger('tilepack.test').info('hello log')
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_file == tmp_path / 'log' / 'tilepack.log'
    assert 'hello log' in log_file.read_text(encoding='utf-8')
    assert logging.getLogger('aiohttp').level == logging.WARNING


def test_setup_logging_default_dir(tmp_path, monkeypatch, restore_logging):
    monkeypatch.setenv('TILEPACK_HOME', str(tmp_path))
    log_file = setup_logging()
    assert log_file.parent == (tmp_path / 'log').resolve()
