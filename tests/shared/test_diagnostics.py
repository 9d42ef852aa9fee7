"""Tests for shared.diagnostics helpers."""

import logging

import pytest

import shared.diagnostics as diagnostics


def test_get_memory_info():
    info = diagnostics.get_memory_info()
    assert 'process_rss_mb' in info
    assert info['process_rss_mb'] > 0


def test_get_memory_info_handles_psutil_errors(monkeypatch):
    def _broken():
        msg = 'no process'
        raise RuntimeError(msg)

    monkeypatch.setattr(diagnostics.psutil, 'Process', _broken)
    info = diagnostics.get_memory_info()
    assert 'error' in info


def test_log_memory_usage(caplog):
    with caplog.at_level(logging.INFO):
        diagnostics.log_memory_usage('test context')
    assert 'Memory usage (test context)' in caplog.text


def test_log_thread_status(caplog):
    with caplog.at_level(logging.INFO):
        diagnostics.log_thread_status('ctx')
    assert 'Thread status (ctx)' in caplog.text


class TestEnsureWritableDir:
    """Tests for ensure_writable_dir()."""

    def test_creates_directory(self, tmp_path):
        target = tmp_path / 'a' / 'b'
        diagnostics.ensure_writable_dir(target)
        assert target.is_dir()
        assert list(target.iterdir()) == []

    def test_file_in_the_way(self, tmp_path):
        blocker = tmp_path / 'blocker'
        blocker.write_text('x')
        with pytest.raises(RuntimeError, match='not writable'):
            diagnostics.ensure_writable_dir(blocker / 'sub')


class TestResourceMonitor:
    """Tests for ResourceMonitor."""

    def test_logs_duration(self, caplog):
        with caplog.at_level(logging.INFO), diagnostics.ResourceMonitor('op'):
            pass
        assert "Operation 'op' finished" in caplog.text

    def test_logs_failure(self, caplog):
        with caplog.at_level(logging.INFO), pytest.raises(ValueError):
            with diagnostics.ResourceMonitor('bad op'):
                msg = 'x'
                raise ValueError(msg)
        assert "Operation 'bad op' failed with ValueError" in caplog.text
