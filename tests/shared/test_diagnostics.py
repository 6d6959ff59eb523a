"""Tests for shared.diagnostics helpers."""

import logging
from types import SimpleNamespace

import psutil

import shared.diagnostics as diagnostics


def _fake_psutil(rss=0, available=0, threads=1, process=None):
    class DummyProcess:
        def memory_info(self):
            return SimpleNamespace(rss=rss)

        def num_threads(self):
            return threads

    return SimpleNamespace(
        Process=process or DummyProcess,
        virtual_memory=lambda: SimpleNamespace(available=available),
        Error=psutil.Error,
    )


def test_take_snapshot_real_process():
    snap = diagnostics.take_snapshot()
    assert snap.python_threads >= 1
    assert snap.rss_mb is None or snap.rss_mb > 0


def test_take_snapshot_converts_to_megabytes(monkeypatch):
    """psutil byte counts are reported in megabytes."""
    monkeypatch.setattr(
        diagnostics,
        'psutil',
        _fake_psutil(rss=3 * 1024 * 1024, available=512 * 1024 * 1024, threads=7),
    )

    snap = diagnostics.take_snapshot()

    assert snap.rss_mb == 3.0
    assert snap.available_mb == 512.0
    assert snap.os_threads == 7


def test_take_snapshot_psutil_error(monkeypatch):
    """psutil failures leave the fields empty instead of raising."""

    def broken():
        raise psutil.AccessDenied()

    monkeypatch.setattr(diagnostics, 'psutil', _fake_psutil(process=broken))

    snap = diagnostics.take_snapshot()

    assert snap.rss_mb is None
    assert snap.available_mb is None
    assert snap.os_threads is None
    assert snap.python_threads >= 1


def test_log_memory_usage(caplog, monkeypatch):
    monkeypatch.setattr(diagnostics, 'psutil', _fake_psutil(rss=1024 * 1024, available=2 * 1024 * 1024))

    with caplog.at_level(logging.INFO):
        diagnostics.log_memory_usage('after 50/100 tiles')

    assert 'Memory (after 50/100 tiles): RSS=1.0 MB, available=2.0 MB' in caplog.text


def test_log_thread_status_without_psutil(caplog, monkeypatch):
    """Unreadable OS thread count is logged as N/A."""

    def broken():
        raise psutil.NoSuchProcess(1)

    monkeypatch.setattr(diagnostics, 'psutil', _fake_psutil(process=broken))

    with caplog.at_level(logging.INFO):
        diagnostics.log_thread_status('after tile prefetch')

    assert 'Threads (after tile prefetch)' in caplog.text
    assert 'os=N/A' in caplog.text
