"""Process snapshot logging for long tile batches."""

import logging
import threading
from dataclasses import dataclass

import psutil

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class ProcessSnapshot:
    rss_mb: float | None
    available_mb: float | None
    python_threads: int
    os_threads: int | None


def take_snapshot() -> ProcessSnapshot:
    """RSS, free system memory and thread counts; fields psutil cannot read stay None."""
    rss_mb = available_mb = os_threads = None
    try:
        proc = psutil.Process()
        rss_mb = round(proc.memory_info().rss / MB, 1)
        os_threads = proc.num_threads()
        available_mb = round(psutil.virtual_memory().available / MB, 1)
    except psutil.Error as e:
        logger.debug('psutil could not read process state: %s', e)
    return ProcessSnapshot(
        rss_mb=rss_mb,
        available_mb=available_mb,
        python_threads=threading.active_count(),
        os_threads=os_threads,
    )


def _or_na(value: object) -> object:
    return 'N/A' if value is None else value


def _suffix(context: str) -> str:
    return f' ({context})' if context else ''


def log_memory_usage(context: str = '') -> None:
    snap = take_snapshot()
    logger.info(
        'Memory%s: RSS=%s MB, available=%s MB',
        _suffix(context),
        _or_na(snap.rss_mb),
        _or_na(snap.available_mb),
    )


def log_thread_status(context: str = '') -> None:
    snap = take_snapshot()
    logger.info(
        'Threads%s: python=%d, os=%s',
        _suffix(context),
        snap.python_threads,
        _or_na(snap.os_threads),
    )
