"""Resilient HTTP fetching shared by every remote data source.

One ResilientFetcher is created per source (raster tiles, SRTM, Overpass).
It owns the source's concurrency slots, request pacing and retry policy;
the only per-source differences are the URL, the absence rule and whatever
the owner does with the returned bytes.
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import time
import zlib
from http import HTTPStatus
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

import aiohttp

from domain.errors import FetchError
from infrastructure.http.client import make_http_session, make_timeout
from shared.constants import (
    GZIP_MAGIC,
    HTTP_5XX_MAX,
    HTTP_5XX_MIN,
    HTTP_NOT_FOUND,
    HTTP_REQUEST_TIMEOUT,
    HTTP_SERVICE_UNAVAILABLE,
    HTTP_TOO_MANY_REQUESTS,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from domain.models import SourceSettings

logger = logging.getLogger(__name__)


def not_found_is_absent(status: int) -> bool:
    """Default absence rule: only 404 means the resource does not exist."""
    return status == HTTP_NOT_FOUND


def is_transient_status(status: int) -> bool:
    return status in (HTTP_REQUEST_TIMEOUT, HTTP_TOO_MANY_REQUESTS) or (
        HTTP_5XX_MIN <= status < HTTP_5XX_MAX
    )


def maybe_gunzip(data: bytes) -> bytes:
    """Decompress payloads that are still gzip-wrapped (e.g. *.hgt.gz objects)."""
    if data[:2] == GZIP_MAGIC:
        return gzip.decompress(data)
    return data


def parse_retry_after(value: Any) -> float | None:
    """Seconds from a Retry-After header; the HTTP-date form is ignored."""
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, seconds)


def _release_response(resp: Any) -> None:
    # Освобождение ресурсов ответа
    release = getattr(resp, 'release', None)
    if callable(release):
        try:
            release()
        except Exception as e:  # noqa: BLE001
            logger.debug('Failed to release HTTP response: %s', e, exc_info=True)


class _TransientError(Exception):
    """A failed attempt that is worth retrying."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class ResilientFetcher:
    """Bounded, paced, retrying HTTP fetcher for one remote source.

    Usage:
        async with ResilientFetcher(settings) as fetcher:
            data = await fetcher.fetch(url)   # bytes, or None when absent
    """

    def __init__(
        self,
        settings: SourceSettings,
        *,
        is_absent: Callable[[int], bool] = not_found_is_absent,
        session: aiohttp.ClientSession | None = None,
        name: str | None = None,
    ) -> None:
        self.settings = settings
        self.name = name or urlsplit(settings.url).netloc or settings.url
        self._is_absent = is_absent
        self._session = session
        self._owns_session = session is None
        self._semaphore = asyncio.Semaphore(settings.max_concurrency)
        self._pace_lock = asyncio.Lock()
        self._last_request_at: float | None = None
        self._stats = {'requests': 0, 'retries': 0, 'absent': 0, 'failures': 0}

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    def retry_delay(self, retry_index: int) -> float:
        """Delay before retry number retry_index (0-based), capped."""
        delay = self.settings.initial_retry_delay_s * (2**retry_index)
        return min(delay, self.settings.max_retry_delay_s)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = make_http_session(self.settings)
            self._owns_session = True
        return self._session

    async def _pace(self) -> None:
        """Keep at least min_request_interval_s between two requests of this source."""
        interval = self.settings.min_request_interval_s
        async with self._pace_lock:
            if interval > 0 and self._last_request_at is not None:
                wait = self._last_request_at + interval - time.monotonic()
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request_at = time.monotonic()

    async def fetch(
        self,
        url: str,
        *,
        method: str = 'GET',
        data: Any = None,
        label: str | None = None,
    ) -> bytes | None:
        """Fetch one resource.

        Returns the (decompressed) body, or None when the source reports the
        resource as absent. Raises FetchError once retries are exhausted or on
        a definitive client error. Cancellation is never retried.
        """
        label = label or url
        attempts = self.settings.max_retries + 1
        async with self._semaphore:
            last_error: _TransientError | None = None
            for attempt in range(attempts):
                if last_error is not None:
                    delay = self.retry_delay(attempt - 1)
                    if last_error.retry_after is not None:
                        delay = min(last_error.retry_after, self.settings.max_retry_delay_s)
                    self._stats['retries'] += 1
                    logger.warning(
                        '%s: retrying %s in %.1fs (attempt %d/%d): %s',
                        self.name,
                        label,
                        delay,
                        attempt + 1,
                        attempts,
                        last_error,
                    )
                    await asyncio.sleep(delay)
                try:
                    return await self._attempt(url, method=method, data=data, label=label)
                except _TransientError as e:
                    last_error = e

        self._stats['failures'] += 1
        status = last_error.status if last_error is not None else None
        msg = f'Failed to fetch {label} after {attempts} attempts: {last_error}'
        raise FetchError(msg, url=url, status=status, attempts=attempts)

    async def _attempt(
        self,
        url: str,
        *,
        method: str,
        data: Any,
        label: str,
    ) -> bytes | None:
        session = self._get_session()
        await self._pace()
        self._stats['requests'] += 1
        try:
            resp = await session.request(
                method,
                url,
                data=data,
                timeout=make_timeout(self.settings),
            )
        except (aiohttp.ClientError, TimeoutError) as e:
            msg = f'{type(e).__name__}: {e}'
            raise _TransientError(msg) from e

        try:
            sc = resp.status
            if sc == HTTPStatus.OK:
                try:
                    payload = await resp.read()
                except (aiohttp.ClientError, TimeoutError) as e:
                    msg = f'Body read failed: {type(e).__name__}: {e}'
                    raise _TransientError(msg, status=sc) from e
                try:
                    body = maybe_gunzip(payload)
                except (OSError, EOFError, zlib.error) as e:
                    msg = f'Corrupt gzip payload: {e}'
                    raise _TransientError(msg, status=sc) from e
                logger.debug('%s: fetched %s (%d bytes)', self.name, label, len(body))
                return body
            if self._is_absent(sc):
                self._stats['absent'] += 1
                logger.debug('%s: no data at %s (HTTP %s)', self.name, label, sc)
                return None
            if is_transient_status(sc):
                retry_after = None
                if sc in (HTTP_TOO_MANY_REQUESTS, HTTP_SERVICE_UNAVAILABLE):
                    retry_after = parse_retry_after(resp.headers.get('Retry-After'))
                msg = f'HTTP {sc}'
                raise _TransientError(msg, status=sc, retry_after=retry_after)
            self._stats['failures'] += 1
            msg = f'HTTP {sc} for {label}'
            raise FetchError(msg, url=url, status=sc)
        finally:
            _release_response(resp)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> ResilientFetcher:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
