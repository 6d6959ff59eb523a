from __future__ import annotations

import ssl
from typing import TYPE_CHECKING

import aiohttp
import certifi

if TYPE_CHECKING:
    from domain.models import SourceSettings


def make_ssl_context() -> ssl.SSLContext:
    # Сертификаты из certifi: системное хранилище бывает неполным
    return ssl.create_default_context(cafile=certifi.where())


def make_timeout(settings: SourceSettings) -> aiohttp.ClientTimeout:
    return aiohttp.ClientTimeout(
        total=settings.timeout_s,
        sock_connect=min(settings.timeout_s, 30.0),
    )


def make_http_session(settings: SourceSettings) -> aiohttp.ClientSession:
    """Create a session for one remote source.

    The User-Agent is sent with every request; OSM and Overpass usage
    policies reject clients without one. Connection pool size follows the
    source's concurrency limit.
    """
    connector = aiohttp.TCPConnector(
        ssl=make_ssl_context(),
        limit=max(1, settings.max_concurrency),
    )
    return aiohttp.ClientSession(
        connector=connector,
        timeout=make_timeout(settings),
        headers={'User-Agent': settings.user_agent},
        auto_decompress=True,
    )
