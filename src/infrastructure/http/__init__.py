"""HTTP client infrastructure."""
from infrastructure.http.client import make_http_session, make_ssl_context, make_timeout
from infrastructure.http.fetcher import (
    ResilientFetcher,
    is_transient_status,
    maybe_gunzip,
    not_found_is_absent,
)

__all__ = [
    'ResilientFetcher',
    'is_transient_status',
    'make_http_session',
    'make_ssl_context',
    'make_timeout',
    'maybe_gunzip',
    'not_found_is_absent',
]
