"""Pytest configuration and fixtures for geotile tests."""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src directory to path for imports
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from domain.models import SourceSettings  # noqa: E402


def _make_response(status=200, body=b'', headers=None):
    resp = AsyncMock()
    resp.status = status
    resp.read = AsyncMock(return_value=body)
    resp.headers = headers or {}
    resp.close = MagicMock()
    resp.release = MagicMock()
    return resp


def _make_session(responses):
    """Mock aiohttp session; responses is a list (consumed in order) or a callable(method, url, **kw)."""
    session = MagicMock()
    if callable(responses):
        session.request = AsyncMock(side_effect=responses)
    else:
        session.request = AsyncMock(side_effect=list(responses))
    session.close = AsyncMock()
    return session


@pytest.fixture
def make_response():
    """Factory for fake aiohttp responses."""
    return _make_response


@pytest.fixture
def make_session():
    """Factory for fake aiohttp sessions."""
    return _make_session


@pytest.fixture
def fast_source():
    """Source settings without retry delays."""
    return SourceSettings(
        url='https://tiles.test/{z}/{x}/{y}.png',
        user_agent='geotile-tests/1.0',
        max_retries=2,
        initial_retry_delay_s=0.0,
        max_retry_delay_s=0.0,
    )
