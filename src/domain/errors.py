"""Exception taxonomy for remote data acquisition.

Invalid input is reported with the builtin ValueError, disk problems with the
builtin OSError and cancellation with asyncio.CancelledError. Only remote
failures that survive the retry policy get their own types.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from domain.models import TileFetchError


class FetchError(RuntimeError):
    """A remote request failed definitively or exhausted its retries."""

    def __init__(
        self,
        message: str,
        *,
        url: str,
        status: int | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status = status
        self.attempts = attempts


class TileBatchError(RuntimeError):
    """No tile of a batch could be obtained; the map area cannot be built."""

    def __init__(self, message: str, errors: Sequence[TileFetchError]) -> None:
        super().__init__(message)
        self.errors = list(errors)
