"""
Error taxonomy for the sync engine.

Every failure that can end a run derives from ``SyncError`` so the run
boundary in :mod:`syncer.engine` can catch them in one place and record a
readable message on the run status.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for sync failures."""


class TransientTransportError(SyncError):
    """HTTP 5xx, HTTP 429 or a network-level failure.

    Retried by the Graph client; raised to callers only once the retry
    budget is exhausted.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermanentAPIError(SyncError):
    """A 4xx response (other than 429) or an ``error`` envelope in a 200."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MissingCredentialError(SyncError):
    """No usable access token for the page."""


class PersistenceError(SyncError):
    """A store write failed."""
