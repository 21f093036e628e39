"""Exception hierarchy shared by the Discogs services."""

from __future__ import annotations


class RecordSyncError(Exception):
    """Base class for all errors raised by the sync engine."""


class AuthProtocolError(RecordSyncError):
    """The OAuth handshake was rejected or returned a malformed payload."""

    def __init__(
        self, message: str, *, status: int | None = None, body: str | None = None
    ):
        super().__init__(message)
        self.status = status
        self.body = body


class CatalogApiError(RecordSyncError):
    """The catalog API answered with a non-success status."""

    def __init__(self, status: int, body: str):
        super().__init__(f"Discogs API error {status}: {body}")
        self.status = status
        self.body = body


class RateLimitExceededError(CatalogApiError):
    """Repeated 429 responses exhausted the configured retry ceiling."""

    def __init__(self, attempts: int, body: str = ""):
        super().__init__(429, body)
        self.attempts = attempts


class TokenDecryptionError(RecordSyncError):
    """An encrypted token could not be decoded or failed authentication."""


class OwnerBusyError(RecordSyncError):
    """Another sync or enrichment run currently holds the owner's lease."""

    def __init__(self, user_id: str):
        super().__init__(f"A sync or enrichment run is already active for {user_id}")
        self.user_id = user_id


class SyncCooldownError(RecordSyncError):
    """The previous sync is too recent to start another one."""

    def __init__(self, retry_after_seconds: int):
        super().__init__(
            f"Please wait {retry_after_seconds} seconds before syncing again"
        )
        self.retry_after_seconds = retry_after_seconds
