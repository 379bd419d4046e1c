from __future__ import annotations


class GoblinError(Exception):
    """Base class for errors raised by statsgoblin."""


class InvalidRequestError(GoblinError):
    """Caller supplied a malformed time range, interval or limit."""


class StoreError(GoblinError):
    """OpenSearch rejected a request; retrying will not help."""

    retryable = False

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientStoreError(StoreError):
    """Connection failure, timeout or overload; the call may succeed later."""

    retryable = True
