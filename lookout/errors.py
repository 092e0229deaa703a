"""Error types raised at the I/O boundaries."""

from typing import Optional


class PresenceError(Exception):
    """Base error for Lookout."""


class TransportUnavailable(PresenceError):
    """The push channel is not connected."""


class FetchFailure(PresenceError):
    """An HTTP request to the machine API failed (network or non-2xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
