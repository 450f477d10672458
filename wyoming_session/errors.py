"""Error types raised by the Wyoming session client."""

from typing import Optional


class WyomingError(Exception):
    """Base class for all Wyoming session errors."""


class FramingError(WyomingError):
    """A line or length field on the stream could not be framed."""


class ProtocolViolation(WyomingError):
    """A message or call arrived out of the expected exchange sequence."""


class ServerError(WyomingError):
    """The server answered with an ``error`` event."""

    def __init__(self, text: str, code: Optional[str] = None):
        self.text = text
        self.code = code
        message = f"Server error: {text}"
        if code:
            message = f"{message} (code: {code})"
        super().__init__(message)


class SessionConnectionError(WyomingError, ConnectionError):
    """The underlying stream failed, closed or was never opened."""


class SessionTimeoutError(WyomingError, TimeoutError):
    """No response arrived before the caller's deadline."""
