"""Custom exceptions for the OKX exporter."""

from typing import Optional

# Close codes that point at a client bug or an incompatible wire contract;
# reconnecting cannot fix these.
CLOSE_PROTOCOL_ERROR = 1002
CLOSE_UNSUPPORTED_DATA = 1003
CLOSE_ABNORMAL = 1006
CLOSE_POLICY_VIOLATION = 1008
CLOSE_MESSAGE_TOO_BIG = 1009

FATAL_CLOSE_CODES = frozenset({
    CLOSE_PROTOCOL_ERROR,
    CLOSE_UNSUPPORTED_DATA,
    CLOSE_MESSAGE_TOO_BIG,
    CLOSE_POLICY_VIOLATION,
})


class ExporterError(Exception):
    """Base exception for exporter errors."""
    pass


class ConfigurationError(ExporterError):
    """Raised when configuration is invalid."""
    pass


class ConnectError(ExporterError):
    """Raised when dialing, handshaking or the initial subscription fails."""
    pass


class TransportTimeout(ExporterError):
    """Raised when a read or write deadline passes without activity."""
    pass


class StreamClosed(ExporterError):
    """Raised when the websocket stream is closed."""

    def __init__(self, code: int = CLOSE_ABNORMAL, reason: str = ""):
        self.code = code
        self.reason = reason
        super().__init__(f"stream closed (code={code}, reason={reason!r})")

    @classmethod
    def from_exception(cls, exc) -> "StreamClosed":
        """
        Build from a websockets ConnectionClosed exception.

        A stream that dropped without a close frame is reported as 1006.
        """
        rcvd = getattr(exc, "rcvd", None)
        if rcvd is None:
            return cls(CLOSE_ABNORMAL, "")
        return cls(rcvd.code, rcvd.reason)


class DecodeError(ExporterError):
    """Raised when a frame or payload does not match the wire contract."""
    pass


class ShortCandleArrayError(DecodeError):
    """Raised when a candle array has fewer than 6 values."""

    def __init__(self, length: Optional[int] = None):
        msg = "candle data array must have at least 6 values"
        if length is not None:
            msg = f"{msg}, got {length}"
        super().__init__(msg)


class ProcessError(ExporterError):
    """Raised when a data message cannot be turned into metric updates."""

    def __init__(self, message: str, channel: str = ""):
        self.channel = channel
        super().__init__(message)


def is_recoverable(exc: BaseException) -> bool:
    """
    Decide whether an epoch-ending error should trigger a reconnect.

    Timeouts and ordinary remote closes are recoverable. Closes with a code
    in FATAL_CLOSE_CODES and every other error are fatal.
    """
    if isinstance(exc, TransportTimeout):
        return True
    if isinstance(exc, StreamClosed):
        return exc.code not in FATAL_CLOSE_CODES
    return False
