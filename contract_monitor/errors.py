from enum import Enum
from typing import Iterable, Optional


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    RATE_LIMITED = "rate_limited"
    RANGE_TOO_WIDE = "range_too_wide"


RATE_LIMIT_PHRASES = (
    "max rate limit",
    "rate limit",
    "too many requests",
)
RANGE_TOO_WIDE_PHRASES = (
    "query returned more than",
    "block range",
    "range too large",
    "range is too large",
    "exceed maximum block range",
    "response size exceeded",
)


def _contains_any(message: str, phrases: Iterable[str]) -> bool:
    lowered = (message or "").lower()
    return any(p in lowered for p in phrases)


def classify_message(message: str, default: ErrorKind = ErrorKind.PROTOCOL) -> ErrorKind:
    if _contains_any(message, RANGE_TOO_WIDE_PHRASES):
        return ErrorKind.RANGE_TOO_WIDE
    if _contains_any(message, RATE_LIMIT_PHRASES):
        return ErrorKind.RATE_LIMITED
    return default


class MonitorError(Exception):
    def __init__(self, kind: ErrorKind, message: str, source: Optional[str] = None):
        self.kind = kind
        self.message = message
        self.source = source
        super().__init__(f"{source}: {message}" if source else message)


class RpcError(MonitorError):
    pass


class EndpointsExhaustedError(RpcError):
    """Every endpoint in the pool failed for one call."""

    def __init__(self, method: str, last_error: RpcError, kinds: Iterable[ErrorKind]):
        kinds = list(kinds)
        kind = ErrorKind.RANGE_TOO_WIDE if ErrorKind.RANGE_TOO_WIDE in kinds else last_error.kind
        self.method = method
        self.last_error = last_error
        super().__init__(
            kind,
            f"all RPC endpoints failed ({method}); last error: {last_error}",
            source=last_error.source,
        )


class ExplorerError(MonitorError):
    pass
