"""
Network error taxonomy shared by the RPC transport, executor and tracker.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

RATE_LIMIT_MARKERS = ("429", "too many requests", "rate limit", "rate-limit", "ratelimit")


class TransientNetworkError(Exception):
    """Timeout, connection reset, 5xx: safe to retry."""

    def __init__(self, message: str, endpoint: Optional[str] = None):
        super().__init__(message)
        self.endpoint = endpoint


class RateLimitedError(TransientNetworkError):
    """Endpoint answered 429 or an equivalent rate-limit message."""

    def __init__(self, message: str = "429 Too Many Requests", endpoint: Optional[str] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, endpoint)
        self.retry_after = retry_after


class AllEndpointsUnavailable(RateLimitedError):
    """Every configured endpoint is cooling down after rate limits."""

    def __init__(self, shortest_cooldown: float):
        super().__init__(f"All RPC endpoints in cooldown (shortest {shortest_cooldown:.2f}s)")
        self.shortest_cooldown = shortest_cooldown


class AllEndpointsFailed(TransientNetworkError):
    """Every endpoint was tried and none produced a result."""

    def __init__(self, errors: Dict[str, BaseException]):
        summary = "; ".join(f"{url}: {err}" for url, err in errors.items())
        super().__init__(f"All RPC endpoints failed: {summary}")
        self.errors = errors


class AllEndpointsRateLimited(AllEndpointsFailed, RateLimitedError):
    """Every endpoint failed and each failure was a rate limit."""


class RpcError(Exception):
    """JSON-RPC level error response that retrying will not fix."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None,
                 endpoint: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.data = data
        self.endpoint = endpoint


class TransactionFailedError(Exception):
    """The transaction landed and the program rejected it."""

    def __init__(self, signature: str, err: Any):
        super().__init__(f"Transaction {signature} failed on-chain: {err}")
        self.signature = signature
        self.err = err


def looks_rate_limited(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)
