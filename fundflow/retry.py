from __future__ import annotations

import hashlib
import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from fundflow.errors import ApiError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_AWS_CODES = {
    "ThrottlingException",
    "Throttling",
    "ThrottledException",
    "TooManyRequestsException",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "SlowDown",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalServerError",
    "InternalServerException",
    "ModelNotReadyException",
}

_TRANSIENT_EXCEPTION_NAMES = {
    "EndpointConnectionError",
    "ConnectTimeoutError",
    "ReadTimeoutError",
    "ConnectionClosedError",
    "APIConnectionError",
    "APITimeoutError",
    "RateLimitError",
    "InternalServerError",
}


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_ms: int = 500
    backoff_max_ms: int = 8000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RetryPolicy":
        env = os.environ if environ is None else environ
        return cls(
            max_attempts=_env_int(env, "RETRY_MAX_ATTEMPTS", default=3, minimum=1),
            backoff_base_ms=_env_int(env, "RETRY_BACKOFF_BASE_MS", default=500, minimum=0),
            backoff_max_ms=_env_int(env, "RETRY_BACKOFF_MAX_MS", default=8000, minimum=0),
        )

    @staticmethod
    def _jitter_ms(*, key: str, attempt: int) -> int:
        digest = hashlib.sha256(f"{key}:{attempt}".encode("utf-8")).digest()
        return int.from_bytes(digest[:2], byteorder="big") % 101

    def backoff_ms(self, *, key: str, attempt: int) -> int:
        normalized = max(1, int(attempt))
        base = max(0, self.backoff_base_ms)
        cap = max(base, self.backoff_max_ms)
        return min(cap, base * (2 ** (normalized - 1))) + self._jitter_ms(key=key, attempt=normalized)


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, ApiError):
        return exc.retryable
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        error = response.get("Error") or {}
        if str(error.get("Code", "")) in _TRANSIENT_AWS_CODES:
            return True
        status = (response.get("ResponseMetadata") or {}).get("HTTPStatusCode")
        if isinstance(status, int) and status >= 500:
            return True
    return type(exc).__name__ in _TRANSIENT_EXCEPTION_NAMES


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    key: str,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as exc:
            if attempt >= policy.max_attempts or not is_transient_error(exc):
                raise
            delay_ms = policy.backoff_ms(key=key, attempt=attempt)
            logger.warning(
                "transient failure in %s (attempt %d/%d), retrying in %dms: %s",
                key,
                attempt,
                policy.max_attempts,
                delay_ms,
                exc,
            )
            sleep(delay_ms / 1000.0)
            attempt += 1
