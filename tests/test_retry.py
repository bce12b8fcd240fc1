from __future__ import annotations

import pytest
from botocore.exceptions import ClientError

from fundflow.errors import UpstreamServiceError, ValidationError
from fundflow.retry import RetryPolicy, call_with_retry, is_transient_error


def test_backoff_is_exponential_capped_and_deterministic():
    policy = RetryPolicy(max_attempts=5, backoff_base_ms=500, backoff_max_ms=2000)
    first = policy.backoff_ms(key="fund-1:ocr", attempt=1)
    assert 500 <= first <= 600
    assert first == policy.backoff_ms(key="fund-1:ocr", attempt=1)
    assert 1000 <= policy.backoff_ms(key="fund-1:ocr", attempt=2) <= 1100
    assert 2000 <= policy.backoff_ms(key="fund-1:ocr", attempt=4) <= 2100


def test_policy_from_env_clamps_values():
    policy = RetryPolicy.from_env({"RETRY_MAX_ATTEMPTS": "0", "RETRY_BACKOFF_BASE_MS": "abc"})
    assert policy.max_attempts == 1
    assert policy.backoff_base_ms == 500
    assert RetryPolicy.from_env({}) == RetryPolicy()


def test_transient_error_classification():
    throttled = ClientError({"Error": {"Code": "ThrottlingException", "Message": "slow"}}, "Converse")
    denied = ClientError({"Error": {"Code": "AccessDeniedException", "Message": "no"}}, "Converse")
    server = ClientError(
        {"Error": {"Code": "Weird", "Message": "x"}, "ResponseMetadata": {"HTTPStatusCode": 503}}, "Converse"
    )
    assert is_transient_error(throttled)
    assert not is_transient_error(denied)
    assert is_transient_error(server)
    assert is_transient_error(UpstreamServiceError("s3", "x", retryable=True))
    assert not is_transient_error(ValidationError("bad"))
    assert not is_transient_error(ValueError("bad"))


def test_call_with_retry_retries_transient_then_succeeds():
    attempts = []
    sleeps = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise UpstreamServiceError("bedrock", "throttled", retryable=True)
        return "ok"

    result = call_with_retry(flaky, policy=RetryPolicy(max_attempts=3), key="k", sleep=sleeps.append)

    assert result == "ok"
    assert len(attempts) == 3
    assert len(sleeps) == 2


def test_call_with_retry_does_not_retry_permanent_errors():
    sleeps = []

    def broken():
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        call_with_retry(broken, policy=RetryPolicy(max_attempts=5), key="k", sleep=sleeps.append)
    assert sleeps == []
