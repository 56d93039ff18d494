import pytest

from contentgen.errors import LLMError
from contentgen.retry import RetryPolicy


def test_retry_succeeds_after_transient_errors():
    delays = []
    calls = {"count": 0}

    def _flaky():
        calls["count"] += 1
        if calls["count"] < 3:
            raise LLMError("timeout", retryable=True)
        return "ok"

    policy = RetryPolicy(max_attempts=3, base_delay_seconds=1.0, sleep=delays.append)

    assert policy.run(_flaky) == "ok"
    assert calls["count"] == 3
    assert delays == [1.0, 2.0]


def test_retry_stops_on_non_retryable_error():
    delays = []
    calls = {"count": 0}

    def _broken():
        calls["count"] += 1
        raise LLMError("http_error", "400", retryable=False, status=400)

    with pytest.raises(LLMError):
        RetryPolicy(max_attempts=5, sleep=delays.append).run(_broken)

    assert calls["count"] == 1
    assert delays == []


def test_retry_gives_up_after_max_attempts():
    retries = []

    def _always_down():
        raise LLMError("network_error", retryable=True)

    policy = RetryPolicy(max_attempts=2, sleep=lambda _: None)
    with pytest.raises(LLMError):
        policy.run(_always_down, on_retry=lambda attempt, exc: retries.append(attempt))

    assert retries == [1]


def test_delay_is_capped():
    policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=5.0)

    assert [policy.delay_for(attempt) for attempt in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]
