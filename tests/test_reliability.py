"""
Tests for retry with exponential backoff.
"""

import pytest

from keg.core.errors import NetworkError
from keg.core.reliability.backoff import RetryPolicy, call_with_retry


def _transient(exc: Exception) -> bool:
    return isinstance(exc, NetworkError) and exc.transient


class Flaky:
    """Fails ``failures`` times, then returns ``"ok"``."""

    def __init__(self, failures: int, transient: bool = True):
        self.failures = failures
        self.transient = transient
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise NetworkError(f"failure {self.calls}", transient=self.transient)
        return "ok"


class TestRetryPolicy:
    def test_exponential_growth(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=100.0, jitter=0.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0.0)
        assert policy.delay_for(10) == 5.0

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay=2.0, jitter=0.5)
        for _ in range(50):
            assert 2.0 <= policy.delay_for(1) <= 3.0


class TestCallWithRetry:
    def test_recovers_from_transient(self):
        fn = Flaky(2)
        sleeps = []
        result = call_with_retry(
            fn, policy=RetryPolicy(max_attempts=3, jitter=0.0),
            is_transient=_transient, sleep=sleeps.append,
        )
        assert result == "ok"
        assert fn.calls == 3
        assert sleeps == [1.0, 2.0]

    def test_gives_up_after_max_attempts(self):
        fn = Flaky(10)
        with pytest.raises(NetworkError, match="failure 3"):
            call_with_retry(
                fn, policy=RetryPolicy(max_attempts=3),
                is_transient=_transient, sleep=lambda _: None,
            )
        assert fn.calls == 3

    def test_permanent_not_retried(self):
        fn = Flaky(1, transient=False)
        with pytest.raises(NetworkError):
            call_with_retry(
                fn, policy=RetryPolicy(max_attempts=5),
                is_transient=_transient, sleep=lambda _: None,
            )
        assert fn.calls == 1

    def test_single_attempt_policy(self):
        fn = Flaky(1)
        with pytest.raises(NetworkError):
            call_with_retry(
                fn, policy=RetryPolicy(max_attempts=1),
                is_transient=_transient, sleep=lambda _: None,
            )
        assert fn.calls == 1
