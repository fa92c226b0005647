"""Tests for the retry policy."""

import pytest

from resilink.config import RetryConfig
from resilink.retry_policy import RetryPolicy
from resilink.types import FailureKind, RetryAction


class TestRetryable:
    @pytest.mark.parametrize("status", [500, 502, 503, 504])
    def test_transient_statuses_retry(self, status):
        assert RetryPolicy().is_retryable(status) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422, 429, 501])
    def test_other_statuses_do_not_retry(self, status):
        assert RetryPolicy().is_retryable(status) is False

    def test_timeout_retries(self):
        assert RetryPolicy().is_retryable(FailureKind.TIMEOUT) is True

    def test_network_failure_does_not_retry(self):
        assert RetryPolicy().is_retryable(FailureKind.NETWORK) is False

    def test_timeout_retry_can_be_disabled(self):
        policy = RetryPolicy(RetryConfig(retry_timeouts=False))
        assert policy.is_retryable(FailureKind.TIMEOUT) is False


class TestDecide:
    def test_delays_double_from_one_second(self):
        policy = RetryPolicy()
        delays = [policy.decide(503, attempt).delay for attempt in (1, 2, 3)]
        assert delays == [1.0, 2.0, 4.0]

    def test_gives_up_after_third_retry(self):
        decision = RetryPolicy().decide(503, 4)
        assert decision.action == RetryAction.GIVE_UP
        assert decision.should_retry is False
        assert decision.delay == 0.0

    def test_non_retryable_gives_up_on_first_attempt(self):
        assert RetryPolicy().decide(404, 1).should_retry is False

    def test_custom_schedule(self):
        policy = RetryPolicy(RetryConfig(max_retries=2, base_delay=0.5, multiplier=3.0))
        assert policy.decide(FailureKind.TIMEOUT, 1).delay == 0.5
        assert policy.decide(FailureKind.TIMEOUT, 2).delay == 1.5
        assert policy.decide(FailureKind.TIMEOUT, 3).should_retry is False

    def test_max_retries_exposed(self):
        assert RetryPolicy().max_retries == 3
