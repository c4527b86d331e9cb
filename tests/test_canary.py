from dataclasses import dataclass
from typing import Optional

import pytest

from jobcrawler.fetching.canary import (
    CONSECUTIVE_ERROR_THRESHOLD_EXCEEDED,
    PER_HOST_REQUEST_BUDGET_EXCEEDED,
    RATE_LIMIT_THRESHOLD_EXCEEDED,
    TIME_BUDGET_EXCEEDED,
    TOTAL_REQUEST_BUDGET_EXCEEDED,
    CanaryAbortError,
    CanaryBudget,
    check_deadline,
)


@dataclass
class Outcome:
    status_code: int = 200
    error_code: Optional[str] = None


def test_sixth_request_exceeds_total_budget():
    budget = CanaryBudget(max_total_requests=5, max_requests_per_host=0)

    for i in range(5):
        budget.before_request(f"host{i}.example.com")

    with pytest.raises(CanaryAbortError) as excinfo:
        budget.before_request("host9.example.com")

    assert excinfo.value.reason == TOTAL_REQUEST_BUDGET_EXCEEDED
    assert budget.total_requests == 5


def test_per_host_budget_counts_each_host_separately():
    budget = CanaryBudget(max_requests_per_host=2, max_total_requests=0)

    budget.before_request("a.example.com")
    budget.before_request("a.example.com")
    budget.before_request("b.example.com")

    with pytest.raises(CanaryAbortError) as excinfo:
        budget.before_request("a.example.com")

    assert excinfo.value.reason == PER_HOST_REQUEST_BUDGET_EXCEEDED
    assert budget.requests_for_host("b.example.com") == 1


def test_rate_limit_share_trips_once_enough_requests_were_made():
    budget = CanaryBudget(max_429_rate=0.5, min_requests_for_429_rate=2)

    budget.before_request("a.example.com")
    budget.record_result(Outcome(status_code=429))
    budget.before_request("a.example.com")

    with pytest.raises(CanaryAbortError) as excinfo:
        budget.record_result(Outcome(status_code=200))

    assert excinfo.value.reason == RATE_LIMIT_THRESHOLD_EXCEEDED


def test_consecutive_errors_reset_on_success():
    budget = CanaryBudget(max_consecutive_errors=3, max_429_rate=0)

    budget.record_result(Outcome(error_code="timeout"))
    budget.record_result(Outcome(status_code=503))
    budget.record_result(Outcome(status_code=404))
    assert budget.consecutive_errors == 0

    budget.record_result(Outcome(error_code="io_error"))
    budget.record_result(Outcome(error_code="timeout"))
    with pytest.raises(CanaryAbortError) as excinfo:
        budget.record_result(Outcome(status_code=500))

    assert excinfo.value.reason == CONSECUTIVE_ERROR_THRESHOLD_EXCEEDED


def test_abort_is_sticky():
    budget = CanaryBudget(max_total_requests=1)
    budget.before_request("a.example.com")
    with pytest.raises(CanaryAbortError):
        budget.before_request("a.example.com")

    # later calls of any kind re-raise the first reason
    for call in (
        lambda: budget.before_request("b.example.com"),
        lambda: budget.record_result(Outcome()),
        budget.check_deadline,
    ):
        with pytest.raises(CanaryAbortError) as excinfo:
            call()
        assert excinfo.value.reason == TOTAL_REQUEST_BUDGET_EXCEEDED

    assert budget.snapshot()["aborted"] is True
    assert budget.snapshot()["abort_reason"] == TOTAL_REQUEST_BUDGET_EXCEEDED


def test_expired_deadline_aborts():
    budget = CanaryBudget(deadline_seconds=0)

    with pytest.raises(CanaryAbortError) as excinfo:
        check_deadline(budget)

    assert excinfo.value.reason == TIME_BUDGET_EXCEEDED
    assert budget.seconds_remaining() == 0.0
    check_deadline(None)


def test_limits_are_clamped():
    budget = CanaryBudget(max_attempts_per_request=0, request_timeout=0.1)

    assert budget.max_attempts_per_request == 1
    assert budget.request_timeout == 1.0
    assert budget.seconds_remaining() is None
