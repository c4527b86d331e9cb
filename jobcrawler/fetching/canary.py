"""Run-scoped request budget for bounded diagnostic crawls.

A ``CanaryBudget`` is created at the start of a canary run and handed to every
fetch made during that run. It counts requests and outcomes and raises
``CanaryAbortError`` as soon as any threshold is crossed. Once tripped it stays
tripped: every later call re-raises the original reason, so one caller that
swallows the error cannot let the rest of the run continue.
"""

from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Protocol

from loguru import logger

TOTAL_REQUEST_BUDGET_EXCEEDED = "total_request_budget_exceeded"
PER_HOST_REQUEST_BUDGET_EXCEEDED = "per_host_request_budget_exceeded"
CONSECUTIVE_ERROR_THRESHOLD_EXCEEDED = "consecutive_error_threshold_exceeded"
RATE_LIMIT_THRESHOLD_EXCEEDED = "rate_limit_threshold_exceeded"
TIME_BUDGET_EXCEEDED = "canary_time_budget_exceeded"


class CanaryAbortError(Exception):
    """Raised to unwind an entire canary run."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class _Outcome(Protocol):
    status_code: int
    error_code: Optional[str]


class CanaryBudget:
    def __init__(
        self,
        *,
        max_requests_per_host: int = 75,
        max_total_requests: int = 5000,
        max_429_rate: float = 0.08,
        min_requests_for_429_rate: int = 25,
        max_consecutive_errors: int = 25,
        max_attempts_per_request: int = 1,
        request_timeout: float = 20.0,
        deadline_seconds: Optional[float] = None,
    ):
        # a zero limit disables that check
        self.max_requests_per_host = max(0, max_requests_per_host)
        self.max_total_requests = max(0, max_total_requests)
        self.max_429_rate = max(0.0, max_429_rate)
        self.min_requests_for_429_rate = max(1, min_requests_for_429_rate)
        self.max_consecutive_errors = max(0, max_consecutive_errors)
        self.max_attempts_per_request = max(1, max_attempts_per_request)
        self.request_timeout = max(1.0, float(request_timeout))
        self.deadline: Optional[float] = (
            time.monotonic() + deadline_seconds if deadline_seconds is not None else None
        )

        self._lock = threading.Lock()
        self._host_counts: Dict[str, int] = {}
        self.total_requests = 0
        self.total_429 = 0
        self.consecutive_errors = 0
        self.aborted = False
        self.abort_reason: Optional[str] = None

    # -------------------------------------------------------
    def before_request(self, host: Optional[str]) -> None:
        with self._lock:
            self._raise_if_aborted()
            self._check_deadline_locked()
            if self.max_total_requests > 0 and self.total_requests >= self.max_total_requests:
                self._abort(TOTAL_REQUEST_BUDGET_EXCEEDED)
            if host and self.max_requests_per_host > 0:
                host_count = self._host_counts.get(host, 0)
                if host_count >= self.max_requests_per_host:
                    self._abort(PER_HOST_REQUEST_BUDGET_EXCEEDED)
                self._host_counts[host] = host_count + 1
            self.total_requests += 1

    def record_result(self, result: Optional[_Outcome]) -> None:
        with self._lock:
            self._raise_if_aborted()
            if result is None:
                return
            if result.status_code == 429:
                self.total_429 += 1
            if self._is_error(result):
                self.consecutive_errors += 1
            else:
                self.consecutive_errors = 0

            if self.max_consecutive_errors > 0 and self.consecutive_errors >= self.max_consecutive_errors:
                self._abort(CONSECUTIVE_ERROR_THRESHOLD_EXCEEDED)
            if self.max_429_rate > 0 and self.total_requests >= self.min_requests_for_429_rate:
                rate = self.total_429 / max(1, self.total_requests)
                if rate >= self.max_429_rate:
                    self._abort(RATE_LIMIT_THRESHOLD_EXCEEDED)

    def check_deadline(self) -> None:
        with self._lock:
            self._raise_if_aborted()
            self._check_deadline_locked()

    def seconds_remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def requests_for_host(self, host: str) -> int:
        with self._lock:
            return self._host_counts.get(host, 0)

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "total_requests": self.total_requests,
                "total_429": self.total_429,
                "consecutive_errors": self.consecutive_errors,
                "hosts": len(self._host_counts),
                "aborted": self.aborted,
                "abort_reason": self.abort_reason,
            }

    # -------------------------------------------------------
    @staticmethod
    def _is_error(result: _Outcome) -> bool:
        if result.error_code:
            return True
        return result.status_code == 429 or result.status_code >= 500

    def _check_deadline_locked(self) -> None:
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self._abort(TIME_BUDGET_EXCEEDED)

    def _raise_if_aborted(self) -> None:
        if self.aborted:
            raise CanaryAbortError(self.abort_reason or "canary_aborted")

    def _abort(self, reason: str) -> None:
        self.aborted = True
        self.abort_reason = reason
        logger.warning(
            f"Canary budget tripped: reason={reason} total={self.total_requests} "
            f"429s={self.total_429} consecutive_errors={self.consecutive_errors}"
        )
        raise CanaryAbortError(reason)


def check_deadline(budget: Optional[CanaryBudget]) -> None:
    if budget is not None:
        budget.check_deadline()
