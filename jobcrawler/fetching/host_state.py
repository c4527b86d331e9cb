from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from loguru import logger
from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from jobcrawler.storage.models.host_crawl_state_model import HostCrawlState


COOLDOWN_STEPS = (
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(minutes=60),
    timedelta(minutes=360),
    timedelta(minutes=1440),
)


DEFAULT_MAX_HOSTS = 4096


def cooldown_for(failures: int) -> timedelta:
    index = max(0, min(failures, len(COOLDOWN_STEPS)) - 1)
    return COOLDOWN_STEPS[index]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class HostPolitenessState:
    """In-memory pacing state for one host, shared by every worker."""

    host: str
    per_host_concurrency: int = 2
    # time.monotonic() instant before which no request may start
    next_allowed_at: float = 0.0
    consecutive_failures: int = 0
    last_error_category: Optional[str] = None
    # requests currently holding this state, between admission and bookkeeping
    in_use: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    in_flight: asyncio.Semaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.in_flight = asyncio.Semaphore(max(1, self.per_host_concurrency))

    def is_idle(self, now: float) -> bool:
        return self.in_use == 0 and not self.lock.locked() and self.next_allowed_at <= now

    def push_back(self, until: float) -> None:
        if until > self.next_allowed_at:
            self.next_allowed_at = until

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.last_error_category = None

    def record_failure(self, category: str) -> None:
        self.consecutive_failures += 1
        self.last_error_category = category


class HostStateArena:
    """Host states keyed by lowercase hostname.

    At most ``max_hosts`` states are kept once idle ones can be dropped; a
    state is idle when no request holds it and its pacing window has passed,
    so evicting it never lets a request start early.
    """

    def __init__(self, per_host_concurrency: int = 2, max_hosts: int = DEFAULT_MAX_HOSTS):
        self.per_host_concurrency = per_host_concurrency
        self.max_hosts = max(1, max_hosts)
        self._states: "OrderedDict[str, HostPolitenessState]" = OrderedDict()

    def get(self, host: str) -> HostPolitenessState:
        key = host.strip().lower()
        state = self._states.get(key)
        if state is not None:
            self._states.move_to_end(key)
            return state
        state = HostPolitenessState(host=key, per_host_concurrency=self.per_host_concurrency)
        self._states[key] = state
        self._evict_idle(keep=key)
        return state

    def _evict_idle(self, keep: str) -> None:
        if len(self._states) <= self.max_hosts:
            return
        now = time.monotonic()
        for key in list(self._states):
            if len(self._states) <= self.max_hosts:
                break
            if key != keep and self._states[key].is_idle(now):
                del self._states[key]

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, host: str) -> bool:
        return host.strip().lower() in self._states

    def seconds_until_allowed(self, host: str) -> float:
        state = self._states.get(host.strip().lower())
        if state is None:
            return 0.0
        return max(0.0, state.next_allowed_at - time.monotonic())


class HostCrawlStateService:
    """Durable per-host cooldown ledger backed by the ``host_crawl_state`` table."""

    async def next_allowed_at(self, host: str) -> Optional[datetime]:
        if not host or not host.strip():
            return None
        state = await HostCrawlState.filter(host=host.strip().lower()).first()
        if state is None:
            return None
        next_allowed = _as_utc(state.next_allowed_at)
        if next_allowed is not None and next_allowed > datetime.now(timezone.utc):
            return next_allowed
        return None

    async def is_in_cooldown(self, host: str) -> bool:
        return await self.next_allowed_at(host) is not None

    async def record_failure(self, host: str, error_category: str) -> Optional[datetime]:
        if not host or not host.strip():
            return None
        normalized = host.strip().lower()
        now = datetime.now(timezone.utc)

        try:
            await HostCrawlState.get_or_create(host=normalized)
        except IntegrityError:
            # a concurrent first failure inserted the row; the locked update below still applies
            pass

        async with in_transaction() as conn:
            state = (
                await HostCrawlState.filter(host=normalized)
                .using_db(conn)
                .select_for_update()
                .get()
            )

            failures = max(1, (state.consecutive_failures or 0) + 1)
            next_allowed = now + cooldown_for(failures)
            state.consecutive_failures = failures
            state.last_error_category = error_category
            state.last_attempt_at = now
            state.next_allowed_at = next_allowed
            await state.save(using_db=conn)

        logger.info(
            f"Host cooldown extended: host={normalized} failures={failures} "
            f"category={error_category} until={next_allowed.isoformat()}"
        )
        return next_allowed

    async def record_success(self, host: str) -> None:
        if not host or not host.strip():
            return
        state = await HostCrawlState.filter(host=host.strip().lower()).first()
        if state is None:
            return
        if not state.consecutive_failures and state.next_allowed_at is None:
            return
        state.consecutive_failures = 0
        state.next_allowed_at = None
        state.last_attempt_at = datetime.now(timezone.utc)
        await state.save()
