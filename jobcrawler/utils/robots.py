import asyncio
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from loguru import logger

from jobcrawler.fetching.canary import CanaryBudget
from jobcrawler.fetching.polite_fetcher import TEXT_ACCEPT, PoliteFetcher
from jobcrawler.monitoring.metrics_server import ROBOTS_DECISIONS
from jobcrawler.utils.config_loader import RobotsSettings
from jobcrawler.utils.url_utils import ensure_scheme, get_domain, path_with_query


@lru_cache(maxsize=4096)
def _wildcard_regex(pattern: str) -> "re.Pattern[str]":
    parts = ["^"]
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "$":
            parts.append("$")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts))


@dataclass(frozen=True)
class RobotsRule:
    path: str
    allow: bool

    def matches(self, subject: str) -> bool:
        pattern = self.path if self.path.startswith("/") else "/" + self.path
        if "*" not in pattern and "$" not in pattern:
            return subject.startswith(pattern)
        return _wildcard_regex(pattern).search(subject) is not None


@dataclass(frozen=True)
class RobotsRules:
    """Allow/Disallow rules of the ``*`` group plus every Sitemap hint."""

    rules: Tuple[RobotsRule, ...] = ()
    sitemap_urls: Tuple[str, ...] = ()

    @classmethod
    def allow_all(cls) -> "RobotsRules":
        return cls()

    @classmethod
    def disallow_all(cls) -> "RobotsRules":
        return cls(rules=(RobotsRule("/", False),))

    def is_allowed(self, path_and_query: Optional[str]) -> bool:
        if not self.rules:
            return True

        subject = path_and_query if path_and_query and path_and_query.strip() else "/"
        best: Optional[RobotsRule] = None
        best_length = -1
        for rule in self.rules:
            if not rule.matches(subject):
                continue
            length = len(rule.path)
            if length > best_length:
                best, best_length = rule, length
            elif length == best_length and best is not None and rule.allow and not best.allow:
                best = rule
        return best is None or best.allow

    @classmethod
    def parse(cls, robots_text: Optional[str]) -> "RobotsRules":
        if not robots_text or not robots_text.strip():
            return cls.allow_all()

        sitemaps: List[str] = []
        rules: List[RobotsRule] = []
        agents: List[str] = []
        group_relevant = False
        last_was_agent = False

        for raw_line in robots_text.splitlines():
            line = raw_line.split("#", 1)[0].strip()
            if not line:
                # blank line closes the current group
                agents.clear()
                group_relevant = False
                last_was_agent = False
                continue

            key, sep, value = line.partition(":")
            if not sep or not key.strip():
                continue
            key = key.strip().lower()
            value = value.strip()

            if key == "user-agent":
                if not last_was_agent:
                    agents.clear()
                agents.append(value.lower())
                group_relevant = "*" in agents
                last_was_agent = True
                continue

            last_was_agent = False
            if key == "sitemap":
                if value:
                    sitemaps.append(value)
                continue

            if group_relevant and key in ("allow", "disallow") and value:
                rules.append(RobotsRule(value, key == "allow"))

        return cls(rules=tuple(rules), sitemap_urls=tuple(sitemaps))


class RobotsHandler:
    """Fetch and cache robots.txt rules per host.

    A host whose robots.txt is not a 2xx response (any status, transport
    error or cooldown) is "unavailable": ``RobotsSettings.fail_open`` picks
    allow-all or disallow-all for it, and ``allow_ats_adapter_when_unavailable``
    lets ATS feed traffic through a disallow-all decision. An empty 2xx
    robots.txt allows everything.
    """

    def __init__(self, fetcher: PoliteFetcher, settings: Optional[RobotsSettings] = None):
        self.fetcher = fetcher
        self.settings = settings or RobotsSettings()
        self.cache_ttl = self.settings.cache_ttl_hours * 3600
        self.unavailable_ttl = self.settings.unavailable_ttl_hours * 3600

        self._cache: Dict[str, Tuple[float, RobotsRules]] = {}
        self._unavailable: "OrderedDict[str, float]" = OrderedDict()
        self._host_locks: Dict[str, asyncio.Lock] = {}
        # tasks holding or waiting on each host lock; the lock is dropped at zero
        self._lock_users: Dict[str, int] = {}

    # -------------------------------------------------------
    async def rules_for_host(self, host: str, budget: Optional[CanaryBudget] = None) -> RobotsRules:
        if not host or not host.strip():
            return RobotsRules.allow_all()
        key = host.strip().lower()

        cached = self._cached(key)
        if cached is not None:
            return cached

        lock = self._host_locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                # another task may have loaded it while we waited
                cached = self._cached(key)
                if cached is not None:
                    return cached
                rules, ttl = await self._load_rules(key, budget)
                self._cache[key] = (time.monotonic() + ttl, rules)
                return rules
        finally:
            self._release_lock(key)

    async def is_allowed(self, url: str, budget: Optional[CanaryBudget] = None) -> bool:
        target = ensure_scheme(url)
        host = get_domain(target) if target else ""
        if not host:
            return True
        rules = await self.rules_for_host(host, budget)
        allowed = rules.is_allowed(path_with_query(target))
        ROBOTS_DECISIONS.labels(decision="allowed" if allowed else "blocked").inc()
        return allowed

    async def is_allowed_for_ats_adapter(self, url: str, budget: Optional[CanaryBudget] = None) -> bool:
        if await self.is_allowed(url, budget):
            return True
        bypass = self.settings.allow_ats_adapter_when_unavailable and await self.is_robots_unavailable(url, budget)
        if bypass:
            ROBOTS_DECISIONS.labels(decision="ats_bypass").inc()
            logger.info(
                f"robots policy bypass for ats adapter host={get_domain(ensure_scheme(url) or '')} "
                "robots_unavailable=true allow_ats_adapter_when_unavailable=true"
            )
        return bypass

    async def is_robots_unavailable(self, url: str, budget: Optional[CanaryBudget] = None) -> bool:
        host = get_domain(ensure_scheme(url) or "")
        if not host:
            return False
        await self.rules_for_host(host, budget)
        return self._is_unavailable(host)

    def clear(self) -> None:
        self._cache.clear()
        self._unavailable.clear()

    # -------------------------------------------------------
    async def _load_rules(self, host: str, budget: Optional[CanaryBudget]) -> Tuple[RobotsRules, float]:
        robots_url = f"https://{host}/robots.txt"
        fetch = await self.fetcher.get(robots_url, TEXT_ACCEPT, budget=budget)

        if fetch.is_successful:
            self._unavailable.pop(host, None)
            rules = RobotsRules.parse(fetch.text)
            logger.debug(f"Loaded robots for host {host} with {len(rules.sitemap_urls)} sitemap hints")
            return rules, self.cache_ttl

        self._mark_unavailable(host)
        fail_open = self.settings.fail_open
        decision = "allow_all" if fail_open else "disallow_all"
        ROBOTS_DECISIONS.labels(decision=f"unavailable_{decision}").inc()
        logger.warning(
            f"robots fetch failed host={host} robots_unavailable=true status={fetch.status_code} "
            f"error_code={fetch.error_code} error_message={fetch.error_message} decision={decision} "
            f"ats_adapter_bypass={self.settings.allow_ats_adapter_when_unavailable}"
        )
        rules = RobotsRules.allow_all() if fail_open else RobotsRules.disallow_all()
        return rules, self.unavailable_ttl

    def _release_lock(self, host: str) -> None:
        users = self._lock_users.get(host, 0) - 1
        if users > 0:
            self._lock_users[host] = users
            return
        self._lock_users.pop(host, None)
        self._host_locks.pop(host, None)

    def _cached(self, host: str) -> Optional[RobotsRules]:
        entry = self._cache.get(host)
        if entry is None:
            return None
        expires_at, rules = entry
        if expires_at <= time.monotonic():
            self._cache.pop(host, None)
            self._unavailable.pop(host, None)
            return None
        return rules

    def _mark_unavailable(self, host: str) -> None:
        now = time.monotonic()
        self._unavailable.pop(host, None)
        self._unavailable[host] = now
        self._evict_unavailable(now)

    def _is_unavailable(self, host: str) -> bool:
        marked_at = self._unavailable.get(host)
        if marked_at is None:
            return False
        if marked_at + self.unavailable_ttl <= time.monotonic():
            self._unavailable.pop(host, None)
            self._cache.pop(host, None)
            return False
        return True

    def _evict_unavailable(self, now: float) -> None:
        cutoff = now - self.unavailable_ttl
        for host in [h for h, marked_at in self._unavailable.items() if marked_at < cutoff]:
            self._unavailable.pop(host, None)
            self._cache.pop(host, None)

        while len(self._unavailable) > self.settings.max_unavailable_hosts:
            oldest, _ = self._unavailable.popitem(last=False)
            self._cache.pop(oldest, None)
