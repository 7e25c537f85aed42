from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable

from .errors import RateLimitedError
from .models import RouteClass

logger = logging.getLogger(__name__)

# Stale windows are purged once the table grows past this many keys.
_PURGE_THRESHOLD = 10_000


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateLimitBudget:
    max_requests: int
    window: timedelta


DEFAULT_BUDGETS: dict[str, RateLimitBudget] = {
    "general": RateLimitBudget(max_requests=100, window=timedelta(minutes=1)),
    "auth": RateLimitBudget(max_requests=10, window=timedelta(minutes=1)),
    "upload": RateLimitBudget(max_requests=20, window=timedelta(minutes=1)),
    "send": RateLimitBudget(max_requests=30, window=timedelta(hours=1)),
}


@dataclass(frozen=True)
class RateLimitDecision:
    route_class: str
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    decided_at: datetime

    def retry_after(self, now: datetime) -> timedelta:
        return max(self.reset_at - now, timedelta(0))

    @property
    def reset_seconds(self) -> int:
        return math.ceil(self.retry_after(self.decided_at).total_seconds())


@dataclass
class _Window:
    started_at: datetime
    count: int


class FixedWindowRateLimiter:
    """Fixed-window request counter keyed by (client identity, route class).

    Counts are process-local and approximate across processes; within one window they only
    grow, and the window resets once its duration has elapsed.
    """

    def __init__(
        self,
        budgets: dict[str, RateLimitBudget] | None = None,
        *,
        now_fn: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._lock = Lock()
        self._budgets = dict(budgets or DEFAULT_BUDGETS)
        self._now_fn = now_fn
        self._windows: dict[tuple[str, str], _Window] = {}

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def budget_for(self, route_class: RouteClass) -> RateLimitBudget:
        try:
            return self._budgets[route_class]
        except KeyError as exc:
            raise ValueError(f"unknown route class: {route_class}") from exc

    def hit(self, client_id: str, route_class: RouteClass) -> RateLimitDecision:
        budget = self.budget_for(route_class)
        with self._lock:
            now = self._now_fn()
            key = (client_id, route_class)
            window = self._windows.get(key)
            if window is None or now >= window.started_at + budget.window:
                window = _Window(started_at=now, count=0)
                self._windows[key] = window
                if len(self._windows) > _PURGE_THRESHOLD:
                    self._purge_expired(now)

            reset_at = window.started_at + budget.window
            if window.count >= budget.max_requests:
                return RateLimitDecision(
                    route_class=route_class,
                    allowed=False,
                    limit=budget.max_requests,
                    remaining=0,
                    reset_at=reset_at,
                    decided_at=now,
                )

            window.count += 1
            return RateLimitDecision(
                route_class=route_class,
                allowed=True,
                limit=budget.max_requests,
                remaining=budget.max_requests - window.count,
                reset_at=reset_at,
                decided_at=now,
            )

    def enforce(self, client_id: str, route_class: RouteClass) -> RateLimitDecision:
        decision = self.hit(client_id, route_class)
        if not decision.allowed:
            retry_after = decision.retry_after(decision.decided_at)
            logger.warning(
                "rate limit exceeded: route_class=%s limit=%s retry_after=%ss",
                route_class,
                decision.limit,
                int(retry_after.total_seconds()),
            )
            raise RateLimitedError(
                route_class=route_class,
                limit=decision.limit,
                retry_after=retry_after,
                reset_at=decision.reset_at,
            )
        return decision

    def _purge_expired(self, now: datetime) -> None:
        expired = [
            key
            for key, window in self._windows.items()
            if now >= window.started_at + self._budgets[key[1]].window
        ]
        for key in expired:
            del self._windows[key]
