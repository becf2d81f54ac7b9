"""
mcqstream — Quota & Rate Governor
==================================
Three scopes, checked in this order before any generation:
  1. Global:   one process-wide counter, 30-day lazy rollover
  2. Daily:    per-user durable counter, ceiling depends on tier
  3. Rolling:  pro tier only: last-hour / last-24h windows + minimum spacing

The first failing scope raises a QuotaExceededError tagged with that scope.
Charging happens once all gates pass and is never refunded.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Deque, Dict, Optional

from mcqstream.core.clock import Clock, utc_now
from mcqstream.core.errors import QuotaExceededError, QuotaScope
from mcqstream.services.usage_store import DAILY_PERIOD, Tier, UsageSnapshot, UsageStore

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# GLOBAL SCOPE
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class GlobalUsageCounter:
    """Process-wide generation counter with a lazily rolled reset time."""

    def __init__(self, limit: int, period_days: int = 30, clock: Clock = utc_now):
        self.limit = limit
        self.period = timedelta(days=period_days)
        self._clock = clock
        self.count = 0
        self.reset_at = clock() + self.period

    def _roll(self, now: datetime) -> None:
        if now < self.reset_at:
            return
        self.count = 0
        self.reset_at += self.period
        if self.reset_at <= now:
            self.reset_at = now + self.period
        logger.info(f"[QUOTA] Global counter rolled over, next reset {self.reset_at.isoformat()}")

    def check(self) -> None:
        self._roll(self._clock())
        if self.count >= self.limit:
            raise QuotaExceededError(QuotaScope.GLOBAL, self.reset_at)

    def increment(self) -> None:
        self._roll(self._clock())
        self.count += 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# ROLLING WINDOWS (PRO)
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@dataclass(frozen=True)
class RateWindowStatus:
    uploads_last_hour: int
    uploads_last_day: int
    can_upload_now: bool
    next_allowed_at: Optional[datetime] = None
    blocking_scope: Optional[QuotaScope] = None


class RollingWindowLimiter:
    """Per-user upload timestamps, pruned to the last 24 hours."""

    MAX_TRACKED_USERS = 1000

    def __init__(
        self,
        hourly_limit: int,
        daily_limit: int,
        min_interval_seconds: int = 0,
        clock: Clock = utc_now,
    ):
        self.hourly_limit = hourly_limit
        self.daily_limit = daily_limit
        self.min_interval = timedelta(seconds=min_interval_seconds)
        self._clock = clock
        self._samples: Dict[str, Deque[datetime]] = {}

    def _prune(self, user_id: str, now: datetime) -> Deque[datetime]:
        samples = self._samples.get(user_id, deque())
        while samples and samples[0] <= now - DAY:
            samples.popleft()
        return samples

    def status(self, user_id: str) -> RateWindowStatus:
        now = self._clock()
        samples = self._prune(user_id, now)
        in_hour = [t for t in samples if t > now - HOUR]
        in_day = list(samples)

        # (reset time, scope) for every saturated window
        blocked = []
        if len(in_hour) >= self.hourly_limit:
            blocked.append((min(in_hour) + HOUR, QuotaScope.HOURLY))
        if len(in_day) >= self.daily_limit:
            blocked.append((min(in_day) + DAY, QuotaScope.ROLLING_DAY))

        if not blocked and samples and self.min_interval:
            last = samples[-1]
            if now - last < self.min_interval:
                blocked.append((last + self.min_interval, QuotaScope.INTERVAL))

        if not blocked:
            return RateWindowStatus(len(in_hour), len(in_day), True)

        next_allowed_at, scope = min(blocked, key=lambda item: item[0])
        return RateWindowStatus(len(in_hour), len(in_day), False, next_allowed_at, scope)

    def check(self, user_id: str) -> None:
        status = self.status(user_id)
        if not status.can_upload_now:
            raise QuotaExceededError(status.blocking_scope, status.next_allowed_at)

    def record(self, user_id: str) -> None:
        now = self._clock()
        samples = self._prune(user_id, now)
        samples.append(now)
        self._samples[user_id] = samples
        if len(self._samples) > self.MAX_TRACKED_USERS:
            self._sweep(now)

    def _sweep(self, now: datetime) -> None:
        idle = [uid for uid, samples in self._samples.items() if not samples or samples[-1] <= now - DAY]
        for uid in idle:
            del self._samples[uid]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# GOVERNOR
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@dataclass(frozen=True)
class PlanLimits:
    free_daily: int = 10
    pro_daily: int = 100

    def daily_limit(self, tier: Tier) -> int:
        return self.pro_daily if tier is Tier.PRO else self.free_daily


class QuotaGovernor:

    def __init__(
        self,
        global_counter: GlobalUsageCounter,
        usage_store: UsageStore,
        rolling: RollingWindowLimiter,
        limits: PlanLimits,
        clock: Clock = utc_now,
    ):
        self.global_counter = global_counter
        self.usage_store = usage_store
        self.rolling = rolling
        self.limits = limits
        self._clock = clock

    def check_global(self) -> None:
        self.global_counter.check()

    async def _read_tier(self, user_id: str) -> Tier:
        try:
            return await self.usage_store.read_tier(user_id)
        except Exception as e:
            logger.error(f"[QUOTA] ✗ Tier lookup failed for {user_id}, assuming free: {e}")
            return Tier.FREE

    async def _read_usage(self, user_id: str) -> UsageSnapshot:
        try:
            return await self.usage_store.read_usage(user_id)
        except Exception as e:
            logger.error(f"[QUOTA] ✗ Usage lookup failed for {user_id}, assuming zero: {e}")
            return UsageSnapshot()

    async def check_user(self, user_id: str) -> Tier:
        """Daily scope, then (pro only) rolling windows. Returns the caller's tier."""
        now = self._clock()
        tier = await self._read_tier(user_id)
        usage = await self._read_usage(user_id)

        limit = self.limits.daily_limit(tier)
        if usage.effective_uploads(now) >= limit:
            reset_at = usage.daily_reset_at or now + DAILY_PERIOD
            raise QuotaExceededError(
                QuotaScope.DAILY, reset_at, f"{usage.uploads_today}/{limit} uploads today ({tier.value})"
            )

        if tier is Tier.PRO:
            self.rolling.check(user_id)
        return tier

    async def charge(self, user_id: str, tier: Tier) -> None:
        self.global_counter.increment()
        try:
            await self.usage_store.increment_usage(user_id)
        except Exception as e:
            logger.error(f"[QUOTA] ✗ Usage increment failed for {user_id}: {e}")
        if tier is Tier.PRO:
            self.rolling.record(user_id)
