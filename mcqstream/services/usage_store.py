"""
mcqstream — Usage Store
========================
Durable per-user counters and subscription tier, behind three operations:
read_usage(), increment_usage(), read_tier().

  - SupabaseUsageStore:  PostgREST over httpx; atomic RPC increment with a
                         read-then-write fallback when the RPC is unavailable
  - InMemoryUsageStore:  process-local, for development and tests
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Tuple

import httpx

from mcqstream.core.clock import Clock, utc_now

logger = logging.getLogger(__name__)

DAILY_PERIOD = timedelta(days=1)


class Tier(str, Enum):
    FREE = "free"
    PRO = "pro"


@dataclass(frozen=True)
class UsageSnapshot:
    uploads_today: int = 0
    daily_reset_at: Optional[datetime] = None

    def effective_uploads(self, now: datetime) -> int:
        """Uploads counted against today; a passed reset time means the day rolled over."""
        if self.daily_reset_at is not None and now >= self.daily_reset_at:
            return 0
        return self.uploads_today


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class UsageStore:
    """Interface of the external durable store."""

    async def read_usage(self, user_id: str) -> UsageSnapshot:
        raise NotImplementedError

    async def increment_usage(self, user_id: str) -> None:
        raise NotImplementedError

    async def read_tier(self, user_id: str) -> Tier:
        raise NotImplementedError


# ── In-memory ────────────────────────────────────────────────────────────────

class InMemoryUsageStore(UsageStore):

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._usage: Dict[str, Tuple[int, Optional[datetime]]] = {}
        self._tiers: Dict[str, Tier] = {}

    def set_tier(self, user_id: str, tier: Tier) -> None:
        self._tiers[user_id] = tier

    def set_usage(self, user_id: str, uploads_today: int, daily_reset_at: Optional[datetime] = None) -> None:
        self._usage[user_id] = (uploads_today, daily_reset_at)

    async def read_usage(self, user_id: str) -> UsageSnapshot:
        count, reset_at = self._usage.get(user_id, (0, None))
        return UsageSnapshot(uploads_today=count, daily_reset_at=reset_at)

    async def increment_usage(self, user_id: str) -> None:
        now = self._clock()
        count, reset_at = self._usage.get(user_id, (0, None))
        if reset_at is None or now >= reset_at:
            count, reset_at = 0, now + DAILY_PERIOD
        self._usage[user_id] = (count + 1, reset_at)

    async def read_tier(self, user_id: str) -> Tier:
        return self._tiers.get(user_id, Tier.FREE)


# ── Supabase (PostgREST) ─────────────────────────────────────────────────────

class SupabaseUsageStore(UsageStore):
    """
    Tables:
        user_usage_stats(user_id, uploads_today, daily_reset_at)
        user_subscriptions(user_id, plan_type, status)
    RPC:
        increment_daily_uploads(p_user_id)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        service_key: str,
        clock: Clock = utc_now,
    ):
        self._http = http_client
        self._rest = f"{base_url.rstrip('/')}/rest/v1"
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        }
        self._clock = clock

    async def _select_one(self, table: str, user_id: str, columns: str) -> Optional[dict]:
        response = await self._http.get(
            f"{self._rest}/{table}",
            params={"user_id": f"eq.{user_id}", "select": columns},
            headers=self._headers,
        )
        response.raise_for_status()
        rows = response.json()
        return rows[0] if rows else None

    async def read_usage(self, user_id: str) -> UsageSnapshot:
        row = await self._select_one("user_usage_stats", user_id, "uploads_today,daily_reset_at")
        if row is None:
            return UsageSnapshot()
        return UsageSnapshot(
            uploads_today=int(row.get("uploads_today") or 0),
            daily_reset_at=_parse_timestamp(row.get("daily_reset_at")),
        )

    async def increment_usage(self, user_id: str) -> None:
        try:
            response = await self._http.post(
                f"{self._rest}/rpc/increment_daily_uploads",
                json={"p_user_id": user_id},
                headers=self._headers,
            )
            response.raise_for_status()
            return
        except httpx.HTTPError as e:
            logger.warning(f"[USAGE] Atomic increment unavailable ({e}); falling back to read-then-write")

        # Read-modify-write: a concurrent increment in this window can be lost.
        now = self._clock()
        snapshot = await self.read_usage(user_id)
        if snapshot.daily_reset_at is None or now >= snapshot.daily_reset_at:
            count, reset_at = 1, now + DAILY_PERIOD
        else:
            count, reset_at = snapshot.uploads_today + 1, snapshot.daily_reset_at

        response = await self._http.post(
            f"{self._rest}/user_usage_stats",
            json={
                "user_id": user_id,
                "uploads_today": count,
                "daily_reset_at": reset_at.isoformat(),
                "updated_at": now.isoformat(),
            },
            headers={**self._headers, "Prefer": "resolution=merge-duplicates"},
        )
        response.raise_for_status()

    async def read_tier(self, user_id: str) -> Tier:
        row = await self._select_one("user_subscriptions", user_id, "plan_type,status")
        if row and row.get("plan_type") == Tier.PRO.value and row.get("status") == "active":
            return Tier.PRO
        return Tier.FREE
