from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from mcqstream.core.config import Settings
from mcqstream.core.errors import ErrorKind, ServiceError
from mcqstream.schemas import MCQ
from mcqstream.services.cache import ResponseCache
from mcqstream.services.identity import IdentityProvider, Principal
from mcqstream.services.orchestrator import MCQGenerationService
from mcqstream.services.quota import GlobalUsageCounter, PlanLimits, QuotaGovernor, RollingWindowLimiter
from mcqstream.services.sources import MCQSource
from mcqstream.services.usage_store import InMemoryUsageStore

START = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeIdentity(IdentityProvider):
    """Accepts `token-<user>` and rejects everything else."""

    async def authenticate(self, token: Optional[str]) -> Principal:
        if not token or not token.startswith("token-"):
            raise ServiceError(ErrorKind.AUTH, "bad token")
        return Principal(user_id=token[len("token-"):])


class FakeSource(MCQSource):
    """Yields canned records, then optionally raises."""

    def __init__(self, records: List[MCQ], error: Optional[ServiceError] = None, name: str = "fake"):
        self.records = records
        self.error = error
        self.name = name
        self.calls = 0
        self.yielded = 0
        self.closed = False

    async def generate(self, material, count):
        self.calls += 1
        try:
            for mcq in self.records:
                self.yielded += 1
                yield mcq
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


def make_mcq(i: int) -> MCQ:
    return MCQ(
        question=f"What is concept {i}?",
        options=[f"Option {i}-A", f"Option {i}-B", f"Option {i}-C", f"Option {i}-D"],
        answer_index=i % 4,
    )


def make_settings(**overrides) -> Settings:
    values = dict(ENVIRONMENT="production", GOOGLE_API_KEY=None, GROQ_API_KEY=None)
    values.update(overrides)
    return Settings(_env_file=None, **values)


def build_service(
    sources: List[MCQSource],
    clock: Optional[FakeClock] = None,
    store: Optional[InMemoryUsageStore] = None,
    global_limit: int = 10000,
    **settings_overrides,
) -> MCQGenerationService:
    clock = clock or FakeClock()
    config = make_settings(**settings_overrides)
    quota = QuotaGovernor(
        global_counter=GlobalUsageCounter(global_limit, clock=clock),
        usage_store=store or InMemoryUsageStore(clock=clock),
        rolling=RollingWindowLimiter(
            config.PRO_HOURLY_LIMIT,
            config.PRO_ROLLING_DAILY_LIMIT,
            config.PRO_MIN_INTERVAL_SECONDS,
            clock=clock,
        ),
        limits=PlanLimits(free_daily=config.FREE_DAILY_LIMIT, pro_daily=config.PRO_DAILY_LIMIT),
        clock=clock,
    )
    return MCQGenerationService(
        settings=config,
        quota=quota,
        cache=ResponseCache(config.CACHE_TTL_SECONDS, config.CACHE_MAX_ENTRIES, clock=clock),
        identity=FakeIdentity(),
        sources=sources,
    )


async def collect(agen) -> list:
    return [item async for item in agen]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
