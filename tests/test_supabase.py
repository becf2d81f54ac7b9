import json
from datetime import timedelta

import httpx
import pytest

from conftest import START, FakeClock
from mcqstream.core.errors import ErrorKind, ServiceError
from mcqstream.services.identity import SupabaseIdentityProvider, bearer_token
from mcqstream.services.usage_store import SupabaseUsageStore, Tier

BASE = "https://project.supabase.co"


def http_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ── Identity ─────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("header, expected", [
    ("Bearer abc", "abc"),
    ("Bearer   ", None),
    ("Basic abc", None),
    (None, None),
])
def test_bearer_token(header, expected):
    assert bearer_token(header) == expected


async def test_verified_user_is_authenticated():
    def handler(request):
        assert request.url.path == "/auth/v1/user"
        assert request.headers["authorization"] == "Bearer user-jwt"
        assert request.headers["apikey"] == "service"
        return httpx.Response(200, json={"id": "u1", "email": "a@b.c", "email_confirmed_at": "2025-01-01T00:00:00Z"})

    async with http_client(handler) as http:
        principal = await SupabaseIdentityProvider(http, BASE, "service").authenticate("user-jwt")
    assert principal.user_id == "u1"
    assert principal.email == "a@b.c"


@pytest.mark.parametrize("response", [
    httpx.Response(401, json={"msg": "invalid JWT"}),
    httpx.Response(200, json={"id": "u1", "email_confirmed_at": None}),
    httpx.Response(200, json={}),
    httpx.Response(200, text="<html>gateway error</html>"),
    httpx.Response(200, json=[]),
])
async def test_rejected_tokens_raise_auth(response):
    async with http_client(lambda request: response) as http:
        provider = SupabaseIdentityProvider(http, BASE, "service")
        with pytest.raises(ServiceError) as info:
            await provider.authenticate("user-jwt")
    assert info.value.kind is ErrorKind.AUTH


async def test_unconfigured_provider_rejects():
    async with http_client(lambda request: httpx.Response(200, json={})) as http:
        with pytest.raises(ServiceError) as info:
            await SupabaseIdentityProvider(http, None, None).authenticate("user-jwt")
    assert info.value.kind is ErrorKind.AUTH


# ── Usage store ──────────────────────────────────────────────────────────────

async def test_reads_usage_and_tier():
    def handler(request):
        if request.url.path.endswith("/user_usage_stats"):
            return httpx.Response(200, json=[{"uploads_today": 4, "daily_reset_at": "2025-01-02T00:00:00Z"}])
        return httpx.Response(200, json=[{"plan_type": "pro", "status": "active"}])

    async with http_client(handler) as http:
        store = SupabaseUsageStore(http, BASE, "service")
        usage = await store.read_usage("u1")
        tier = await store.read_tier("u1")

    assert usage.uploads_today == 4
    assert usage.daily_reset_at.isoformat() == "2025-01-02T00:00:00+00:00"
    assert tier is Tier.PRO


async def test_inactive_subscription_is_free_tier():
    async with http_client(lambda r: httpx.Response(200, json=[{"plan_type": "pro", "status": "canceled"}])) as http:
        assert await SupabaseUsageStore(http, BASE, "service").read_tier("u1") is Tier.FREE


async def test_increment_uses_rpc():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(204)

    async with http_client(handler) as http:
        await SupabaseUsageStore(http, BASE, "service").increment_usage("u1")

    assert len(calls) == 1
    assert calls[0].url.path == "/rest/v1/rpc/increment_daily_uploads"
    assert json.loads(calls[0].content) == {"p_user_id": "u1"}


async def test_increment_falls_back_to_read_then_upsert():
    clock = FakeClock()
    upserts = []

    def handler(request):
        if "/rpc/" in request.url.path:
            return httpx.Response(404, json={"message": "function not found"})
        if request.method == "GET":
            reset = (START + timedelta(hours=5)).isoformat()
            return httpx.Response(200, json=[{"uploads_today": 2, "daily_reset_at": reset}])
        upserts.append(request)
        return httpx.Response(201)

    async with http_client(handler) as http:
        await SupabaseUsageStore(http, BASE, "service", clock=clock).increment_usage("u1")

    body = json.loads(upserts[0].content)
    assert body["uploads_today"] == 3
    assert body["daily_reset_at"] == (START + timedelta(hours=5)).isoformat()
    assert upserts[0].headers["prefer"] == "resolution=merge-duplicates"
