"""Tests for the entitlement gate dependencies used by tenant routes."""

import pytest
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from steward.core.auth import ClerkUser, require_auth
from steward.core.exceptions import StewardError
from steward.core.feature_gates import get_entitlements, require_feature, require_feature_limit
from steward.domain.subscription_status import SubscriptionStatus
from steward.main import steward_error_handler

pytestmark = pytest.mark.integration

_usage = {"count": 0}


async def count_members(tenant_id: str) -> int:
    return _usage["count"]


def gated_app() -> FastAPI:
    app = FastAPI()
    app.exception_handler(StewardError)(steward_error_handler)

    @app.get("/insights", dependencies=[Depends(require_feature("ai_insights"))])
    async def read_insights():
        return {"ok": True}

    @app.get("/members")
    async def list_members(snapshot=Depends(require_feature("membership_enabled"))):
        return {"plan_code": snapshot.plan_code}

    @app.post("/members", dependencies=[Depends(require_feature("membership_enabled", write=True))])
    async def add_member():
        return {"ok": True}

    @app.post("/members/invite")
    async def invite_member(limit=Depends(require_feature_limit("max_members", count_members))):
        return {"limit": limit}

    @app.get("/entitlements")
    async def entitlements(snapshot=Depends(get_entitlements)):
        return {"source": snapshot.source.value}

    async def _user():
        return ClerkUser(user_id="user_member", claims={"sub": "user_member", "o": {"id": "org_a", "rol": "member"}})

    app.dependency_overrides[require_auth] = _user
    return app


@pytest.fixture
async def client(engine):
    _usage["count"] = 0
    async with AsyncClient(transport=ASGITransport(app=gated_app()), base_url="http://test") as client:
        yield client


@pytest.fixture
async def starter(make_plan):
    return await make_plan(
        "starter",
        4900,
        {"ai_insights": (False, None), "membership_enabled": (True, None), "max_members": (True, 3)},
    )


async def test_locked_feature_returns_403(client, starter, make_subscription):
    await make_subscription("org_a", starter)

    response = await client.get("/insights")

    assert response.status_code == 403
    assert response.json()["code"] == "feature_locked"


async def test_enabled_feature_passes_the_snapshot(client, starter, make_subscription):
    await make_subscription("org_a", starter)

    response = await client.get("/members")

    assert response.status_code == 200
    assert response.json() == {"plan_code": "starter"}


async def test_writes_are_blocked_once_the_subscription_ends(client, starter, make_subscription):
    await make_subscription("org_a", starter, status=SubscriptionStatus.CANCELED)

    read = await client.get("/members")
    write = await client.post("/members")

    assert read.status_code == 200
    assert write.status_code == 403
    assert write.json()["code"] == "read_only"


async def test_limit_gate_allows_until_the_limit(client, starter, make_subscription):
    await make_subscription("org_a", starter)

    _usage["count"] = 2
    allowed = await client.post("/members/invite")
    _usage["count"] = 3
    blocked = await client.post("/members/invite")

    assert allowed.json() == {"limit": 3}
    assert blocked.status_code == 402
    assert blocked.json()["code"] == "limit_exceeded"


async def test_get_entitlements_resolves_the_callers_tenant(client):
    response = await client.get("/entitlements")

    assert response.json() == {"source": "no_subscription"}
