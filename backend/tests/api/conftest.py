"""API test fixtures.

Requests go through the real application over ``httpx.ASGITransport``; the
lifespan never runs, so the shared ``engine`` and ``redis`` fixtures supply the
database and Redis globals. Clerk authentication is replaced with a fixed
user via ``app.dependency_overrides``.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from steward.api import deps
from steward.core.auth import ClerkUser, require_auth
from steward.main import app


def override_auth(user: ClerkUser):
    async def _override():
        return user

    return _override


@pytest.fixture
async def api_client(engine, redis, adapters):
    """In-process client with the test provider adapters installed."""
    app.dependency_overrides[deps.provider_adapters] = lambda: adapters
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def login():
    """Authenticate following requests as a tenant member or a platform admin."""

    def _login(
        tenant_id: str | None = "org_a",
        role: str = "admin",
        *,
        platform_admin: bool = False,
        user_id: str = "user_member",
    ) -> ClerkUser:
        claims: dict = {"sub": user_id}
        if tenant_id is not None:
            claims["o"] = {"id": tenant_id, "rol": role}
        if platform_admin:
            claims["public_metadata"] = {"admin": True}
        user = ClerkUser(user_id=user_id, claims=claims)
        app.dependency_overrides[require_auth] = override_auth(user)
        return user

    return _login
