"""Clerk session authentication and tenant resolution for FastAPI.

A tenant is a Clerk organisation. The active organisation is read from the
session token (``org_id``/``org_role`` in v1 tokens, ``o.id``/``o.rol`` in v2).
Platform admins carry ``public_metadata.admin`` and may act on any tenant.
"""

import base64
from dataclasses import dataclass
from functools import lru_cache

import jwt as pyjwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from steward.core.config import Settings, get_settings

_bearer_scheme = HTTPBearer(auto_error=False)

_REQUIRED_CLAIMS = ["sub", "exp", "nbf", "iat", "iss"]

# Most specific first: several of these subclass InvalidTokenError
_TOKEN_ERRORS: list[tuple[type[Exception], str]] = [
    (pyjwt.ExpiredSignatureError, "Token expired"),
    (pyjwt.ImmatureSignatureError, "Token not yet valid (immature)"),
    (pyjwt.InvalidIssuerError, "Invalid issuer (iss mismatch)"),
    (pyjwt.InvalidAudienceError, "Unauthorized audience (aud mismatch)"),
]


def clerk_domain(publishable_key: str) -> str:
    """Frontend API domain encoded in a Clerk publishable key.

    Keys look like ``pk_(test|live)_<base64>`` where the payload decodes to
    ``<domain>$``.

    Raises:
        ValueError: The key is malformed
    """
    prefix, _, rest = publishable_key.partition("_")
    _, _, encoded = rest.partition("_")
    if prefix != "pk" or not encoded:
        raise ValueError("Invalid Clerk publishable key format")

    try:
        domain = base64.b64decode(encoded + "==").decode("utf-8").rstrip("$")
    except Exception as exc:
        raise ValueError("Invalid Clerk publishable key: cannot decode") from exc

    if not domain:
        raise ValueError("Invalid Clerk publishable key: empty domain")
    return domain


@lru_cache
def get_jwks_client() -> PyJWKClient:
    """Cached JWKS client for the configured Clerk instance."""
    domain = clerk_domain(get_settings().clerk_publishable_key)
    return PyJWKClient(f"https://{domain}/.well-known/jwks.json", cache_keys=True, lifespan=300)


@dataclass(frozen=True)
class ClerkUser:
    """Authenticated session extracted from a Clerk JWT."""

    user_id: str
    claims: dict

    @property
    def tenant_id(self) -> str | None:
        org = self.claims.get("o")
        if isinstance(org, dict) and org.get("id"):
            return org["id"]
        return self.claims.get("org_id")

    @property
    def org_role(self) -> str | None:
        org = self.claims.get("o")
        if isinstance(org, dict) and org.get("rol"):
            role = org["rol"]
            return role if role.startswith("org:") else f"org:{role}"
        return self.claims.get("org_role")

    @property
    def is_platform_admin(self) -> bool:
        public_metadata = self.claims.get("public_metadata") or {}
        return public_metadata.get("admin") is True


def decode_session_token(token: str, settings: Settings) -> ClerkUser:
    """Verify a Clerk session JWT and the instance it was issued for.

    Signature, expiry, issuer and (when configured) audience are checked by
    PyJWT; the authorized party must be one of ``clerk_allowed_origins``.

    Raises:
        HTTPException: 401 on any validation failure, 500 when Clerk is misconfigured
    """
    try:
        issuer = f"https://{clerk_domain(settings.clerk_publishable_key)}"
    except ValueError as exc:
        raise HTTPException(status_code=500, detail="Authentication is misconfigured") from exc

    audiences = settings.clerk_allowed_audiences or None
    try:
        signing_key = get_jwks_client().get_signing_key_from_jwt(token)
        claims = pyjwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            issuer=issuer,
            audience=audiences,
            options={"require": _REQUIRED_CLAIMS, "verify_aud": audiences is not None},
        )
    except pyjwt.MissingRequiredClaimError as exc:
        raise HTTPException(status_code=401, detail=f"Missing required claim: {exc.claim}")
    except pyjwt.PyJWTError as exc:
        detail = next((message for error, message in _TOKEN_ERRORS if isinstance(exc, error)), None)
        raise HTTPException(status_code=401, detail=detail or f"Invalid token: {exc}")

    azp = claims.get("azp")
    if not azp:
        raise HTTPException(status_code=401, detail="Missing azp claim")
    if azp not in settings.clerk_allowed_origins:
        raise HTTPException(status_code=401, detail="Unauthorized origin (azp mismatch)")

    return ClerkUser(user_id=claims["sub"], claims=claims)


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> ClerkUser:
    """FastAPI dependency that authenticates the Clerk session."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    user = decode_session_token(credentials.credentials, get_settings())

    # Downstream error handlers and audit records read these
    request.state.user_id = user.user_id
    request.state.tenant_id = user.tenant_id
    return user


async def require_tenant(user: ClerkUser = Depends(require_auth)) -> ClerkUser:
    """Require an active organisation on the session."""
    if not user.tenant_id:
        raise HTTPException(status_code=403, detail="Select an organisation to manage billing")
    return user


async def require_billing_admin(user: ClerkUser = Depends(require_tenant)) -> ClerkUser:
    """Require the organisation role that may change the tenant's subscription."""
    if user.is_platform_admin:
        return user
    if user.org_role != get_settings().clerk_billing_admin_role:
        raise HTTPException(status_code=403, detail="Only organisation admins can manage billing")
    return user


async def require_admin(user: ClerkUser = Depends(require_auth)) -> ClerkUser:
    """Require platform admin privileges (Clerk ``public_metadata.admin``)."""
    if user.is_platform_admin:
        return user
    raise HTTPException(status_code=403, detail="Admin access required")
