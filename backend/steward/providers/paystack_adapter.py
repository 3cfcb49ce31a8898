"""Paystack adapter over the REST API with httpx."""

import hashlib
import hmac
import json
from datetime import datetime

import httpx
import structlog

from steward.core.exceptions import ProviderError, ValidationError
from steward.domain.provider_refs import ProviderRefs, normalize_paystack_refs
from steward.domain.subscription_status import SubscriptionProvider, SubscriptionStatus
from steward.providers.base import (
    BillingProviderAdapter,
    CheckoutSession,
    PayoutRecord,
    ProviderCapabilities,
)

logger = structlog.get_logger(__name__)

# "non-renewing" stays ACTIVE with cancel_at_period_end; see webhook_service
PAYSTACK_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "non-renewing": SubscriptionStatus.ACTIVE,
    "attention": SubscriptionStatus.PAST_DUE,
    "complete": SubscriptionStatus.CANCELED,
    "completed": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "canceled": SubscriptionStatus.CANCELED,
}


def map_paystack_status(status: str | None) -> SubscriptionStatus | None:
    if not status:
        return None
    return PAYSTACK_STATUS_MAP.get(status.lower())


def verify_paystack_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Paystack signs the raw body with HMAC-SHA512 keyed by the secret key."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def paystack_event_id(payload: dict, body: bytes) -> str:
    """Derive a stable id for a Paystack event (Paystack sends none).

    Redeliveries carry an identical body, so the body hash pins the id while
    the readable prefix keeps ledger rows searchable.
    """
    data = payload.get("data") or {}
    subscription = data.get("subscription") if isinstance(data.get("subscription"), dict) else {}
    parts = [
        str(payload.get("event") or "unknown"),
        str(data.get("id") or ""),
        str(data.get("reference") or data.get("transaction_reference") or ""),
        str(data.get("subscription_code") or subscription.get("subscription_code") or ""),
        hashlib.sha256(body).hexdigest()[:16],
    ]
    return ":".join(parts)


def parse_paystack_datetime(value) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class PaystackProvider(BillingProviderAdapter):
    provider = SubscriptionProvider.PAYSTACK
    capabilities = ProviderCapabilities(hosted_checkout=True, resume=True)

    def __init__(
        self,
        secret_key: str,
        base_url: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(timeout)
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    @property
    def webhook_configured(self) -> bool:
        return bool(self.secret_key)

    def verify_webhook(self, body: bytes, signature: str | None) -> dict:
        if not signature:
            raise ValidationError("Missing x-paystack-signature header")
        if not verify_paystack_signature(body, signature, self.secret_key):
            raise ValidationError("Invalid signature")
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise ValidationError("Invalid payload") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Invalid payload")
        return payload

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        if not self.secret_key:
            raise ProviderError(self.name, "Paystack is not configured")

        headers = {"Authorization": f"Bearer {self.secret_key}"}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("paystack_call_timeout", path=path, timeout=self.timeout)
            raise ProviderError(self.name, f"{path} timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            logger.warning("paystack_call_failed", path=path, error=str(exc))
            raise ProviderError(self.name, str(exc)) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or body.get("status") is False:
            message = body.get("message") or f"HTTP {response.status_code}"
            logger.warning("paystack_call_rejected", path=path, status_code=response.status_code, message=message)
            raise ProviderError(self.name, message)

        return body

    async def create_checkout(
        self,
        *,
        tenant_id: str,
        plan,
        customer_id: str | None,
        customer_email: str | None,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        if not plan.paystack_plan_code:
            raise ValidationError(f"Plan '{plan.code}' is not available through Paystack")
        if not customer_email:
            raise ValidationError("An email address is required for Paystack checkout")

        body = await self._request(
            "POST",
            "/transaction/initialize",
            json={
                "email": customer_email,
                "amount": plan.amount_minor,
                "currency": plan.currency,
                "plan": plan.paystack_plan_code,
                "callback_url": success_url,
                "metadata": {"tenant_id": tenant_id, "plan_code": plan.code, "cancel_action": cancel_url},
            },
        )
        data = body.get("data") or {}
        return CheckoutSession(url=data["authorization_url"], reference=data["reference"])

    async def change_plan_now(self, subscription, target_plan) -> None:
        raise self.unsupported("Immediate plan change")

    async def schedule_plan_change(self, subscription, target_plan, effective_at: datetime) -> dict | None:
        # Paystack cannot swap a subscription's plan; the sweep switches the local
        # plan at period end and the tenant re-subscribes through checkout.
        return None

    async def _email_token(self, subscription) -> str:
        if subscription.provider_email_token:
            return subscription.provider_email_token
        refs = await self.fetch_refs(subscription.provider_subscription_id)
        if refs is None or not refs.email_token:
            raise ValidationError("Paystack subscription token is missing; run the metadata backfill first")
        return refs.email_token

    async def _toggle(self, subscription, action: str) -> None:
        if not subscription.provider_subscription_id:
            raise ValidationError("Subscription has no Paystack reference; run the metadata backfill first")
        token = await self._email_token(subscription)
        await self._request(
            "POST",
            f"/subscription/{action}",
            json={"code": subscription.provider_subscription_id, "token": token},
        )

    async def cancel(self, subscription, at_period_end: bool) -> None:
        # Paystack has no period-end flag; disabling stops the next charge
        await self._toggle(subscription, "disable")

    async def resume(self, subscription) -> None:
        await self._toggle(subscription, "enable")

    async def create_portal_session(self, subscription, return_url: str) -> str:
        raise self.unsupported("The billing portal")

    def normalize_refs(self, payload: dict | None) -> ProviderRefs:
        return normalize_paystack_refs(payload)

    async def fetch_refs(self, subscription_ref: str) -> ProviderRefs | None:
        body = await self._request("GET", f"/subscription/{subscription_ref}")
        data = body.get("data")
        if not isinstance(data, dict):
            return None
        return normalize_paystack_refs(data)

    async def list_payouts(self, since: datetime | None, limit: int) -> list[PayoutRecord]:
        params: dict = {"perPage": min(limit, 100)}
        if since is not None:
            params["from"] = since.date().isoformat()
        body = await self._request("GET", "/settlement", params=params)
        records = []
        for settlement in body.get("data") or []:
            amount = settlement.get("effective_amount")
            if amount is None:
                amount = settlement.get("total_amount") or 0
            records.append(
                PayoutRecord(
                    provider_ref=str(settlement["id"]),
                    amount_minor=int(amount),
                    currency=str(settlement.get("currency") or "NGN").upper(),
                    status=str(settlement.get("status") or "pending"),
                    arrival_date=parse_paystack_datetime(settlement.get("settlement_date")),
                    raw=settlement,
                )
            )
        return records
