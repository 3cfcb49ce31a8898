"""Provider adapter interface.

Each payment provider implements the same contract. Behaviour that differs
between providers is described by ``ProviderCapabilities`` and checked by the
services before an action is offered, instead of branching on provider names.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar

import structlog

from steward.core.exceptions import ProviderError, ValidationError
from steward.domain.provider_refs import ProviderRefs
from steward.domain.subscription_status import SubscriptionProvider

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ProviderCapabilities:
    hosted_checkout: bool = False
    immediate_plan_change: bool = False
    billing_portal: bool = False
    resume: bool = False


@dataclass(frozen=True)
class CheckoutSession:
    url: str
    reference: str


@dataclass(frozen=True)
class PayoutRecord:
    provider_ref: str
    amount_minor: int
    currency: str
    status: str
    arrival_date: datetime | None
    raw: dict


class BillingProviderAdapter(ABC):
    """Contract shared by Stripe, Paystack and manual billing."""

    provider: SubscriptionProvider
    capabilities: ProviderCapabilities

    def __init__(self, timeout: float):
        self.timeout = timeout

    @property
    def name(self) -> str:
        return self.provider.value

    @property
    def configured(self) -> bool:
        return True

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a provider call with the configured timeout.

        Timeouts surface as ProviderError; the caller has not mutated local
        state yet, so nothing is left half-applied.
        """
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except TimeoutError as exc:
            logger.warning("provider_call_timeout", provider=self.name, operation=operation, timeout=self.timeout)
            raise ProviderError(self.name, f"{operation} timed out after {self.timeout}s") from exc

    def unsupported(self, action: str) -> ValidationError:
        return ValidationError(f"{action} is not available for {self.name.title()} subscriptions")

    @abstractmethod
    async def create_checkout(
        self,
        *,
        tenant_id: str,
        plan,
        customer_id: str | None,
        customer_email: str | None,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession: ...

    @abstractmethod
    async def change_plan_now(self, subscription, target_plan) -> None: ...

    @abstractmethod
    async def schedule_plan_change(self, subscription, target_plan, effective_at: datetime) -> dict | None: ...

    @abstractmethod
    async def cancel(self, subscription, at_period_end: bool) -> None: ...

    @abstractmethod
    async def resume(self, subscription) -> None: ...

    @abstractmethod
    async def create_portal_session(self, subscription, return_url: str) -> str: ...

    @abstractmethod
    def normalize_refs(self, payload: dict | None) -> ProviderRefs: ...

    @abstractmethod
    async def fetch_refs(self, subscription_ref: str) -> ProviderRefs | None: ...

    @abstractmethod
    async def list_payouts(self, since: datetime | None, limit: int) -> list[PayoutRecord]: ...

    @property
    def webhook_configured(self) -> bool:
        return False

    def verify_webhook(self, body: bytes, signature: str | None) -> dict:
        """Authenticate a webhook body and return the parsed event.

        Raises:
            ValidationError: Missing or invalid signature, or unparseable body
        """
        raise self.unsupported("Webhooks")


class ManualProvider(BillingProviderAdapter):
    """Invoiced-offline subscriptions managed entirely by platform admins."""

    provider = SubscriptionProvider.MANUAL
    capabilities = ProviderCapabilities(resume=True)

    async def create_checkout(self, **kwargs) -> CheckoutSession:
        raise self.unsupported("Checkout")

    async def change_plan_now(self, subscription, target_plan) -> None:
        raise self.unsupported("Immediate plan change")

    async def schedule_plan_change(self, subscription, target_plan, effective_at: datetime) -> dict | None:
        return None

    async def cancel(self, subscription, at_period_end: bool) -> None:
        return None

    async def resume(self, subscription) -> None:
        return None

    async def create_portal_session(self, subscription, return_url: str) -> str:
        raise self.unsupported("The billing portal")

    def normalize_refs(self, payload: dict | None) -> ProviderRefs:
        return ProviderRefs()

    async def fetch_refs(self, subscription_ref: str) -> ProviderRefs | None:
        return None

    async def list_payouts(self, since: datetime | None, limit: int) -> list[PayoutRecord]:
        return []
