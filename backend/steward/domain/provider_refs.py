"""Normalized provider references.

Stripe and Paystack name the same things differently, and older rows stored
raw payloads under camelCase keys. ``ProviderRefs`` is the single shape the
rest of the code reads.
"""

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict, dataclass
from typing import Any

PAYSTACK_SUBSCRIPTION_CODE = re.compile(r"^SUB_[A-Za-z0-9]+$")


@dataclass(frozen=True)
class ProviderRefs:
    customer_id: str | None = None
    subscription_id: str | None = None
    plan_ref: str | None = None
    email_token: str | None = None

    def merged_over(self, other: "ProviderRefs") -> "ProviderRefs":
        """Fill gaps in ``other`` with values from self; existing values win."""
        return ProviderRefs(
            customer_id=other.customer_id or self.customer_id,
            subscription_id=other.subscription_id or self.subscription_id,
            plan_ref=other.plan_ref or self.plan_ref,
            email_token=other.email_token or self.email_token,
        )

    def as_dict(self) -> dict[str, str | None]:
        return asdict(self)

    @property
    def is_empty(self) -> bool:
        return not any(self.as_dict().values())


def read_path(payload: Any, path: str) -> Any:
    """Follow a dotted path through nested mappings; None when any hop is missing."""
    current = payload
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


STRIPE_PATHS = {
    "customer_id": ("customer_id", "stripeCustomerId", "stripe_customer_id", "customer", "customer.id"),
    "subscription_id": ("subscription_id", "stripeSubscriptionId", "stripe_subscription_id", "subscription", "id"),
    "plan_ref": (
        "plan_ref",
        "stripePriceId",
        "stripe_price_id",
        "price.id",
        "plan.id",
        "items.data.0.price.id",
    ),
}

PAYSTACK_PATHS = {
    "customer_id": (
        "customer_id",
        "paystackCustomerCode",
        "paystack_customer_code",
        "customer.customer_code",
        "customer_code",
    ),
    "subscription_id": (
        "subscription_id",
        "paystackSubscriptionCode",
        "paystack_subscription_code",
        "subscription_code",
        "subscription.subscription_code",
    ),
    "plan_ref": ("plan_ref", "paystackPlanCode", "paystack_plan_code", "plan.plan_code", "plan_code"),
    "email_token": ("email_token", "paystackEmailToken", "paystack_email_token", "subscription.email_token"),
}


def _first_item_path(payload: Any, path: str) -> Any:
    # Stripe list objects: items.data.0.price.id
    if ".0." not in path:
        return read_path(payload, path)
    head, _, tail = path.partition(".0.")
    items = read_path(payload, head)
    if isinstance(items, list) and items:
        return read_path(items[0], tail)
    return None


def read_string(
    payload: Any,
    paths: Iterable[str],
    accept: Callable[[str], bool] | None = None,
) -> str | None:
    """First non-empty string found at any of ``paths`` that ``accept`` allows."""
    for path in paths:
        value = _first_item_path(payload, path)
        if not isinstance(value, str) or not value.strip():
            continue
        value = value.strip()
        if accept is None or accept(value):
            return value
    return None


def normalize_stripe_refs(payload: Mapping[str, Any] | None) -> ProviderRefs:
    payload = payload or {}
    return ProviderRefs(
        customer_id=read_string(payload, STRIPE_PATHS["customer_id"], lambda v: v.startswith("cus_")),
        subscription_id=read_string(payload, STRIPE_PATHS["subscription_id"], lambda v: v.startswith("sub_")),
        plan_ref=read_string(payload, STRIPE_PATHS["plan_ref"]),
    )


def normalize_paystack_refs(payload: Mapping[str, Any] | None) -> ProviderRefs:
    payload = payload or {}
    return ProviderRefs(
        customer_id=read_string(payload, PAYSTACK_PATHS["customer_id"]),
        subscription_id=read_string(
            payload, PAYSTACK_PATHS["subscription_id"], lambda v: bool(PAYSTACK_SUBSCRIPTION_CODE.match(v))
        ),
        plan_ref=read_string(payload, PAYSTACK_PATHS["plan_ref"]),
        email_token=read_string(payload, PAYSTACK_PATHS["email_token"]),
    )
