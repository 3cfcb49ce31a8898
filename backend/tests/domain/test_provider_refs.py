"""Tests for provider reference normalization."""

import pytest

from steward.domain.provider_refs import (
    ProviderRefs,
    normalize_paystack_refs,
    normalize_stripe_refs,
    read_path,
)

pytestmark = pytest.mark.unit


def test_read_path_handles_missing_hops():
    payload = {"customer": {"id": "cus_1"}, "plan": None}
    assert read_path(payload, "customer.id") == "cus_1"
    assert read_path(payload, "plan.id") is None
    assert read_path(payload, "nothing.here") is None
    assert read_path("not a mapping", "a") is None


def test_stripe_refs_from_legacy_camel_case():
    refs = normalize_stripe_refs(
        {"stripeCustomerId": "cus_abc", "stripeSubscriptionId": "sub_abc", "stripePriceId": "price_growth"}
    )
    assert refs == ProviderRefs(customer_id="cus_abc", subscription_id="sub_abc", plan_ref="price_growth")


def test_stripe_refs_from_a_subscription_object():
    refs = normalize_stripe_refs(
        {
            "id": "sub_live",
            "customer": "cus_live",
            "items": {"data": [{"price": {"id": "price_starter"}}]},
        }
    )
    assert refs.customer_id == "cus_live"
    assert refs.subscription_id == "sub_live"
    assert refs.plan_ref == "price_starter"


def test_stripe_refs_reject_ids_with_the_wrong_prefix():
    refs = normalize_stripe_refs({"id": "evt_123", "customer": "not-a-customer"})
    assert refs.subscription_id is None
    assert refs.customer_id is None
    assert refs.is_empty


def test_paystack_refs_from_nested_payload():
    refs = normalize_paystack_refs(
        {
            "subscription_code": "SUB_abc123",
            "customer": {"customer_code": "CUS_xyz"},
            "plan": {"plan_code": "PLN_growth"},
            "email_token": "tok_1",
        }
    )
    assert refs.as_dict() == {
        "customer_id": "CUS_xyz",
        "subscription_id": "SUB_abc123",
        "plan_ref": "PLN_growth",
        "email_token": "tok_1",
    }


def test_paystack_subscription_code_must_look_like_one():
    refs = normalize_paystack_refs(
        {"subscription_code": "trx_999", "subscription": {"subscription_code": "  SUB_ok  "}}
    )
    assert refs.subscription_id == "SUB_ok"


def test_merged_over_keeps_existing_values():
    stored = ProviderRefs(customer_id="cus_old", subscription_id=None)
    incoming = ProviderRefs(customer_id="cus_new", subscription_id="sub_new", plan_ref="price_1")

    merged = incoming.merged_over(stored)

    assert merged.customer_id == "cus_old"
    assert merged.subscription_id == "sub_new"
    assert merged.plan_ref == "price_1"


def test_none_payload_is_empty():
    assert normalize_stripe_refs(None).is_empty
    assert normalize_paystack_refs(None).is_empty
