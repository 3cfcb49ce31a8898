"""Re-export all models so Base.metadata sees them."""

from steward.db.models.audit_log import AuditLog
from steward.db.models.billing_reminder import BillingReminder
from steward.db.models.dispute import Dispute
from steward.db.models.donation import Donation
from steward.db.models.feature_override import TenantFeatureOverride
from steward.db.models.invoice import Invoice
from steward.db.models.payment_intent import PaymentIntent
from steward.db.models.payout import Payout
from steward.db.models.refund import Refund
from steward.db.models.subscription_plan import SubscriptionPlan, SubscriptionPlanFeature
from steward.db.models.tenant_subscription import TenantSubscription
from steward.db.models.webhook_event import WebhookEvent

__all__ = [
    "AuditLog",
    "BillingReminder",
    "Dispute",
    "Donation",
    "Invoice",
    "PaymentIntent",
    "Payout",
    "Refund",
    "SubscriptionPlan",
    "SubscriptionPlanFeature",
    "TenantFeatureOverride",
    "TenantSubscription",
    "WebhookEvent",
]
