"""Build provider adapters from settings."""

from steward.core.config import Settings, get_settings
from steward.domain.subscription_status import SubscriptionProvider
from steward.providers.base import BillingProviderAdapter, ManualProvider
from steward.providers.paystack_adapter import PaystackProvider
from steward.providers.stripe_adapter import StripeProvider

ProviderAdapters = dict[SubscriptionProvider, BillingProviderAdapter]


def build_provider_adapters(settings: Settings | None = None) -> ProviderAdapters:
    settings = settings or get_settings()
    timeout = settings.provider_timeout_seconds
    return {
        SubscriptionProvider.MANUAL: ManualProvider(timeout),
        SubscriptionProvider.STRIPE: StripeProvider(
            settings.stripe_secret_key,
            timeout,
            settings.stripe_webhook_secret,
        ),
        SubscriptionProvider.PAYSTACK: PaystackProvider(
            settings.paystack_secret_key,
            settings.paystack_base_url,
            timeout,
        ),
    }
