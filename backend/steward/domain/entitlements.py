"""Entitlement snapshot resolution.

Resolution order:
1. A live subscription: plan features, then tenant overrides on top.
2. No live subscription but earlier ones: everything readable, nothing writable.
3. Never subscribed: permissive, minus the configured deny-list.

Keys a plan does not define resolve to enabled/unlimited. A missing seed row
must never lock a whole tenant out, so the read path fails open.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum


class EntitlementSource(str, Enum):
    PLAN = "plan"
    INACTIVE_SUBSCRIPTION = "inactive_subscription"
    NO_SUBSCRIPTION = "no_subscription"


class AccessMode(str, Enum):
    ENABLED = "enabled"
    READ_ONLY = "read_only"
    LOCKED = "locked"


@dataclass(frozen=True)
class Entitlement:
    enabled: bool = True
    limit: int | None = None


UNRESTRICTED = Entitlement(enabled=True, limit=None)
DENIED = Entitlement(enabled=False, limit=None)


@dataclass(frozen=True)
class EntitlementSnapshot:
    source: EntitlementSource
    features: Mapping[str, Entitlement]
    denied: frozenset[str] = frozenset()
    plan_code: str | None = None
    subscription_id: str | None = None
    status: str | None = None
    overridden: frozenset[str] = field(default_factory=frozenset)

    def get(self, key: str) -> Entitlement:
        if key in self.features:
            return self.features[key]
        if key in self.denied:
            return DENIED
        return UNRESTRICTED

    def is_enabled(self, key: str) -> bool:
        return self.get(key).enabled

    def limit(self, key: str) -> int | None:
        return self.get(key).limit

    def access(self, key: str) -> AccessMode:
        """UI access mode for ``key``.

        Any key on a lapsed subscription is ``read_only``. Otherwise a disabled
        key is ``locked``; that includes a tenant with no subscription at all,
        whose deny-listed keys show as upgrade prompts rather than read-only.
        """
        entitlement = self.get(key)
        if self.source == EntitlementSource.INACTIVE_SUBSCRIPTION:
            return AccessMode.READ_ONLY
        if not entitlement.enabled:
            return AccessMode.LOCKED
        return AccessMode.ENABLED

    def keys(self) -> list[str]:
        return sorted(set(self.features) | set(self.denied))


def _apply_overrides(features: dict[str, Entitlement], overrides: Mapping[str, Entitlement]) -> None:
    for key, override in overrides.items():
        features[key] = override


def resolve_snapshot(
    *,
    plan_features: Mapping[str, Entitlement] | None,
    overrides: Mapping[str, Entitlement],
    has_history: bool,
    known_keys: Iterable[str] = (),
    denied_keys: Iterable[str] = (),
    plan_code: str | None = None,
    subscription_id: str | None = None,
    status: str | None = None,
) -> EntitlementSnapshot:
    """Build a snapshot from already-loaded rows.

    Args:
        plan_features: Features of the live subscription's plan, or None when
            the tenant has no live subscription
        overrides: Tenant-specific overrides keyed by feature key
        has_history: Whether the tenant ever had a subscription
        known_keys: Catalog-wide feature keys, listed so clients see them all
        denied_keys: Keys disabled for tenants that never subscribed
        plan_code: Live plan code, for display
        subscription_id: Live subscription id, for display
        status: Live subscription status, for display

    Returns:
        EntitlementSnapshot with every known key materialised
    """
    features: dict[str, Entitlement] = {}

    if plan_features is not None:
        for key in known_keys:
            features[key] = UNRESTRICTED
        features.update(plan_features)
        _apply_overrides(features, overrides)
        return EntitlementSnapshot(
            source=EntitlementSource.PLAN,
            features=features,
            plan_code=plan_code,
            subscription_id=subscription_id,
            status=status,
            overridden=frozenset(overrides),
        )

    if has_history:
        for key in known_keys:
            features[key] = UNRESTRICTED
        _apply_overrides(features, overrides)
        return EntitlementSnapshot(
            source=EntitlementSource.INACTIVE_SUBSCRIPTION,
            features=features,
            overridden=frozenset(overrides),
        )

    denied = frozenset(denied_keys)
    for key in known_keys:
        features[key] = DENIED if key in denied else UNRESTRICTED
    _apply_overrides(features, overrides)
    return EntitlementSnapshot(
        source=EntitlementSource.NO_SUBSCRIPTION,
        features=features,
        denied=denied - frozenset(overrides),
        overridden=frozenset(overrides),
    )
