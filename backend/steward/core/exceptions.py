class StewardError(Exception):
    """Base exception for the billing engine.

    ``status_code`` and ``code`` drive the HTTP mapping in ``steward.main``.
    """

    status_code: int = 500
    code: str = "billing_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(StewardError):
    """Raised when plan, feature or transition input is malformed."""

    status_code = 400
    code = "validation_error"


class NotFoundError(StewardError):
    """Raised when a plan or subscription does not exist."""

    status_code = 404
    code = "not_found"


class ConflictError(StewardError):
    """Raised when a concurrent change won; the caller must re-fetch."""

    status_code = 409
    code = "conflict"


class InvalidTransitionError(ConflictError):
    """Raised when a status change is not allowed from the current status."""

    code = "invalid_transition"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition subscription from {current} to {target}")


class PlanChangeRejectedError(ValidationError):
    """Raised when a plan change request cannot be honoured as asked."""

    code = "plan_change_rejected"


class ProviderError(StewardError):
    """Raised when a Stripe or Paystack call fails or times out."""

    status_code = 502
    code = "provider_error"

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider} request failed: {message}")


class FeatureLockedError(StewardError):
    """Raised when the tenant's plan disables a feature."""

    status_code = 403
    code = "feature_locked"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Feature '{key}' is not included in the current plan")


class ReadOnlyAccessError(StewardError):
    """Raised on a write while the tenant has no live subscription."""

    status_code = 403
    code = "read_only"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Feature '{key}' is read-only until a subscription is active")


class LimitExceededError(StewardError):
    """Raised when a usage count reaches the plan limit."""

    status_code = 402
    code = "limit_exceeded"

    def __init__(self, key: str, limit: int, current: int):
        self.key = key
        self.limit = limit
        self.current = current
        super().__init__(f"Limit reached for '{key}': {current} of {limit}")
