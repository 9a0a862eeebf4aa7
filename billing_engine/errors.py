"""Domain error taxonomy.

Domain errors are expected outcomes of a precondition check. They are returned
to the caller as typed failures and are never logged as faults. Upstream
gateway failures live in ``services.payment_gateway`` (``GatewayError``) and
store failures in ``repositories.subscription_store`` (``PersistenceError``).
"""

from typing import Optional


class BillingError(Exception):
    """Base exception for every error raised by the billing engine."""

    pass


class DomainError(BillingError):
    """A business precondition was not met."""

    code = "domain_error"

    def __init__(self, message: str, owner_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.owner_id = owner_id


class NoEligibleSubscriptionError(DomainError):
    """No subscription row satisfies the action's precondition."""

    code = "no_eligible_subscription"


class NoActiveSubscriptionError(NoEligibleSubscriptionError):
    """The owner has no active, non-special-offer subscription."""

    code = "no_active_subscription"


class SubscriptionAlreadyExistsError(DomainError):
    """The owner already holds a subscription with a future period end."""

    code = "subscription_already_exists"


class OfferAlreadyUsedError(DomainError):
    """The owner has already consumed the one-time special offer."""

    code = "offer_already_used"


class OfferNotAvailableError(DomainError):
    """The special offer cannot be applied in the row's current offer state."""

    code = "offer_not_available"


class CurrencyMismatchError(DomainError):
    """A new commitment would split the customer across currencies."""

    code = "currency_mismatch"

    def __init__(
        self,
        message: str,
        owner_id: Optional[str] = None,
        requested_currency: Optional[str] = None,
        conflicting_currency: Optional[str] = None,
        conflicting_resource: Optional[str] = None,
    ):
        super().__init__(message, owner_id=owner_id)
        self.requested_currency = requested_currency
        self.conflicting_currency = conflicting_currency
        self.conflicting_resource = conflicting_resource


class PaymentMethodNotFoundError(DomainError):
    """The payment method does not belong to the owner's gateway customer."""

    code = "payment_method_not_found"
