"""Payment method registry and currency consistency guard.

Responsibilities:
- Resolve (create or reuse) the owner's gateway customer
- Attach cards without ever saving the same card twice
- Saved-card management (list, remove, set default, update details)
- Refuse commitments that would split a customer across currencies
"""

import threading
from typing import List, Optional

from billing_engine.errors import CurrencyMismatchError, PaymentMethodNotFoundError
from billing_engine.logging_config import get_logger
from billing_engine.models.billing import CardDetailsUpdate, ResolvedPaymentMethod, SavedCard
from billing_engine.models.gateway import GatewayPaymentMethod
from billing_engine.repositories.subscription_store import SubscriptionStore, get_subscription_store
from billing_engine.services.payment_gateway import GatewayError, PaymentGateway, get_payment_gateway

logger = get_logger(__name__)


class CurrencyGuard:
    """Best-effort check that a customer stays in one currency.

    The scan is advisory and not transactional: a commitment created
    concurrently between the scan and the caller's write is not detected.
    """

    def __init__(self, gateway: PaymentGateway, scope: str = "full", enabled: bool = True):
        if scope not in ("full", "subscriptions_only"):
            raise ValueError(f"Unknown currency guard scope: {scope}")
        self._gateway = gateway
        self._scope = scope
        self._enabled = enabled

    @property
    def scope(self) -> str:
        return self._scope

    def ensure_consistent(self, customer_id: str, currency: str, owner_id: Optional[str] = None) -> None:
        """Raise if the customer holds an open commitment in another currency.

        Raises:
            CurrencyMismatchError: On the first conflicting commitment
            GatewayError: If the gateway cannot be queried
        """
        if not self._enabled:
            return

        requested = currency.lower()
        for commitment in self._gateway.list_open_commitments(customer_id, scope=self._scope):
            existing = commitment.currency.lower()
            if existing != requested:
                logger.info(
                    "currency_mismatch_detected",
                    customer_id=customer_id,
                    requested_currency=requested,
                    conflicting_currency=existing,
                    conflicting_resource=commitment.resource,
                    conflicting_id=commitment.id,
                )
                raise CurrencyMismatchError(
                    f"Customer already has a {commitment.resource.replace('_', ' ')} in "
                    f"{existing.upper()}; cannot add a commitment in {requested.upper()}",
                    owner_id=owner_id,
                    requested_currency=requested,
                    conflicting_currency=existing,
                    conflicting_resource=commitment.resource,
                )


class PaymentMethodRegistry:
    """Owns the owner-to-customer link and the owner's saved cards."""

    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        store: Optional[SubscriptionStore] = None,
    ):
        self._gateway = gateway if gateway is not None else get_payment_gateway()
        self._store = store if store is not None else get_subscription_store()

    def find_customer_id(self, owner_id: str) -> Optional[str]:
        """Look up the owner's gateway customer without creating one.

        Local rows are consulted first (newest first), then the gateway's
        customer search on ``metadata.owner_id``.
        """
        for row in reversed(self._store.get_by_owner(owner_id)):
            if row.external_customer_id:
                return row.external_customer_id

        customer = self._gateway.find_customer_by_owner(owner_id)
        return customer.id if customer else None

    def ensure_customer(self, owner_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """Return the owner's gateway customer id, creating the customer if needed."""
        customer_id = self.find_customer_id(owner_id)
        if customer_id:
            return customer_id

        customer = self._gateway.create_customer(owner_id, email=email, name=name)
        logger.info("customer_created", owner_id=owner_id, customer_id=customer.id)
        return customer.id

    def _retrieve(self, payment_method_id: str, owner_id: str) -> GatewayPaymentMethod:
        try:
            return self._gateway.retrieve_payment_method(payment_method_id)
        except GatewayError as e:
            if e.is_missing_resource:
                raise PaymentMethodNotFoundError(
                    f"Payment method {payment_method_id} not found", owner_id=owner_id
                ) from e
            raise

    def attach_or_reuse(
        self,
        owner_id: str,
        payment_method_id: str,
        customer_id: Optional[str] = None,
    ) -> ResolvedPaymentMethod:
        """Resolve the card to charge for the owner.

        A card whose fingerprint matches one already saved on the customer is
        never attached again; the saved card is reused instead. The resolved
        card becomes the customer's default.

        Args:
            owner_id: Owner the card is for
            payment_method_id: Card id supplied by the client
            customer_id: Gateway customer, resolved from the owner when omitted

        Returns:
            ResolvedPaymentMethod
        """
        customer_id = customer_id or self.ensure_customer(owner_id)
        card = self._retrieve(payment_method_id, owner_id)

        if card.customer_id and card.customer_id != customer_id:
            raise PaymentMethodNotFoundError(
                f"Payment method {payment_method_id} belongs to another customer", owner_id=owner_id
            )

        is_new_card = False
        resolved_id = payment_method_id
        if card.customer_id != customer_id:
            saved = self._gateway.list_payment_methods(customer_id)
            duplicate = next(
                (pm for pm in saved if card.fingerprint and pm.fingerprint == card.fingerprint),
                None,
            )
            if duplicate is not None:
                resolved_id = duplicate.id
                logger.info(
                    "payment_method_reused",
                    owner_id=owner_id,
                    customer_id=customer_id,
                    payment_method_id=resolved_id,
                )
            else:
                self._gateway.attach_payment_method(payment_method_id, customer_id)
                is_new_card = True

        self._gateway.set_default_payment_method(customer_id, resolved_id)

        return ResolvedPaymentMethod(
            payment_method_id=resolved_id,
            customer_id=customer_id,
            fingerprint=card.fingerprint,
            is_new_card=is_new_card,
        )

    def _owned_card(self, owner_id: str, payment_method_id: str) -> str:
        customer_id = self.find_customer_id(owner_id)
        if not customer_id:
            raise PaymentMethodNotFoundError("Owner has no saved cards", owner_id=owner_id)
        card = self._retrieve(payment_method_id, owner_id)
        if card.customer_id != customer_id:
            raise PaymentMethodNotFoundError(
                f"Payment method {payment_method_id} is not saved for this owner", owner_id=owner_id
            )
        return customer_id

    def list_saved_cards(self, owner_id: str) -> List[SavedCard]:
        """List the owner's saved cards, flagging the default one."""
        customer_id = self.find_customer_id(owner_id)
        if not customer_id:
            return []

        default_id = self._gateway.retrieve_customer(customer_id).default_payment_method_id
        return [
            SavedCard(
                id=pm.id,
                brand=pm.brand,
                last4=pm.last4,
                exp_month=pm.exp_month,
                exp_year=pm.exp_year,
                is_default=pm.id == default_id,
            )
            for pm in self._gateway.list_payment_methods(customer_id)
        ]

    def remove_card(self, owner_id: str, payment_method_id: str) -> None:
        """Detach a saved card from the owner's customer."""
        customer_id = self._owned_card(owner_id, payment_method_id)
        self._gateway.detach_payment_method(payment_method_id)
        logger.info("payment_method_removed", owner_id=owner_id, customer_id=customer_id, payment_method_id=payment_method_id)

    def set_default_card(self, owner_id: str, payment_method_id: str) -> None:
        customer_id = self._owned_card(owner_id, payment_method_id)
        self._gateway.set_default_payment_method(customer_id, payment_method_id)
        logger.info("default_payment_method_set", owner_id=owner_id, customer_id=customer_id, payment_method_id=payment_method_id)

    def update_card_details(
        self, owner_id: str, payment_method_id: str, update: CardDetailsUpdate
    ) -> SavedCard:
        """Update expiry and billing details of a saved card."""
        customer_id = self._owned_card(owner_id, payment_method_id)
        pm = self._gateway.update_payment_method(
            payment_method_id,
            exp_month=update.exp_month,
            exp_year=update.exp_year,
            billing_details=update.billing_details() or None,
        )
        default_id = self._gateway.retrieve_customer(customer_id).default_payment_method_id
        logger.info("payment_method_updated", owner_id=owner_id, payment_method_id=payment_method_id)
        return SavedCard(
            id=pm.id,
            brand=pm.brand,
            last4=pm.last4,
            exp_month=pm.exp_month,
            exp_year=pm.exp_year,
            is_default=pm.id == default_id,
        )


_registry: Optional[PaymentMethodRegistry] = None
_registry_lock = threading.Lock()


def get_payment_method_registry() -> PaymentMethodRegistry:
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = PaymentMethodRegistry()
    return _registry


def get_currency_guard() -> CurrencyGuard:
    from billing_engine.config import get_config

    config = get_config()
    return CurrencyGuard(
        get_payment_gateway(),
        scope=config.currency_guard.scope,
        enabled=config.currency_guard.enabled,
    )


def reset_payment_method_registry() -> None:
    global _registry
    with _registry_lock:
        _registry = None
