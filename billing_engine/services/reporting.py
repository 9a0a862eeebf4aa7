"""Read-only queries over the subscription projection."""

from typing import List, Optional

from billing_engine.logging_config import get_logger
from billing_engine.models.billing import AccessDecision, StatusCounts
from billing_engine.models.gateway import GatewayInvoice, GatewayPrice
from billing_engine.models.subscription import (
    SpecialOfferStatus,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.repositories.subscription_store import SubscriptionStore, get_subscription_store
from billing_engine.services.clock import Clock, get_clock
from billing_engine.services.payment_gateway import PaymentGateway, get_payment_gateway
from billing_engine.services.payment_methods import PaymentMethodRegistry, get_payment_method_registry

logger = get_logger(__name__)


def _subscription_type(row: Subscription) -> str:
    return "special_offer" if row.is_special_offer else "regular"


class ReportingService:
    """Access checks, status counts and gateway pass-through listings."""

    def __init__(
        self,
        subscription_store: Optional[SubscriptionStore] = None,
        gateway: Optional[PaymentGateway] = None,
        payment_methods: Optional[PaymentMethodRegistry] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = subscription_store if subscription_store is not None else get_subscription_store()
        self._gateway = gateway
        self._payment_methods = payment_methods
        self.clock = clock if clock is not None else get_clock()

    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = get_payment_gateway()
        return self._gateway

    @property
    def payment_methods(self) -> PaymentMethodRegistry:
        if self._payment_methods is None:
            self._payment_methods = get_payment_method_registry()
        return self._payment_methods

    def get_active_subscription(self, owner_id: str) -> Optional[Subscription]:
        """Newest row of the owner that currently grants access."""
        now = self.clock.now_millis()
        for row in reversed(self.store.get_by_owner(owner_id)):
            if row.grants_access(now):
                return row
        return None

    def get_latest_subscription(self, owner_id: str) -> Optional[Subscription]:
        return self.store.get_latest_for_owner(owner_id)

    def check_access(self, owner_id: str) -> AccessDecision:
        """Decide whether the owner may use the dashboard right now.

        Access requires an active or trialing row whose period end lies in
        the future. Otherwise the decision explains the owner's situation
        based on their most recent row.
        """
        active = self.get_active_subscription(owner_id)
        if active is not None:
            return AccessDecision(
                granted=True,
                status=active.status.value,
                subscription_type=_subscription_type(active),
                current_period_end_millis=active.current_period_end_millis,
                cancel_at_period_end=active.cancel_at_period_end,
                message=(
                    "Subscription active until the end of the current period"
                    if active.cancel_at_period_end
                    else "Subscription active"
                ),
            )

        latest = self.get_latest_subscription(owner_id)
        if latest is None:
            logger.debug("access_denied", owner_id=owner_id, reason="no_subscription")
            return AccessDecision(granted=False, message="No subscription found")

        now = self.clock.now_millis()
        if latest.status == SubscriptionStatus.PAUSED:
            message = "Subscription is paused"
        elif latest.status == SubscriptionStatus.CANCELED and latest.has_future_period_end(now):
            message = "Subscription was canceled"
        elif latest.status == SubscriptionStatus.PAST_DUE:
            message = "Last payment failed, please update your payment method"
        elif not latest.has_future_period_end(now):
            message = "Subscription has ended"
        else:
            message = f"Subscription is {latest.status.value}"

        logger.debug("access_denied", owner_id=owner_id, status=latest.status.value)
        return AccessDecision(
            granted=False,
            status=latest.status.value,
            subscription_type=_subscription_type(latest),
            current_period_end_millis=latest.current_period_end_millis,
            cancel_at_period_end=latest.cancel_at_period_end,
            message=message,
        )

    def get_status_counts(self) -> StatusCounts:
        """Count owners by the status of their most recent row."""
        now = self.clock.now_millis()
        counts = {status.value: 0 for status in SubscriptionStatus}
        owners = self.store.get_owner_ids()
        special_offer_active = 0

        for owner_id in owners:
            latest = self.store.get_latest_for_owner(owner_id)
            if latest is None:
                continue
            counts[latest.status.value] += 1
            if latest.special_offer_status == SpecialOfferStatus.APPLIED and not latest.offer_window_elapsed(now):
                special_offer_active += 1

        return StatusCounts(
            total_owners=len(owners),
            counts=counts,
            special_offer_active=special_offer_active,
        )

    def get_payment_history(self, owner_id: str, limit: int = 10) -> List[GatewayInvoice]:
        customer_id = self.payment_methods.find_customer_id(owner_id)
        if not customer_id:
            return []
        return self.gateway.list_invoices(customer_id, limit=limit)

    def list_plans(self, currency: Optional[str] = None) -> List[GatewayPrice]:
        """Recurring prices from the gateway catalog, cheapest first."""
        prices = self.gateway.list_prices(currency=currency)
        return sorted(prices, key=lambda p: (p.currency, p.unit_amount))


_reporting_instance: Optional[ReportingService] = None


def get_reporting_service() -> ReportingService:
    global _reporting_instance
    if _reporting_instance is None:
        _reporting_instance = ReportingService()
    return _reporting_instance


def reset_reporting_service() -> None:
    global _reporting_instance
    _reporting_instance = None
