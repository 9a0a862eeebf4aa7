"""Subscription lifecycle state machine.

Responsibilities:
- Create subscriptions (customer, card, currency guard, gateway subscription)
- Deferred and immediate cancellation
- Pause and resume
- Renewal after a special offer, as a new linked row
- Change of the charged card

Every action runs its precondition check first, calls the gateway, and only
then writes the local projection. Special-offer pseudo-subscriptions have no
gateway counterpart, so their transitions are local only.
"""

from typing import Callable, List, Optional

from billing_engine.errors import NoEligibleSubscriptionError, SubscriptionAlreadyExistsError
from billing_engine.logging_config import get_logger
from billing_engine.models.billing import CreateSubscriptionResult
from billing_engine.models.events import NotificationTemplate
from billing_engine.models.gateway import GatewayPrice, GatewaySubscription
from billing_engine.models.subscription import (
    Subscription,
    SubscriptionStatus,
    status_from_gateway,
)
from billing_engine.repositories.subscription_store import (
    PersistenceError,
    SubscriptionStore,
    get_subscription_store,
)
from billing_engine.services.clock import Clock, get_clock
from billing_engine.services.payment_gateway import PaymentGateway, get_payment_gateway
from billing_engine.services.payment_methods import (
    CurrencyGuard,
    PaymentMethodRegistry,
    get_currency_guard,
    get_payment_method_registry,
)
from billing_engine.utils.billing_period import add_billing_interval
from billing_engine.utils.id_generator import generate_subscription_id

logger = get_logger(__name__)

CANCELLABLE_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAUSED}
)
PAUSABLE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})
RESUMABLE_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.PAUSED})
# Statuses that block creating another subscription while the period is running
BLOCKING_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.CANCELED}
)
# Statuses with no live gateway subscription behind them
CLOSED_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED})

RowPredicate = Callable[[Subscription], bool]


class SubscriptionEngine:
    """Subscription lifecycle management engine.

    Integrates the payment gateway, the payment method registry, the
    currency guard and the subscription store.
    """

    def __init__(
        self,
        subscription_store: Optional[SubscriptionStore] = None,
        gateway: Optional[PaymentGateway] = None,
        payment_methods: Optional[PaymentMethodRegistry] = None,
        currency_guard: Optional[CurrencyGuard] = None,
        notifier=None,
        clock: Optional[Clock] = None,
        management_contact: Optional[str] = None,
    ):
        """Initialize subscription engine.

        Args:
            subscription_store: Subscription storage (defaults to global instance)
            gateway: Payment gateway client (defaults to global instance)
            payment_methods: Card registry (defaults to global instance)
            currency_guard: Currency consistency guard (defaults to configured guard)
            notifier: Notification dispatcher (lazy loaded when omitted)
            clock: Clock for "now" comparisons (defaults to global clock)
            management_contact: Who owners contact about special-offer subscriptions
        """
        self.store = subscription_store if subscription_store is not None else get_subscription_store()
        self.gateway = gateway if gateway is not None else get_payment_gateway()
        self.payment_methods = payment_methods if payment_methods is not None else get_payment_method_registry()
        self.currency_guard = currency_guard if currency_guard is not None else get_currency_guard()
        self.clock = clock if clock is not None else get_clock()
        self._notifier = notifier
        self._management_contact = management_contact

        logger.info("subscription_engine_initialized")

    def _get_notifier(self):
        """lazy load notification dispatcher to avoid Pub/Sub setup until needed"""
        if self._notifier is None:
            from billing_engine.services.notification_dispatcher import get_notification_dispatcher

            self._notifier = get_notification_dispatcher()
        return self._notifier

    def _get_management_contact(self) -> str:
        if self._management_contact is None:
            from billing_engine.config import get_config

            self._management_contact = get_config().special_offer.management_contact
        return self._management_contact

    def _notify(self, template: NotificationTemplate, subscription: Subscription, **context) -> None:
        try:
            self._get_notifier().send(
                template,
                owner_id=subscription.owner_id,
                subscription_id=subscription.id,
                **context,
            )
        except Exception as e:
            # Log error but don't fail the operation
            logger.error(
                "notification_failed",
                template=template.value,
                subscription_id=subscription.id,
                owner_id=subscription.owner_id,
                error=str(e),
                exc_info=True,
            )

    # Row selection

    def _find_latest(self, owner_id: str, predicate: RowPredicate) -> Optional[Subscription]:
        for row in reversed(self.store.get_by_owner(owner_id)):
            if predicate(row):
                return row
        return None

    def _canceled_with_future_end(self, row: Subscription, now: int) -> bool:
        return row.status == SubscriptionStatus.CANCELED and row.has_future_period_end(now)

    def _is_cancellable(self, row: Subscription, now: int) -> bool:
        return row.status in CANCELLABLE_STATUSES or self._canceled_with_future_end(row, now)

    def _is_pausable(self, row: Subscription, now: int) -> bool:
        return row.status in PAUSABLE_STATUSES or self._canceled_with_future_end(row, now)

    def _require(
        self, owner_id: str, predicate: RowPredicate, action: str
    ) -> Subscription:
        row = self._find_latest(owner_id, predicate)
        if row is None:
            logger.info("no_eligible_subscription", owner_id=owner_id, action=action)
            raise NoEligibleSubscriptionError(
                f"No subscription eligible for {action}", owner_id=owner_id
            )
        return row

    def _ensure_no_other_access(self, owner_id: str, exclude_id: Optional[str] = None) -> None:
        now = self.clock.now_millis()
        for row in self.store.get_by_owner(owner_id):
            if row.id != exclude_id and row.grants_access(now):
                raise SubscriptionAlreadyExistsError(
                    "Owner already has a subscription granting access", owner_id=owner_id
                )

    # Writes

    def _persist_new(self, row: Subscription, operation: str) -> Subscription:
        try:
            return self.store.upsert_by_external_id(row)
        except PersistenceError as e:
            self._log_drift(operation, row, e)
            raise

    def _persist_change(
        self,
        row: Subscription,
        operation: str,
        mutator: Callable[[Subscription], Optional[bool]],
    ) -> Subscription:
        try:
            updated = self.store.modify(row.external_subscription_id, mutator)
            if updated is None:
                raise PersistenceError(
                    f"Subscription {row.external_subscription_id} disappeared during {operation}"
                )
            return updated
        except PersistenceError as e:
            self._log_drift(operation, row, e)
            raise

    def _log_drift(self, operation: str, row: Subscription, error: Exception) -> None:
        # Gateway state already changed; only the next webhook can repair the row
        logger.critical(
            "local_write_failed_after_gateway_success",
            operation=operation,
            subscription_id=row.id,
            external_subscription_id=row.external_subscription_id,
            owner_id=row.owner_id,
            error=str(error),
        )

    def _apply_gateway_state(self, row: Subscription, gateway_sub: GatewaySubscription, reason: str) -> None:
        try:
            row.set_status(status_from_gateway(gateway_sub.status, gateway_sub.is_paused), reason=reason)
        except ValueError:
            logger.warning(
                "unknown_gateway_status",
                subscription_id=row.id,
                gateway_status=gateway_sub.status,
            )
        if gateway_sub.current_period_end_millis:
            row.set_period(
                gateway_sub.current_period_start_millis,
                gateway_sub.current_period_end_millis,
                reason=reason,
            )

    def _new_row(
        self,
        owner_id: str,
        customer_id: str,
        gateway_sub: GatewaySubscription,
        price: GatewayPrice,
        payment_method_id: str,
        original_subscription_id: Optional[str] = None,
    ) -> Subscription:
        now = self.clock.now_millis()
        period_start = gateway_sub.current_period_start_millis or now
        period_end = gateway_sub.current_period_end_millis or add_billing_interval(
            period_start, price.interval, price.interval_count
        )
        return Subscription(
            id=generate_subscription_id(),
            owner_id=owner_id,
            external_subscription_id=gateway_sub.id,
            external_customer_id=customer_id,
            status=status_from_gateway(gateway_sub.status, gateway_sub.is_paused),
            current_period_start_millis=period_start,
            current_period_end_millis=period_end,
            cancel_at_period_end=gateway_sub.cancel_at_period_end,
            price_id=price.id,
            amount=price.amount,
            currency=price.currency,
            interval=price.interval,
            interval_count=price.interval_count,
            payment_method_id=payment_method_id,
            original_subscription_id=original_subscription_id,
            created_at_millis=now,
            updated_at_millis=now,
        )

    # Actions

    def create_subscription(
        self,
        owner_id: str,
        payment_method_id: str,
        price_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> CreateSubscriptionResult:
        """Create a new subscription for an owner.

        Args:
            owner_id: Owning account
            payment_method_id: Card presented by the client
            price_id: Gateway price to subscribe to
            email: Customer email, used only when a gateway customer is created
            name: Customer name, used only when a gateway customer is created

        Returns:
            CreateSubscriptionResult

        Raises:
            SubscriptionAlreadyExistsError: If a running subscription exists (no gateway call is made)
            CurrencyMismatchError: If the price currency conflicts with existing commitments
            PaymentMethodNotFoundError: If the card cannot be resolved
            GatewayError: If a gateway call fails
            PersistenceError: If the local write fails after the gateway subscription was created
        """
        now = self.clock.now_millis()
        existing = self._find_latest(
            owner_id,
            lambda row: row.status in BLOCKING_STATUSES and row.has_future_period_end(now),
        )
        if existing is not None:
            logger.info(
                "subscription_already_exists",
                owner_id=owner_id,
                subscription_id=existing.id,
                status=existing.status.value,
            )
            raise SubscriptionAlreadyExistsError(
                "Owner already has a subscription for the current period", owner_id=owner_id
            )

        customer_id = self.payment_methods.ensure_customer(owner_id, email=email, name=name)
        price = self.gateway.retrieve_price(price_id)
        self.currency_guard.ensure_consistent(customer_id, price.currency, owner_id=owner_id)
        resolved = self.payment_methods.attach_or_reuse(owner_id, payment_method_id, customer_id=customer_id)

        gateway_sub = self.gateway.create_subscription(
            customer_id=customer_id,
            price_id=price.id,
            payment_method_id=resolved.payment_method_id,
            owner_id=owner_id,
        )

        row = self._new_row(owner_id, customer_id, gateway_sub, price, resolved.payment_method_id)
        stored = self._persist_new(row, operation="create")

        logger.info(
            "subscription_created",
            owner_id=owner_id,
            subscription_id=stored.id,
            external_subscription_id=stored.external_subscription_id,
            status=stored.status.value,
            price_id=price.id,
            currency=price.currency,
            is_new_card=resolved.is_new_card,
        )

        return CreateSubscriptionResult(
            subscription=stored,
            client_secret=gateway_sub.client_secret,
            is_new_card=resolved.is_new_card,
        )

    def cancel_at_period_end(self, owner_id: str) -> Subscription:
        """Schedule cancellation at the end of the current billing period.

        Special-offer subscriptions cannot be managed this way.

        Raises:
            NoEligibleSubscriptionError: If no regular subscription can be canceled
            GatewayError: If the gateway call fails
        """
        now = self.clock.now_millis()
        row = self._find_latest(owner_id, lambda r: self._is_cancellable(r, now) and not r.is_special_offer)
        if row is None:
            special = self._find_latest(owner_id, lambda r: self._is_cancellable(r, now))
            if special is not None:
                logger.info("special_offer_management_refused", owner_id=owner_id, subscription_id=special.id)
                raise NoEligibleSubscriptionError(
                    "Special offer subscriptions cannot be managed by users, "
                    f"please contact {self._get_management_contact()}",
                    owner_id=owner_id,
                )
            logger.info("no_eligible_subscription", owner_id=owner_id, action="cancellation")
            raise NoEligibleSubscriptionError("No subscription eligible for cancellation", owner_id=owner_id)

        gateway_sub = self.gateway.set_cancel_at_period_end(row.external_subscription_id, True)

        def mutate(current: Subscription) -> None:
            current.set_cancel_at_period_end(True, reason="Owner scheduled cancellation")
            self._apply_gateway_state(current, gateway_sub, reason="Cancellation scheduled")

        updated = self._persist_change(row, "cancel_at_period_end", mutate)

        logger.info(
            "subscription_cancel_scheduled",
            owner_id=owner_id,
            subscription_id=updated.id,
            status=updated.status.value,
            current_period_end_millis=updated.current_period_end_millis,
        )
        self._notify(
            NotificationTemplate.SUBSCRIPTION_CANCELED,
            updated,
            immediate=False,
            access_until_millis=updated.current_period_end_millis,
        )
        return updated

    def cancel_immediately(self, owner_id: str) -> Subscription:
        """Cancel a subscription now.

        The period end is moved to the cancellation instant. Special-offer
        rows are canceled locally without any gateway call.

        Raises:
            NoEligibleSubscriptionError: If nothing can be canceled
            GatewayError: If the gateway call fails
        """
        now = self.clock.now_millis()
        row = self._require(owner_id, lambda r: self._is_cancellable(r, now), "cancellation")

        if not row.is_special_offer:
            self.gateway.cancel_subscription(row.external_subscription_id)

        def mutate(current: Subscription) -> None:
            current.set_status(SubscriptionStatus.CANCELED, reason="Canceled immediately by owner")
            current.set_cancel_at_period_end(False, reason="Canceled immediately by owner")
            if current.current_period_end_millis > now:
                current.set_period(
                    current.current_period_start_millis, now, reason="Immediate cancellation", allow_rewind=True
                )

        updated = self._persist_change(row, "cancel_immediately", mutate)

        logger.info(
            "subscription_canceled",
            owner_id=owner_id,
            subscription_id=updated.id,
            is_special_offer=updated.is_special_offer,
            immediate=True,
        )
        self._notify(
            NotificationTemplate.SUBSCRIPTION_CANCELED,
            updated,
            immediate=True,
            access_until_millis=updated.current_period_end_millis,
        )
        return updated

    def pause_subscription(self, owner_id: str) -> Subscription:
        """Pause collection on the owner's subscription.

        Raises:
            NoEligibleSubscriptionError: If nothing can be paused
            GatewayError: If the gateway call fails
        """
        now = self.clock.now_millis()
        row = self._require(owner_id, lambda r: self._is_pausable(r, now), "pause")

        gateway_sub = None
        if not row.is_special_offer:
            gateway_sub = self.gateway.pause_collection(row.external_subscription_id)

        def mutate(current: Subscription) -> None:
            current.set_status(SubscriptionStatus.PAUSED, reason="Paused by owner")
            if gateway_sub is not None and gateway_sub.current_period_end_millis:
                current.set_period(
                    gateway_sub.current_period_start_millis,
                    gateway_sub.current_period_end_millis,
                    reason="Paused by owner",
                )

        updated = self._persist_change(row, "pause", mutate)
        logger.info(
            "subscription_paused",
            owner_id=owner_id,
            subscription_id=updated.id,
            is_special_offer=updated.is_special_offer,
        )
        return updated

    def resume_subscription(self, owner_id: str) -> Subscription:
        """Resume a paused or canceled subscription.

        Clears the gateway pause and any scheduled cancellation.

        Raises:
            NoEligibleSubscriptionError: If nothing can be resumed
            SubscriptionAlreadyExistsError: If another row already grants access
            GatewayError: If the gateway call fails
        """
        row = self._require(owner_id, lambda r: r.status in RESUMABLE_STATUSES, "resume")
        self._ensure_no_other_access(owner_id, exclude_id=row.id)

        if not row.is_special_offer:
            gateway_sub = self.gateway.resume_collection(row.external_subscription_id)
            if row.cancel_at_period_end or gateway_sub.cancel_at_period_end:
                self.gateway.set_cancel_at_period_end(row.external_subscription_id, False)

        def mutate(current: Subscription) -> None:
            current.set_status(SubscriptionStatus.ACTIVE, reason="Resumed by owner")
            current.set_cancel_at_period_end(False, reason="Resumed by owner")

        updated = self._persist_change(row, "resume", mutate)
        logger.info(
            "subscription_resumed",
            owner_id=owner_id,
            subscription_id=updated.id,
            is_special_offer=updated.is_special_offer,
        )
        return updated

    def renew_after_special_offer(self, owner_id: str, payment_method_id: str) -> CreateSubscriptionResult:
        """Start a regular subscription after a special-offer subscription.

        A new row linked through ``original_subscription_id`` is inserted;
        the special-offer row itself is only closed, never rewritten.

        Raises:
            NoEligibleSubscriptionError: If the owner's latest row is not a special offer
            SubscriptionAlreadyExistsError: If a regular subscription already grants access
            CurrencyMismatchError: If the plan currency conflicts with existing commitments
            GatewayError: If a gateway call fails
        """
        latest = self.store.get_latest_for_owner(owner_id)
        if latest is None or not latest.is_special_offer:
            logger.info("no_eligible_subscription", owner_id=owner_id, action="renew_after_special_offer")
            raise NoEligibleSubscriptionError(
                "No special offer subscription to renew", owner_id=owner_id
            )
        self._ensure_no_other_access(owner_id, exclude_id=latest.id)

        customer_id = self.payment_methods.ensure_customer(owner_id)
        price = self.gateway.retrieve_price(latest.price_id)
        self.currency_guard.ensure_consistent(customer_id, price.currency, owner_id=owner_id)
        resolved = self.payment_methods.attach_or_reuse(owner_id, payment_method_id, customer_id=customer_id)

        gateway_sub = self.gateway.create_subscription(
            customer_id=customer_id,
            price_id=price.id,
            payment_method_id=resolved.payment_method_id,
            owner_id=owner_id,
        )

        now = self.clock.now_millis()
        if latest.grants_access(now):

            def close(current: Subscription) -> None:
                current.set_status(SubscriptionStatus.CANCELED, reason="Renewed as regular subscription")
                current.set_period(
                    current.current_period_start_millis, now, reason="Renewed as regular subscription", allow_rewind=True
                )

            self._persist_change(latest, "close_special_offer", close)

        row = self._new_row(
            owner_id,
            customer_id,
            gateway_sub,
            price,
            resolved.payment_method_id,
            original_subscription_id=latest.id,
        )
        stored = self._persist_new(row, operation="renew_after_special_offer")

        logger.info(
            "subscription_renewed_after_special_offer",
            owner_id=owner_id,
            subscription_id=stored.id,
            original_subscription_id=latest.id,
            external_subscription_id=stored.external_subscription_id,
        )
        return CreateSubscriptionResult(
            subscription=stored,
            client_secret=gateway_sub.client_secret,
            is_new_card=resolved.is_new_card,
        )

    def change_payment_method(self, owner_id: str, payment_method_id: str) -> Subscription:
        """Switch the card charged for the owner's live subscription.

        Raises:
            NoEligibleSubscriptionError: If there is no live regular subscription
            PaymentMethodNotFoundError: If the card cannot be resolved
            GatewayError: If a gateway call fails
        """
        row = self._require(
            owner_id,
            lambda r: r.status not in CLOSED_STATUSES and not r.is_special_offer,
            "payment method change",
        )

        resolved = self.payment_methods.attach_or_reuse(
            owner_id, payment_method_id, customer_id=row.external_customer_id
        )
        self.gateway.set_subscription_payment_method(row.external_subscription_id, resolved.payment_method_id)

        def mutate(current: Subscription) -> None:
            current.payment_method_id = resolved.payment_method_id

        updated = self._persist_change(row, "change_payment_method", mutate)
        logger.info(
            "subscription_payment_method_changed",
            owner_id=owner_id,
            subscription_id=updated.id,
            payment_method_id=resolved.payment_method_id,
            is_new_card=resolved.is_new_card,
        )
        return updated

    # Reads

    def get_subscription(self, subscription_id: str) -> Subscription:
        """Get a row by local id.

        Raises:
            SubscriptionNotFoundError: If not found
        """
        return self.store.get(subscription_id)

    def get_owner_subscriptions(self, owner_id: str) -> List[Subscription]:
        """Get all of an owner's rows, oldest first."""
        return self.store.get_by_owner(owner_id)


# Global engine instance
_engine_instance: Optional[SubscriptionEngine] = None


def get_subscription_engine() -> SubscriptionEngine:
    """Get global subscription engine instance (singleton)."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = SubscriptionEngine()
    return _engine_instance


def reset_subscription_engine() -> None:
    global _engine_instance
    _engine_instance = None
