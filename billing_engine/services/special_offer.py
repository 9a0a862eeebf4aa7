"""Special offer engine - one discounted billing period per owner, ever.

Responsibilities:
- Eligibility checks against the owner's full subscription history
- Offer, apply and decline transitions on the live subscription
- Administrative grant of special-offer pseudo-subscriptions
- Reminders for discount windows about to end

Flagging an elapsed discount window as ``expired`` belongs to the
reconciliation processor, not to this engine.
"""

import math
from threading import Lock
from typing import Dict, List, Optional

from billing_engine.errors import (
    NoActiveSubscriptionError,
    OfferAlreadyUsedError,
    OfferNotAvailableError,
    SubscriptionAlreadyExistsError,
)
from billing_engine.logging_config import get_logger
from billing_engine.models.billing import SpecialOfferQuote
from billing_engine.models.events import NotificationTemplate
from billing_engine.models.gateway import GatewayCoupon
from billing_engine.models.subscription import (
    SpecialOfferStatus,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.models.settings import SpecialOfferConfig
from billing_engine.repositories.subscription_store import (
    PersistenceError,
    SubscriptionStore,
    get_subscription_store,
)
from billing_engine.services.clock import MILLIS_PER_DAY, Clock, get_clock
from billing_engine.services.payment_gateway import PaymentGateway, get_payment_gateway
from billing_engine.services.payment_methods import PaymentMethodRegistry, get_payment_method_registry
from billing_engine.utils.billing_period import add_billing_interval
from billing_engine.utils.id_generator import (
    generate_special_offer_subscription_id,
    generate_subscription_id,
)

logger = get_logger(__name__)


class SpecialOfferEngine:
    """Grants each owner at most one lifetime discounted billing period.

    The offer is only made on a live, regular (non special-offer)
    subscription. Every path that could grant the offer re-runs the lifetime
    scan over all of the owner's rows, including canceled and expired ones.
    """

    def __init__(
        self,
        subscription_store: Optional[SubscriptionStore] = None,
        gateway: Optional[PaymentGateway] = None,
        payment_methods: Optional[PaymentMethodRegistry] = None,
        settings: Optional[SpecialOfferConfig] = None,
        notifier=None,
        clock: Optional[Clock] = None,
    ):
        self.store = subscription_store if subscription_store is not None else get_subscription_store()
        self.gateway = gateway if gateway is not None else get_payment_gateway()
        self.payment_methods = payment_methods if payment_methods is not None else get_payment_method_registry()
        if settings is None:
            from billing_engine.config import get_config

            settings = get_config().special_offer
        self.settings = settings
        self.clock = clock if clock is not None else get_clock()
        self._notifier = notifier
        self._owner_locks: Dict[str, Lock] = {}
        self._owner_locks_guard = Lock()

    def _get_notifier(self):
        """lazy load notification dispatcher"""
        if self._notifier is None:
            from billing_engine.services.notification_dispatcher import get_notification_dispatcher

            self._notifier = get_notification_dispatcher()
        return self._notifier

    def _owner_lock(self, owner_id: str) -> Lock:
        """Serializes apply and decline for one owner inside this process."""
        with self._owner_locks_guard:
            return self._owner_locks.setdefault(owner_id, Lock())

    def _live_regular_row(self, owner_id: str) -> Subscription:
        now = self.clock.now_millis()
        for row in reversed(self.store.get_by_owner(owner_id)):
            if not row.is_special_offer and row.grants_access(now):
                return row
        logger.info("special_offer_no_active_subscription", owner_id=owner_id)
        raise NoActiveSubscriptionError("No active subscription found", owner_id=owner_id)

    def _ensure_offer_unused(self, owner_id: str) -> None:
        for row in self.store.get_by_owner(owner_id):
            if row.has_used_offer:
                logger.info("special_offer_already_used", owner_id=owner_id, subscription_id=row.id)
                raise OfferAlreadyUsedError("Special offer has already been used", owner_id=owner_id)

    def _quote(self, row: Subscription) -> SpecialOfferQuote:
        return SpecialOfferQuote(
            subscription_id=row.id,
            status=row.special_offer_status.value,
            coupon_id=row.special_offer_coupon_id,
            description=row.special_offer_description or "",
            discount_percent=row.special_offer_discount_percent,
            discount_amount=row.special_offer_discount_amount,
            currency=row.currency,
            discount_start_millis=row.special_offer_discount_start_millis,
            discount_end_millis=row.special_offer_discount_end_millis,
        )

    def _offer_coupon(self, coupon_id: str, owner_id: str) -> GatewayCoupon:
        coupon = self.gateway.retrieve_coupon(coupon_id)
        if not coupon.valid or not coupon.is_single_period:
            logger.warning(
                "special_offer_coupon_unusable",
                coupon_id=coupon.id,
                valid=coupon.valid,
                duration=coupon.duration,
            )
            raise OfferNotAvailableError("Special offer is currently unavailable", owner_id=owner_id)
        return coupon

    @staticmethod
    def _record_terms(row: Subscription, coupon: GatewayCoupon) -> None:
        row.special_offer_coupon_id = coupon.id
        row.special_offer_discount_percent = coupon.percent_off
        row.special_offer_discount_amount = coupon.amount_off_major
        row.special_offer_description = coupon.describe()

    @staticmethod
    def _discount_window(row: Subscription) -> tuple:
        start = row.current_period_end_millis
        return start, add_billing_interval(start, row.interval, row.interval_count)

    def _write(self, row: Subscription, operation: str, mutator) -> Subscription:
        try:
            updated = self.store.modify(row.external_subscription_id, mutator)
            if updated is None:
                raise PersistenceError(f"Subscription {row.external_subscription_id} disappeared during {operation}")
            return updated
        except PersistenceError as e:
            logger.critical(
                "local_write_failed_after_gateway_success",
                operation=operation,
                subscription_id=row.id,
                owner_id=row.owner_id,
                error=str(e),
            )
            raise

    def check_eligibility(self, owner_id: str) -> SpecialOfferQuote:
        """Check whether the owner may receive the special offer and present it.

        Returns:
            SpecialOfferQuote with the offer terms

        Raises:
            NoActiveSubscriptionError: No live regular subscription
            OfferAlreadyUsedError: The owner used the offer on any row, ever
            OfferNotAvailableError: Offers are disabled, the coupon does not cover exactly
                one invoice, or the live row's offer was answered and its window has passed
            GatewayError: If the coupon cannot be fetched
        """
        if not self.settings.enabled:
            raise OfferNotAvailableError("Special offers are disabled", owner_id=owner_id)

        live = self._live_regular_row(owner_id)
        now = self.clock.now_millis()

        # Idempotent re-query of an answered offer whose window is still open
        for row in reversed(self.store.get_by_owner(owner_id)):
            if (
                (row.is_special_offer or row.id == live.id)
                and row.special_offer_status in (SpecialOfferStatus.APPLIED, SpecialOfferStatus.DECLINED)
                and not row.offer_window_elapsed(now)
            ):
                return self._quote(row)

        self._ensure_offer_unused(owner_id)

        if live.special_offer_status == SpecialOfferStatus.OFFERED:
            return self._quote(live)
        if live.special_offer_status != SpecialOfferStatus.NONE:
            raise OfferNotAvailableError(
                f"Special offer is {live.special_offer_status.value} for this subscription",
                owner_id=owner_id,
            )

        coupon = self._offer_coupon(self.settings.coupon_id, owner_id)

        def offer(current: Subscription) -> Optional[bool]:
            # Another request may have moved the row on since it was read
            if current.special_offer_status != SpecialOfferStatus.NONE:
                return False
            current.set_special_offer_status(SpecialOfferStatus.OFFERED, reason="Eligibility confirmed")
            self._record_terms(current, coupon)
            start, end = self._discount_window(current)
            current.special_offer_discount_start_millis = start
            current.special_offer_discount_end_millis = end
            return True

        updated = self._write(live, "special_offer_offered", offer)
        if updated.special_offer_status != SpecialOfferStatus.OFFERED:
            raise OfferNotAvailableError(
                f"Special offer is {updated.special_offer_status.value} for this subscription",
                owner_id=owner_id,
            )

        logger.info(
            "special_offer_offered",
            owner_id=owner_id,
            subscription_id=updated.id,
            coupon_id=coupon.id,
            description=updated.special_offer_description,
        )
        return self._quote(updated)

    def apply(self, owner_id: str) -> Subscription:
        """Apply the offered discount to the next invoice of the live subscription.

        Concurrent calls for one owner attach the coupon at most once; every
        caller but the first gets OfferNotAvailableError.

        Raises:
            NoActiveSubscriptionError: No live regular subscription
            OfferNotAvailableError: The live row is not in the offered state,
                or the coupon does not cover exactly one invoice
            OfferAlreadyUsedError: The owner used the offer on any row, ever
            GatewayError: If the coupon cannot be attached
        """
        with self._owner_lock(owner_id):
            live = self._live_regular_row(owner_id)
            if live.special_offer_status != SpecialOfferStatus.OFFERED:
                raise OfferNotAvailableError(
                    "Special offer must be offered before it can be applied", owner_id=owner_id
                )
            self._ensure_offer_unused(owner_id)

            coupon = self._offer_coupon(live.special_offer_coupon_id or self.settings.coupon_id, owner_id)
            gateway_sub = self.gateway.apply_coupon(live.external_subscription_id, coupon.id)
            realized = gateway_sub.coupon or coupon
            if not realized.is_single_period:
                logger.critical(
                    "special_offer_coupon_duration_mismatch",
                    owner_id=owner_id,
                    subscription_id=live.id,
                    coupon_id=realized.id,
                    duration=realized.duration,
                )
                raise OfferNotAvailableError("Special offer is currently unavailable", owner_id=owner_id)
            now = self.clock.now_millis()
            committed = []

            def mark_applied(current: Subscription) -> Optional[bool]:
                # Another writer may have answered the offer during the gateway call
                if current.special_offer_status != SpecialOfferStatus.OFFERED:
                    return False
                current.set_special_offer_status(SpecialOfferStatus.APPLIED, reason="Coupon attached to next invoice")
                self._record_terms(current, realized)
                start, end = self._discount_window(current)
                current.special_offer_discount_start_millis = start
                current.special_offer_discount_end_millis = end
                current.special_offer_applied_at_millis = now
                committed.append(current.id)
                return True

            updated = self._write(live, "special_offer_applied", mark_applied)

        if not committed:
            logger.warning(
                "special_offer_apply_conflict",
                owner_id=owner_id,
                subscription_id=updated.id,
                special_offer_status=updated.special_offer_status.value,
            )
            raise OfferNotAvailableError(
                f"Special offer is {updated.special_offer_status.value} for this subscription",
                owner_id=owner_id,
            )

        logger.info(
            "special_offer_applied",
            owner_id=owner_id,
            subscription_id=updated.id,
            coupon_id=realized.id,
            discount_start_millis=updated.special_offer_discount_start_millis,
            discount_end_millis=updated.special_offer_discount_end_millis,
        )
        return updated

    def decline(self, owner_id: str) -> Subscription:
        """Record that the owner turned the offer down.

        Raises:
            NoActiveSubscriptionError: No live regular subscription
            OfferNotAvailableError: The live row is not in the offered state
        """

        def mark_declined(current: Subscription) -> Optional[bool]:
            if current.special_offer_status != SpecialOfferStatus.OFFERED:
                return False
            current.set_special_offer_status(SpecialOfferStatus.DECLINED, reason="Declined by owner")
            return True

        with self._owner_lock(owner_id):
            live = self._live_regular_row(owner_id)
            if live.special_offer_status != SpecialOfferStatus.OFFERED:
                raise OfferNotAvailableError("No pending special offer to decline", owner_id=owner_id)
            updated = self._write(live, "special_offer_declined", mark_declined)

        if updated.special_offer_status != SpecialOfferStatus.DECLINED:
            raise OfferNotAvailableError(
                f"Special offer is {updated.special_offer_status.value} for this subscription",
                owner_id=owner_id,
            )
        logger.info("special_offer_declined", owner_id=owner_id, subscription_id=updated.id)
        return updated

    def grant_offer_subscription(
        self,
        owner_id: str,
        price_id: str,
        amount: float,
        currency: str,
        interval: str = "month",
        interval_count: int = 1,
    ) -> Subscription:
        """Grant a special-offer pseudo-subscription (administrative path).

        The row has a synthetic ``so_local_`` external id and is never sent
        to the gateway. It counts as the owner's one lifetime offer.

        Raises:
            OfferAlreadyUsedError: The owner used the offer on any row, ever
            SubscriptionAlreadyExistsError: Another row already grants access
        """
        self._ensure_offer_unused(owner_id)
        now = self.clock.now_millis()
        for row in self.store.get_by_owner(owner_id):
            if row.grants_access(now):
                raise SubscriptionAlreadyExistsError(
                    "Owner already has a subscription granting access", owner_id=owner_id
                )

        customer_id = self.payment_methods.ensure_customer(owner_id)
        end = add_billing_interval(now, interval, interval_count)
        row = Subscription(
            id=generate_subscription_id(),
            owner_id=owner_id,
            external_subscription_id=generate_special_offer_subscription_id(),
            external_customer_id=customer_id,
            status=SubscriptionStatus.ACTIVE,
            current_period_start_millis=now,
            current_period_end_millis=end,
            price_id=price_id,
            amount=amount,
            currency=currency.lower(),
            interval=interval,
            interval_count=interval_count,
            is_special_offer=True,
            special_offer_status=SpecialOfferStatus.APPLIED,
            special_offer_description=f"Special offer: {amount:.2f} {currency.upper()} per {interval}",
            special_offer_discount_start_millis=now,
            special_offer_discount_end_millis=end,
            special_offer_applied_at_millis=now,
            created_at_millis=now,
            updated_at_millis=now,
        )
        stored = self.store.insert(row)

        logger.info(
            "special_offer_subscription_granted",
            owner_id=owner_id,
            subscription_id=stored.id,
            external_subscription_id=stored.external_subscription_id,
            period_end_millis=end,
        )
        return stored

    def notify_expiring_offers(self, within_days: Optional[int] = None) -> List[Subscription]:
        """Send a reminder for every applied offer whose window ends soon.

        Args:
            within_days: Reminder horizon (defaults to the configured value)

        Returns:
            Rows a reminder was sent for
        """
        days = self.settings.reminder_days_before_end if within_days is None else within_days
        now = self.clock.now_millis()
        horizon = now + days * MILLIS_PER_DAY

        reminded = []
        for row in self.store.get_all():
            end = row.special_offer_discount_end_millis
            if row.special_offer_status != SpecialOfferStatus.APPLIED or end is None:
                continue
            if not now < end <= horizon:
                continue

            try:
                self._get_notifier().send(
                    NotificationTemplate.SPECIAL_OFFER_EXPIRING,
                    owner_id=row.owner_id,
                    subscription_id=row.id,
                    discount_end_millis=end,
                    days_left=math.ceil((end - now) / MILLIS_PER_DAY),
                    amount=row.amount,
                    currency=row.currency,
                )
                reminded.append(row)
            except Exception as e:
                logger.error(
                    "special_offer_reminder_failed",
                    subscription_id=row.id,
                    owner_id=row.owner_id,
                    error=str(e),
                    exc_info=True,
                )

        logger.info("special_offer_reminders_processed", reminders_sent=len(reminded), within_days=days)
        return reminded


_engine_instance: Optional[SpecialOfferEngine] = None


def get_special_offer_engine() -> SpecialOfferEngine:
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = SpecialOfferEngine()
    return _engine_instance


def reset_special_offer_engine() -> None:
    global _engine_instance
    _engine_instance = None
