"""Reconciliation processor - folds gateway events into local subscription rows.

Events may arrive late, twice, or out of order. Each row remembers the
creation time of the newest event applied to it; older events are dropped.
Deletion is terminal: a deleted row ignores every later non-deletion event.
The billing period end never moves backwards except on deletion.
"""

from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from billing_engine.logging_config import bind_context, get_logger, unbind_context
from billing_engine.models.billing import ReconciliationResult
from billing_engine.models.events import NotificationTemplate, WebhookEvent, WebhookEventType
from billing_engine.models.gateway import GatewayInvoice, GatewayPrice, GatewaySubscription, _first_item
from billing_engine.models.subscription import (
    SpecialOfferStatus,
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
from billing_engine.utils.id_generator import generate_subscription_id, is_special_offer_subscription_id

logger = get_logger(__name__)

SUBSCRIPTION_EVENTS = frozenset(
    {
        WebhookEventType.SUBSCRIPTION_CREATED,
        WebhookEventType.SUBSCRIPTION_UPDATED,
        WebhookEventType.SUBSCRIPTION_DELETED,
        WebhookEventType.SUBSCRIPTION_PAUSED,
        WebhookEventType.SUBSCRIPTION_RESUMED,
    }
)


class ReconciliationProcessor:
    """Applies verified gateway events to the subscription store."""

    def __init__(
        self,
        subscription_store: Optional[SubscriptionStore] = None,
        notifier=None,
        clock: Optional[Clock] = None,
    ):
        self.store = subscription_store if subscription_store is not None else get_subscription_store()
        self.clock = clock if clock is not None else get_clock()
        self._notifier = notifier

        self._handlers: Dict[WebhookEventType, Callable] = {
            WebhookEventType.SUBSCRIPTION_CREATED: self._on_subscription_changed,
            WebhookEventType.SUBSCRIPTION_UPDATED: self._on_subscription_changed,
            WebhookEventType.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            WebhookEventType.SUBSCRIPTION_PAUSED: self._on_subscription_paused,
            WebhookEventType.SUBSCRIPTION_RESUMED: self._on_subscription_resumed,
            WebhookEventType.INVOICE_PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            WebhookEventType.INVOICE_PAYMENT_FAILED: self._on_payment_failed,
        }

    def _get_notifier(self):
        """lazy load notification dispatcher"""
        if self._notifier is None:
            from billing_engine.services.notification_dispatcher import get_notification_dispatcher

            self._notifier = get_notification_dispatcher()
        return self._notifier

    def _ignored(self, event: WebhookEvent, reason: str, external_id: Optional[str] = None) -> ReconciliationResult:
        logger.info("webhook_ignored", reason=reason, external_subscription_id=external_id)
        return ReconciliationResult(
            event_id=event.id,
            event_type=event.type,
            handled=False,
            external_subscription_id=external_id,
            reason=reason,
        )

    @staticmethod
    def _external_id(kind: WebhookEventType, obj: dict) -> Optional[str]:
        if kind in SUBSCRIPTION_EVENTS:
            return obj.get("id")
        return GatewayInvoice.from_gateway(obj).subscription_id

    def apply_event(self, event: WebhookEvent) -> ReconciliationResult:
        """Apply one gateway event.

        Unknown event kinds, events for subscriptions this engine does not
        track, and events older than the newest one already applied to the
        row are logged and acknowledged without changes.

        Returns:
            ReconciliationResult describing what happened
        """
        bind_context(event_id=event.id, event_type=event.type)
        try:
            return self._apply(event)
        finally:
            unbind_context("event_id", "event_type")

    def _apply(self, event: WebhookEvent) -> ReconciliationResult:
        kind = event.kind
        if kind is None:
            return self._ignored(event, "unsupported_event_type")

        obj = event.data.object
        try:
            external_id = self._external_id(kind, obj)
        except ValidationError:
            return self._ignored(event, "malformed_payload")
        if not external_id:
            return self._ignored(event, "no_subscription_reference")
        if is_special_offer_subscription_id(external_id):
            return self._ignored(event, "special_offer_subscription", external_id)

        existing = self.store.find_by_external_id(external_id)
        if existing is None:
            if kind == WebhookEventType.SUBSCRIPTION_CREATED:
                return self._insert_from_created(event, external_id)
            return self._ignored(event, "unknown_subscription", external_id)

        event_created = event.created_millis
        deletion = kind == WebhookEventType.SUBSCRIPTION_DELETED
        skip_reason = None if deletion else self._skip_reason(existing, event_created)
        if skip_reason is not None:
            logger.info(
                "webhook_stale",
                reason=skip_reason,
                external_subscription_id=external_id,
                event_created_millis=event_created,
                last_event_created_millis=existing.last_event_created_millis,
                deleted_at_millis=existing.deleted_at_millis,
            )
            return ReconciliationResult(
                event_id=event.id,
                event_type=event.type,
                handled=False,
                subscription_id=existing.id,
                external_subscription_id=external_id,
                status=existing.status.value,
                reason=skip_reason,
            )

        handler = self._handlers[kind]
        outcome = {"offer_expired": False}

        def mutate(row: Subscription) -> Optional[bool]:
            # Re-check under the store lock; a newer event may have landed meanwhile
            if not deletion:
                outcome["skipped"] = self._skip_reason(row, event_created)
                if outcome["skipped"] is not None:
                    return False
            try:
                handler(row, event, outcome)
            except ValidationError:
                outcome["malformed"] = True
                return False
            if event_created is not None:
                row.last_event_created_millis = max(row.last_event_created_millis or 0, event_created)
            return True

        updated = self.store.modify(external_id, mutate)
        if updated is None:
            return self._ignored(event, "unknown_subscription", external_id)
        if outcome.get("malformed"):
            return self._ignored(event, "malformed_payload", external_id)
        if outcome.get("skipped"):
            return self._ignored(event, outcome["skipped"], external_id)

        if outcome["offer_expired"]:
            self._notify_offer_expired(updated)

        logger.info(
            "webhook_applied",
            subscription_id=updated.id,
            external_subscription_id=external_id,
            status=updated.status.value,
            period_end_millis=updated.current_period_end_millis,
            offer_expired=outcome["offer_expired"],
        )
        return ReconciliationResult(
            event_id=event.id,
            event_type=event.type,
            handled=True,
            subscription_id=updated.id,
            external_subscription_id=external_id,
            status=updated.status.value,
            offer_expired=outcome["offer_expired"],
        )

    @staticmethod
    def _skip_reason(row: Subscription, event_created: Optional[int]) -> Optional[str]:
        """Why a non-deletion event must not touch ``row``, or None to apply it.

        Deletion is terminal: once a row has seen its deletion event, no other
        event changes it, whatever its creation time.
        """
        if row.deleted_at_millis is not None:
            return "subscription_deleted"
        if event_created is None or row.last_event_created_millis is None:
            return None
        if event_created < row.last_event_created_millis:
            return "stale_event"
        return None

    def _insert_from_created(self, event: WebhookEvent, external_id: str) -> ReconciliationResult:
        obj = event.data.object
        try:
            gateway_sub = GatewaySubscription.from_gateway(obj)
            price_obj = _first_item(obj).get("price")
            price = GatewayPrice.from_gateway(price_obj) if price_obj else None
        except ValidationError:
            return self._ignored(event, "malformed_payload", external_id)

        if not gateway_sub.owner_id:
            return self._ignored(event, "missing_owner_metadata", external_id)
        try:
            status = status_from_gateway(gateway_sub.status, paused=gateway_sub.is_paused)
        except ValueError:
            return self._ignored(event, "unknown_gateway_status", external_id)

        now = self.clock.now_millis()
        row = Subscription(
            id=generate_subscription_id(),
            owner_id=gateway_sub.owner_id,
            external_subscription_id=external_id,
            external_customer_id=gateway_sub.customer_id,
            status=status,
            current_period_start_millis=gateway_sub.current_period_start_millis,
            current_period_end_millis=gateway_sub.current_period_end_millis,
            cancel_at_period_end=gateway_sub.cancel_at_period_end,
            price_id=gateway_sub.price_id or (price.id if price else ""),
            amount=price.amount if price else 0.0,
            currency=price.currency if price else "usd",
            interval=price.interval if price else "month",
            interval_count=price.interval_count if price else 1,
            payment_method_id=gateway_sub.default_payment_method_id,
            last_event_created_millis=event.created_millis,
            created_at_millis=now,
            updated_at_millis=now,
        )
        try:
            stored = self.store.insert(row)
        except PersistenceError:
            # An engine write for the same subscription landed first
            return self._apply(event)

        logger.info(
            "subscription_row_created_from_webhook",
            subscription_id=stored.id,
            external_subscription_id=external_id,
            owner_id=stored.owner_id,
            status=stored.status.value,
        )
        return ReconciliationResult(
            event_id=event.id,
            event_type=event.type,
            handled=True,
            subscription_id=stored.id,
            external_subscription_id=external_id,
            status=stored.status.value,
        )

    # Handlers mutate the working copy handed out by SubscriptionStore.modify

    def _on_subscription_changed(self, row: Subscription, event: WebhookEvent, outcome: dict) -> None:
        gateway_sub = GatewaySubscription.from_gateway(event.data.object)
        reason = f"Webhook {event.type}"
        try:
            row.set_status(status_from_gateway(gateway_sub.status, paused=gateway_sub.is_paused), reason=reason)
        except ValueError:
            logger.warning(
                "unknown_gateway_status",
                external_subscription_id=row.external_subscription_id,
                gateway_status=gateway_sub.status,
            )
        row.set_cancel_at_period_end(gateway_sub.cancel_at_period_end, reason=reason)
        self._advance_period(row, gateway_sub, reason)
        if gateway_sub.default_payment_method_id:
            row.payment_method_id = gateway_sub.default_payment_method_id
        if event.kind == WebhookEventType.SUBSCRIPTION_CREATED and gateway_sub.price_id:
            row.price_id = gateway_sub.price_id

    def _on_subscription_deleted(self, row: Subscription, event: WebhookEvent, outcome: dict) -> None:
        reason = f"Webhook {event.type}"
        row.set_status(SubscriptionStatus.CANCELED, reason=reason)
        row.set_cancel_at_period_end(False, reason=reason)
        # Use the deletion instant so redelivery leaves the row unchanged
        ended_at = event.created_millis or self.clock.now_millis()
        if row.deleted_at_millis is None:
            row.deleted_at_millis = ended_at
        if row.current_period_end_millis > ended_at:
            row.set_period(row.current_period_start_millis, ended_at, reason=reason, allow_rewind=True)

    def _on_subscription_paused(self, row: Subscription, event: WebhookEvent, outcome: dict) -> None:
        row.set_status(SubscriptionStatus.PAUSED, reason=f"Webhook {event.type}")

    def _on_subscription_resumed(self, row: Subscription, event: WebhookEvent, outcome: dict) -> None:
        reason = f"Webhook {event.type}"
        row.set_status(SubscriptionStatus.ACTIVE, reason=reason)
        obj = event.data.object
        if obj.get("current_period_end") or obj.get("items"):
            self._advance_period(row, GatewaySubscription.from_gateway(obj), reason)

    def _on_payment_succeeded(self, row: Subscription, event: WebhookEvent, outcome: dict) -> None:
        invoice = GatewayInvoice.from_gateway(event.data.object)
        now = self.clock.now_millis()
        row.set_status(SubscriptionStatus.ACTIVE, reason=f"Invoice {invoice.id} paid")
        row.last_payment_at_millis = invoice.paid_at_millis or event.created_millis or now

        if row.special_offer_status == SpecialOfferStatus.APPLIED and row.offer_window_elapsed(now):
            row.set_special_offer_status(SpecialOfferStatus.EXPIRED, reason="Discount window ended")
            outcome["offer_expired"] = True

    def _on_payment_failed(self, row: Subscription, event: WebhookEvent, outcome: dict) -> None:
        invoice = GatewayInvoice.from_gateway(event.data.object)
        row.set_status(SubscriptionStatus.PAST_DUE, reason=f"Invoice {invoice.id} payment failed")

    @staticmethod
    def _advance_period(row: Subscription, gateway_sub: GatewaySubscription, reason: str) -> None:
        if not gateway_sub.current_period_end_millis:
            return
        changed = row.set_period(
            gateway_sub.current_period_start_millis,
            gateway_sub.current_period_end_millis,
            reason=reason,
        )
        if not changed and gateway_sub.current_period_end_millis < row.current_period_end_millis:
            logger.info(
                "period_end_regression_ignored",
                external_subscription_id=row.external_subscription_id,
                current_end_millis=row.current_period_end_millis,
                event_end_millis=gateway_sub.current_period_end_millis,
            )

    def _notify_offer_expired(self, row: Subscription) -> None:
        try:
            self._get_notifier().send(
                NotificationTemplate.SPECIAL_OFFER_EXPIRED,
                owner_id=row.owner_id,
                subscription_id=row.id,
                discount_end_millis=row.special_offer_discount_end_millis,
                amount=row.amount,
                currency=row.currency,
            )
        except Exception as e:
            logger.error(
                "notification_failed",
                template=NotificationTemplate.SPECIAL_OFFER_EXPIRED.value,
                subscription_id=row.id,
                owner_id=row.owner_id,
                error=str(e),
                exc_info=True,
            )

    def sweep_pseudo_offers(self) -> List[Subscription]:
        """Expire special-offer pseudo-subscriptions whose window has ended.

        Pseudo-subscriptions never receive gateway invoices, so nothing else
        moves them to ``expired``.

        Returns:
            Rows that were expired by this sweep
        """
        now = self.clock.now_millis()
        expired = []
        for row in self.store.get_special_offer_rows():
            if row.special_offer_status != SpecialOfferStatus.APPLIED or not row.offer_window_elapsed(now):
                continue

            def expire(current: Subscription) -> Optional[bool]:
                if current.special_offer_status != SpecialOfferStatus.APPLIED:
                    return False
                current.set_special_offer_status(SpecialOfferStatus.EXPIRED, reason="Discount window ended")
                return True

            updated = self.store.modify(row.external_subscription_id, expire)
            if updated is not None and updated.special_offer_status == SpecialOfferStatus.EXPIRED:
                self._notify_offer_expired(updated)
                expired.append(updated)

        logger.info("special_offer_sweep_completed", expired=len(expired))
        return expired


_processor_instance: Optional[ReconciliationProcessor] = None


def get_reconciliation_processor() -> ReconciliationProcessor:
    global _processor_instance
    if _processor_instance is None:
        _processor_instance = ReconciliationProcessor()
    return _processor_instance


def reset_reconciliation_processor() -> None:
    global _processor_instance
    _processor_instance = None
