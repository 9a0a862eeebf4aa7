"""Integration tests for complete subscription lifecycle scenarios.

Owner actions go through the engines and gateway events through the
reconciliation processor, all sharing one store and one frozen clock.
"""

import pytest

from conftest import T0, invoice_object, make_event, subscription_object
from billing_engine.errors import OfferAlreadyUsedError, SubscriptionAlreadyExistsError
from billing_engine.models.events import NotificationTemplate
from billing_engine.models.subscription import SpecialOfferStatus, SubscriptionStatus

DAY = 86_400_000
OWNER = "owner-1"


def period_rolled(processor, row, start, end, created, event_id):
    """Deliver the renewal pair the gateway sends at a period boundary."""
    processor.apply_event(
        make_event(
            "customer.subscription.updated",
            subscription_object(row.external_subscription_id, period_start_millis=start, period_end_millis=end),
            created_millis=created,
            event_id=f"{event_id}_sub",
        )
    )
    return processor.apply_event(
        make_event(
            "invoice.paid",
            invoice_object(row.external_subscription_id, invoice_id=f"in_{event_id}", paid_at_millis=created),
            created_millis=created,
            event_id=f"{event_id}_inv",
        )
    )


def templates_sent(notifier):
    return [c.args[0] for c in notifier.send.call_args_list]


class TestRegularSubscriptionWithOffer:
    def test_offer_runs_one_period_then_expires(
        self, engine, special_offers, processor, reporting, store, clock, notifier
    ):
        row = engine.create_subscription(OWNER, "pm_visa", "price_monthly_usd").subscription
        assert reporting.check_access(OWNER).granted is True

        quote = special_offers.check_eligibility(OWNER)
        assert quote.discount_start_millis == T0 + 30 * DAY
        assert quote.discount_end_millis == T0 + 60 * DAY
        special_offers.apply(OWNER)

        # First renewal lands inside the discounted period
        clock.set_time(T0 + 30 * DAY)
        result = period_rolled(processor, row, T0 + 30 * DAY, T0 + 60 * DAY, T0 + 30 * DAY, "evt_m1")
        assert result.offer_expired is False
        assert store.get(row.id).special_offer_status == SpecialOfferStatus.APPLIED

        # The next paid invoice closes the window
        clock.set_time(T0 + 60 * DAY)
        result = period_rolled(processor, row, T0 + 60 * DAY, T0 + 90 * DAY, T0 + 60 * DAY, "evt_m2")
        assert result.offer_expired is True

        current = store.get(row.id)
        assert current.special_offer_status == SpecialOfferStatus.EXPIRED
        assert current.current_period_end_millis == T0 + 90 * DAY
        assert current.has_used_offer is True
        assert NotificationTemplate.SPECIAL_OFFER_EXPIRED in templates_sent(notifier)

        with pytest.raises(OfferAlreadyUsedError):
            special_offers.check_eligibility(OWNER)

    def test_cancel_delete_and_resubscribe(self, engine, special_offers, processor, reporting, clock):
        row = engine.create_subscription(OWNER, "pm_visa", "price_monthly_usd").subscription
        special_offers.check_eligibility(OWNER)
        special_offers.apply(OWNER)

        engine.cancel_at_period_end(OWNER)
        access = reporting.check_access(OWNER)
        assert access.granted is True
        assert access.cancel_at_period_end is True

        clock.set_time(T0 + 30 * DAY)
        processor.apply_event(
            make_event(
                "customer.subscription.deleted",
                subscription_object(row.external_subscription_id, status="canceled"),
                created_millis=T0 + 30 * DAY,
                event_id="evt_del",
            )
        )

        access = reporting.check_access(OWNER)
        assert access.granted is False
        assert access.status == "canceled"
        assert access.message == "Subscription has ended"

        renewed = engine.create_subscription(OWNER, "pm_visa_again", "price_monthly_usd")
        assert renewed.is_new_card is False
        assert renewed.subscription.payment_method_id == "pm_visa"
        assert reporting.check_access(OWNER).granted is True

        # The offer is once per owner, not once per subscription
        with pytest.raises(OfferAlreadyUsedError):
            special_offers.check_eligibility(OWNER)


class TestPaymentFailureRecovery:
    def test_past_due_then_paid(self, engine, processor, reporting, clock):
        row = engine.create_subscription(OWNER, "pm_visa", "price_monthly_usd").subscription

        clock.set_time(T0 + 30 * DAY)
        processor.apply_event(
            make_event(
                "invoice.payment_failed",
                invoice_object(row.external_subscription_id, invoice_id="in_fail"),
                created_millis=T0 + 30 * DAY,
                event_id="evt_fail",
            )
        )

        access = reporting.check_access(OWNER)
        assert access.granted is False
        assert access.message == "Last payment failed, please update your payment method"

        engine.change_payment_method(OWNER, "pm_mastercard")
        clock.advance_time(hours=1)
        result = period_rolled(processor, row, T0 + 30 * DAY, T0 + 60 * DAY, clock.now_millis(), "evt_retry")

        assert result.status == SubscriptionStatus.ACTIVE.value
        access = reporting.check_access(OWNER)
        assert access.granted is True
        assert access.current_period_end_millis == T0 + 60 * DAY


class TestSpecialOfferSubscription:
    def test_grant_expire_and_renew(self, engine, special_offers, processor, reporting, store, clock, notifier):
        granted = special_offers.grant_offer_subscription(
            owner_id="owner-9", price_id="price_monthly_usd", amount=24.5, currency="usd"
        )
        access = reporting.check_access("owner-9")
        assert access.granted is True
        assert access.subscription_type == "special_offer"

        with pytest.raises(SubscriptionAlreadyExistsError):
            engine.create_subscription("owner-9", "pm_visa", "price_monthly_usd")

        clock.set_time(T0 + 28 * DAY)
        assert [r.id for r in special_offers.notify_expiring_offers()] == [granted.id]

        clock.set_time(T0 + 30 * DAY)
        assert [r.id for r in processor.sweep_pseudo_offers()] == [granted.id]
        assert reporting.check_access("owner-9").granted is False
        assert templates_sent(notifier) == [
            NotificationTemplate.SPECIAL_OFFER_EXPIRING,
            NotificationTemplate.SPECIAL_OFFER_EXPIRED,
        ]

        renewed = engine.renew_after_special_offer("owner-9", "pm_visa").subscription

        assert renewed.original_subscription_id == granted.id
        assert renewed.is_special_offer is False
        assert renewed.amount == 49.0
        assert store.get(granted.id).special_offer_status == SpecialOfferStatus.EXPIRED
        assert reporting.check_access("owner-9").subscription_type == "regular"

        with pytest.raises(OfferAlreadyUsedError):
            special_offers.check_eligibility("owner-9")
