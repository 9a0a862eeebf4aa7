"""Tests for the Stripe-backed PaymentGateway."""

import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
import stripe

from billing_engine.services.payment_gateway import GatewayError, PaymentGateway

WEBHOOK_SECRET = "whsec_test_secret"
STRIPE = "billing_engine.services.payment_gateway.stripe"


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def gateway():
    return PaymentGateway(api_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)


class TestCustomers:
    def test_create_customer_tags_owner(self, gateway):
        with patch(f"{STRIPE}.Customer.create", return_value={"id": "cus_1", "metadata": {"owner_id": "owner-1"}}) as create:
            customer = gateway.create_customer("owner-1", email="o@example.com")

        assert customer.id == "cus_1"
        assert customer.owner_id == "owner-1"
        assert create.call_args.kwargs["metadata"] == {"owner_id": "owner-1"}

    def test_find_customer_by_owner(self, gateway):
        with patch(f"{STRIPE}.Customer.search", return_value={"data": [{"id": "cus_9"}]}) as search:
            customer = gateway.find_customer_by_owner("owner-9")

        assert customer.id == "cus_9"
        assert search.call_args.kwargs["query"] == "metadata['owner_id']:'owner-9'"

    def test_find_customer_none(self, gateway):
        with patch(f"{STRIPE}.Customer.search", return_value={"data": []}):
            assert gateway.find_customer_by_owner("owner-9") is None

    def test_default_payment_method_read_from_invoice_settings(self, gateway):
        obj = {"id": "cus_1", "invoice_settings": {"default_payment_method": "pm_1"}}
        with patch(f"{STRIPE}.Customer.retrieve", return_value=obj):
            assert gateway.retrieve_customer("cus_1").default_payment_method_id == "pm_1"


class TestErrorTranslation:
    def test_missing_resource(self, gateway):
        error = stripe.InvalidRequestError("No such customer: 'cus_x'", "id", code="resource_missing", http_status=404)
        with patch(f"{STRIPE}.Customer.retrieve", side_effect=error):
            with pytest.raises(GatewayError) as exc_info:
                gateway.retrieve_customer("cus_x")

        assert exc_info.value.operation == "customer.retrieve"
        assert exc_info.value.is_missing_resource is True
        assert exc_info.value.http_status == 404
        assert exc_info.value.retryable is False
        assert isinstance(exc_info.value.__cause__, stripe.InvalidRequestError)

    def test_connection_errors_are_retryable(self, gateway):
        with patch(f"{STRIPE}.Price.list", side_effect=stripe.APIConnectionError("network down")):
            with pytest.raises(GatewayError) as exc_info:
                gateway.list_prices()

        assert exc_info.value.retryable is True


class TestSubscriptions:
    def test_create_subscription(self, gateway):
        obj = {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "current_period_start": 1_700_000_000,
            "current_period_end": 1_702_592_000,
            "metadata": {"owner_id": "owner-1"},
            "items": {"data": [{"price": {"id": "price_1"}}]},
            "latest_invoice": {"payment_intent": {"client_secret": "pi_secret"}},
        }
        with patch(f"{STRIPE}.Subscription.create", return_value=obj) as create:
            sub = gateway.create_subscription("cus_1", "price_1", "pm_1", "owner-1")

        assert sub.id == "sub_1"
        assert sub.current_period_end_millis == 1_702_592_000_000
        assert sub.price_id == "price_1"
        assert sub.client_secret == "pi_secret"
        kwargs = create.call_args.kwargs
        assert kwargs["items"] == [{"price": "price_1"}]
        assert kwargs["default_payment_method"] == "pm_1"
        assert kwargs["metadata"] == {"owner_id": "owner-1"}

    def test_pseudo_subscription_ids_never_reach_stripe(self, gateway):
        with patch(f"{STRIPE}.Subscription.modify") as modify:
            with pytest.raises(ValueError):
                gateway.set_cancel_at_period_end("so_local_abcdef0123456789_1700000000000")
        modify.assert_not_called()

    def test_apply_coupon_targets_next_invoice(self, gateway):
        obj = {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "current_period_start": 1,
            "current_period_end": 2,
            "discounts": [{"coupon": {"id": "SPECIAL50", "percent_off": 50, "valid": True}}],
        }
        with patch(f"{STRIPE}.Subscription.modify", return_value=obj) as modify:
            sub = gateway.apply_coupon("sub_1", "SPECIAL50")

        assert modify.call_args.kwargs["discounts"] == [{"coupon": "SPECIAL50"}]
        assert modify.call_args.kwargs["proration_behavior"] == "none"
        assert sub.coupon.id == "SPECIAL50"
        assert sub.coupon.percent_off == 50

    def test_resume_clears_pause(self, gateway):
        obj = {"id": "sub_1", "customer": "cus_1", "status": "active", "pause_collection": None}
        with patch(f"{STRIPE}.Subscription.modify", return_value=obj) as modify:
            sub = gateway.resume_collection("sub_1")

        assert modify.call_args.kwargs["pause_collection"] == ""
        assert sub.is_paused is False


class TestOpenCommitments:
    def _patch_lists(self, subscriptions=(), schedules=(), quotes=(), items=()):
        return (
            patch(f"{STRIPE}.Subscription.list", return_value={"data": list(subscriptions)}),
            patch(f"{STRIPE}.SubscriptionSchedule.list", return_value={"data": list(schedules)}),
            patch(f"{STRIPE}.Quote.list", return_value={"data": list(quotes)}),
            patch(f"{STRIPE}.InvoiceItem.list", return_value={"data": list(items)}),
        )

    def test_full_scan(self, gateway):
        subs, schedules, quotes, items = self._patch_lists(
            subscriptions=[
                {"id": "sub_1", "status": "active", "currency": "usd"},
                {"id": "sub_2", "status": "canceled", "currency": "eur"},
            ],
            schedules=[
                {"id": "sub_sched_1", "status": "not_started", "phases": [{"currency": "usd"}]},
                {"id": "sub_sched_2", "status": "released", "phases": [{"currency": "gbp"}]},
            ],
            quotes=[{"id": "qt_1", "currency": "usd"}],
            items=[{"id": "ii_1", "currency": "usd"}],
        )
        with subs, schedules, quotes, items:
            commitments = gateway.list_open_commitments("cus_1")

        assert [(c.resource, c.id) for c in commitments] == [
            ("subscription", "sub_1"),
            ("subscription_schedule", "sub_sched_1"),
            ("quote", "qt_1"),
            ("invoice_item", "ii_1"),
        ]

    def test_subscriptions_only_scope(self, gateway):
        subs, schedules, quotes, items = self._patch_lists(
            subscriptions=[{"id": "sub_1", "status": "active", "currency": "usd"}]
        )
        with subs, schedules as schedule_list, quotes as quote_list, items as item_list:
            commitments = gateway.list_open_commitments("cus_1", scope="subscriptions_only")

        assert [c.id for c in commitments] == ["sub_1"]
        schedule_list.assert_not_called()
        quote_list.assert_not_called()
        item_list.assert_not_called()


class TestWebhookSignature:
    def test_valid_signature(self, gateway):
        payload = json.dumps({"id": "evt_1", "type": "invoice.paid", "created": 1, "data": {"object": {}}})

        event = gateway.construct_event(payload.encode("utf-8"), sign(payload))

        assert event["id"] == "evt_1"

    def test_wrong_secret(self, gateway):
        payload = json.dumps({"id": "evt_1"})
        with pytest.raises(stripe.SignatureVerificationError):
            gateway.construct_event(payload.encode("utf-8"), sign(payload, secret="whsec_other"))

    def test_expired_timestamp(self, gateway):
        payload = json.dumps({"id": "evt_1"})
        with pytest.raises(stripe.SignatureVerificationError):
            gateway.construct_event(payload.encode("utf-8"), sign(payload, timestamp=int(time.time()) - 3600))

    def test_tampered_payload(self, gateway):
        payload = json.dumps({"id": "evt_1"})
        header = sign(payload)
        with pytest.raises(stripe.SignatureVerificationError):
            gateway.construct_event(json.dumps({"id": "evt_2"}).encode("utf-8"), header)

    def test_missing_secret(self):
        gateway = PaymentGateway(api_key="sk_test_123")
        with pytest.raises(ValueError):
            gateway.construct_event(b"{}", sign("{}"))
