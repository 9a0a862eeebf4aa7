"""Shared fixtures: frozen clock, in-memory gateway, wired engine components."""

import itertools
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from billing_engine.models.events import WebhookEvent
from billing_engine.models.gateway import (
    GatewayCoupon,
    GatewayCustomer,
    GatewayInvoice,
    GatewayPaymentMethod,
    GatewayPrice,
    GatewaySubscription,
    MonetaryCommitment,
)
from billing_engine.models.settings import SpecialOfferConfig
from billing_engine.models.subscription import Subscription, SubscriptionStatus
from billing_engine.repositories.subscription_store import SubscriptionStore
from billing_engine.services.clock import Clock
from billing_engine.services.payment_gateway import GatewayError
from billing_engine.services.payment_methods import CurrencyGuard, PaymentMethodRegistry
from billing_engine.services.reconciliation import ReconciliationProcessor
from billing_engine.services.reporting import ReportingService
from billing_engine.services.special_offer import SpecialOfferEngine
from billing_engine.services.subscription_engine import SubscriptionEngine
from billing_engine.utils.billing_period import add_billing_interval
from billing_engine.utils.id_generator import generate_subscription_id

T0 = 1_700_000_000_000


class FakePaymentGateway:
    """In-memory stand-in for PaymentGateway with the same public methods.

    Every call is recorded in ``calls``. ``fail_on[operation] = error``
    makes the named operation raise once.
    """

    def __init__(self, clock: Clock):
        self.clock = clock
        self._ids = itertools.count(1)
        self.customers: Dict[str, GatewayCustomer] = {}
        self.payment_methods: Dict[str, GatewayPaymentMethod] = {}
        self.prices: Dict[str, GatewayPrice] = {}
        self.coupons: Dict[str, GatewayCoupon] = {}
        self.subscriptions: Dict[str, GatewaySubscription] = {}
        self.subscription_currency: Dict[str, str] = {}
        self.extra_commitments: Dict[str, List[MonetaryCommitment]] = {}
        self.invoices: Dict[str, List[GatewayInvoice]] = {}
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, Exception] = {}

    # Test helpers

    def _record(self, operation: str, *args) -> None:
        self.calls.append((operation,) + args)
        error = self.fail_on.pop(operation, None)
        if error is not None:
            raise error

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def operations(self) -> List[str]:
        return [call[0] for call in self.calls]

    def add_card(self, pm_id: str, fingerprint: str, brand: str = "visa", last4: str = "4242") -> GatewayPaymentMethod:
        card = GatewayPaymentMethod(
            id=pm_id, fingerprint=fingerprint, brand=brand, last4=last4, exp_month=12, exp_year=2030
        )
        self.payment_methods[pm_id] = card
        return card

    def add_price(self, price_id: str, unit_amount: int, currency: str, interval: str = "month") -> GatewayPrice:
        price = GatewayPrice(
            id=price_id,
            product_id=f"prod_{price_id}",
            name=price_id.replace("_", " ").title(),
            unit_amount=unit_amount,
            currency=currency,
            interval=interval,
        )
        self.prices[price_id] = price
        return price

    @staticmethod
    def missing(operation: str, resource_id: str) -> GatewayError:
        return GatewayError(
            f"No such resource: '{resource_id}'",
            operation=operation,
            code="resource_missing",
            http_status=404,
        )

    # Customers

    def create_customer(self, owner_id: str, email: Optional[str] = None, name: Optional[str] = None) -> GatewayCustomer:
        self._record("customer.create", owner_id)
        customer = GatewayCustomer(id=self._next_id("cus"), email=email, name=name, owner_id=owner_id)
        self.customers[customer.id] = customer
        return customer

    def find_customer_by_owner(self, owner_id: str) -> Optional[GatewayCustomer]:
        self._record("customer.search", owner_id)
        return next((c for c in self.customers.values() if c.owner_id == owner_id), None)

    def retrieve_customer(self, customer_id: str) -> GatewayCustomer:
        self._record("customer.retrieve", customer_id)
        if customer_id not in self.customers:
            raise self.missing("customer.retrieve", customer_id)
        return self.customers[customer_id]

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> GatewayCustomer:
        self._record("customer.modify", customer_id, payment_method_id)
        customer = self.customers[customer_id].model_copy(update={"default_payment_method_id": payment_method_id})
        self.customers[customer_id] = customer
        return customer

    # Payment methods

    def retrieve_payment_method(self, payment_method_id: str) -> GatewayPaymentMethod:
        self._record("payment_method.retrieve", payment_method_id)
        if payment_method_id not in self.payment_methods:
            raise self.missing("payment_method.retrieve", payment_method_id)
        return self.payment_methods[payment_method_id]

    def list_payment_methods(self, customer_id: str) -> List[GatewayPaymentMethod]:
        self._record("payment_method.list", customer_id)
        return [pm for pm in self.payment_methods.values() if pm.customer_id == customer_id]

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> GatewayPaymentMethod:
        self._record("payment_method.attach", payment_method_id, customer_id)
        pm = self.payment_methods[payment_method_id].model_copy(update={"customer_id": customer_id})
        self.payment_methods[payment_method_id] = pm
        return pm

    def detach_payment_method(self, payment_method_id: str) -> GatewayPaymentMethod:
        self._record("payment_method.detach", payment_method_id)
        pm = self.payment_methods[payment_method_id].model_copy(update={"customer_id": None})
        self.payment_methods[payment_method_id] = pm
        return pm

    def update_payment_method(
        self,
        payment_method_id: str,
        exp_month: Optional[int] = None,
        exp_year: Optional[int] = None,
        billing_details: Optional[dict] = None,
    ) -> GatewayPaymentMethod:
        self._record("payment_method.modify", payment_method_id)
        update = {k: v for k, v in (("exp_month", exp_month), ("exp_year", exp_year)) if v is not None}
        pm = self.payment_methods[payment_method_id].model_copy(update=update)
        self.payment_methods[payment_method_id] = pm
        return pm

    # Catalog

    def retrieve_price(self, price_id: str) -> GatewayPrice:
        self._record("price.retrieve", price_id)
        if price_id not in self.prices:
            raise self.missing("price.retrieve", price_id)
        return self.prices[price_id]

    def list_prices(self, currency: Optional[str] = None) -> List[GatewayPrice]:
        self._record("price.list", currency)
        return [p for p in self.prices.values() if currency is None or p.currency == currency.lower()]

    def retrieve_coupon(self, coupon_id: str) -> GatewayCoupon:
        self._record("coupon.retrieve", coupon_id)
        if coupon_id not in self.coupons:
            raise self.missing("coupon.retrieve", coupon_id)
        return self.coupons[coupon_id]

    # Subscriptions

    def create_subscription(
        self, customer_id: str, price_id: str, payment_method_id: str, owner_id: str
    ) -> GatewaySubscription:
        self._record("subscription.create", customer_id, price_id, payment_method_id)
        price = self.prices[price_id]
        now = self.clock.now_millis()
        subscription = GatewaySubscription(
            id=self._next_id("sub"),
            customer_id=customer_id,
            status="active",
            current_period_start_millis=now,
            current_period_end_millis=add_billing_interval(now, price.interval, price.interval_count),
            price_id=price_id,
            default_payment_method_id=payment_method_id,
            owner_id=owner_id,
            client_secret="pi_secret_test",
        )
        self.subscriptions[subscription.id] = subscription
        self.subscription_currency[subscription.id] = price.currency
        return subscription

    def _update_subscription(self, subscription_id: str, **update) -> GatewaySubscription:
        subscription = self.subscriptions[subscription_id].model_copy(update=update)
        self.subscriptions[subscription_id] = subscription
        return subscription

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool = True) -> GatewaySubscription:
        self._record("subscription.cancel_at_period_end", subscription_id, cancel)
        return self._update_subscription(subscription_id, cancel_at_period_end=cancel)

    def cancel_subscription(self, subscription_id: str) -> GatewaySubscription:
        self._record("subscription.cancel", subscription_id)
        return self._update_subscription(subscription_id, status="canceled")

    def pause_collection(self, subscription_id: str) -> GatewaySubscription:
        self._record("subscription.pause", subscription_id)
        return self._update_subscription(subscription_id, pause_collection_behavior="void")

    def resume_collection(self, subscription_id: str) -> GatewaySubscription:
        self._record("subscription.resume", subscription_id)
        return self._update_subscription(subscription_id, pause_collection_behavior=None)

    def apply_coupon(self, subscription_id: str, coupon_id: str) -> GatewaySubscription:
        self._record("subscription.apply_coupon", subscription_id, coupon_id)
        return self._update_subscription(subscription_id, coupon=self.coupons[coupon_id])

    def set_subscription_payment_method(self, subscription_id: str, payment_method_id: str) -> GatewaySubscription:
        self._record("subscription.payment_method", subscription_id, payment_method_id)
        return self._update_subscription(subscription_id, default_payment_method_id=payment_method_id)

    def list_open_commitments(self, customer_id: str, scope: str = "full") -> List[MonetaryCommitment]:
        self._record("commitments.list", customer_id, scope)
        commitments = [
            MonetaryCommitment(resource="subscription", id=sub.id, currency=self.subscription_currency[sub.id])
            for sub in self.subscriptions.values()
            if sub.customer_id == customer_id and sub.status not in ("canceled", "incomplete_expired")
        ]
        for extra in self.extra_commitments.get(customer_id, []):
            if scope == "full" or extra.resource == "subscription":
                commitments.append(extra)
        return commitments

    def list_invoices(self, customer_id: str, limit: int = 10) -> List[GatewayInvoice]:
        self._record("invoice.list", customer_id, limit)
        return self.invoices.get(customer_id, [])[:limit]


@pytest.fixture
def clock():
    """Clock frozen at T0; moves only when advanced."""
    return Clock(frozen_at_millis=T0)


@pytest.fixture
def store(clock):
    return SubscriptionStore(clock=clock)


@pytest.fixture
def gateway(clock):
    fake = FakePaymentGateway(clock)
    fake.add_price("price_monthly_usd", 4900, "usd")
    fake.add_price("price_monthly_eur", 4500, "eur")
    fake.add_price("price_yearly_usd", 49000, "usd", interval="year")
    fake.coupons["SPECIAL50"] = GatewayCoupon(id="SPECIAL50", name="Stay with us", percent_off=50, duration="once")
    fake.add_card("pm_visa", fingerprint="fp_visa")
    fake.add_card("pm_visa_again", fingerprint="fp_visa")
    fake.add_card("pm_mastercard", fingerprint="fp_mc", brand="mastercard", last4="4444")
    # Rows built with make_subscription point at this customer
    fake.create_customer("owner-1")
    fake.calls.clear()
    return fake


@pytest.fixture
def notifier():
    notifier = MagicMock()
    notifier.send.return_value = True
    return notifier


@pytest.fixture
def registry(gateway, store):
    return PaymentMethodRegistry(gateway=gateway, store=store)


@pytest.fixture
def currency_guard(gateway):
    return CurrencyGuard(gateway, scope="full")


@pytest.fixture
def engine(store, gateway, registry, currency_guard, notifier, clock):
    return SubscriptionEngine(
        subscription_store=store,
        gateway=gateway,
        payment_methods=registry,
        currency_guard=currency_guard,
        notifier=notifier,
        clock=clock,
        management_contact="support@example.com",
    )


@pytest.fixture
def offer_settings():
    return SpecialOfferConfig(coupon_id="SPECIAL50", reminder_days_before_end=3, management_contact="support@example.com")


@pytest.fixture
def special_offers(store, gateway, registry, offer_settings, notifier, clock):
    return SpecialOfferEngine(
        subscription_store=store,
        gateway=gateway,
        payment_methods=registry,
        settings=offer_settings,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def processor(store, notifier, clock):
    return ReconciliationProcessor(subscription_store=store, notifier=notifier, clock=clock)


@pytest.fixture
def reporting(store, gateway, registry, clock):
    return ReportingService(subscription_store=store, gateway=gateway, payment_methods=registry, clock=clock)


def make_event(event_type: str, obj: dict, created_millis: Optional[int] = None, event_id: str = "evt_1") -> WebhookEvent:
    """Build a webhook envelope; ``created`` is expressed in gateway seconds."""
    created = created_millis // 1000 if created_millis is not None else None
    return WebhookEvent(id=event_id, type=event_type, created=created, data={"object": obj})


def subscription_object(
    external_id: str,
    status: str = "active",
    period_start_millis: int = T0,
    period_end_millis: int = T0 + 30 * 86_400_000,
    cancel_at_period_end: bool = False,
    customer: str = "cus_1",
    **extra,
) -> dict:
    """Gateway subscription resource as it appears inside a webhook."""
    obj = {
        "id": external_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": period_start_millis // 1000,
        "current_period_end": period_end_millis // 1000,
        "cancel_at_period_end": cancel_at_period_end,
        "pause_collection": None,
        "metadata": {},
    }
    obj.update(extra)
    return obj


def invoice_object(external_subscription_id: str, invoice_id: str = "in_1", paid_at_millis: Optional[int] = None) -> dict:
    obj = {
        "id": invoice_id,
        "object": "invoice",
        "subscription": external_subscription_id,
        "status": "paid",
        "amount_paid": 4900,
        "currency": "usd",
    }
    if paid_at_millis is not None:
        obj["status_transitions"] = {"paid_at": paid_at_millis // 1000}
    return obj


def make_subscription(
    owner_id: str = "owner-1",
    external_id: str = "sub_ext_1",
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    period_start_millis: int = T0,
    period_end_millis: int = T0 + 30 * 86_400_000,
    created_at_millis: int = T0,
    **overrides,
) -> Subscription:
    """Local row with sensible defaults for a monthly USD plan."""
    fields = dict(
        id=generate_subscription_id(),
        owner_id=owner_id,
        external_subscription_id=external_id,
        external_customer_id="cus_1",
        status=status,
        current_period_start_millis=period_start_millis,
        current_period_end_millis=period_end_millis,
        price_id="price_monthly_usd",
        amount=49.0,
        currency="usd",
        interval="month",
        interval_count=1,
        created_at_millis=created_at_millis,
        updated_at_millis=created_at_millis,
    )
    fields.update(overrides)
    return Subscription(**fields)
