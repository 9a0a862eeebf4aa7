"""Typed projections of payment gateway resources.

Stripe returns ``StripeObject`` instances for synchronous calls and plain
dicts inside webhook envelopes. Both are mappings, so every projection is
built with ``from_gateway`` from anything supporting ``.get``.
"""

from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field


def _millis(seconds: Optional[int]) -> Optional[int]:
    return int(seconds) * 1000 if seconds is not None else None


def _first_item(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    items = obj.get("items") or {}
    data = items.get("data") or []
    return data[0] if data else {}


def _id_of(value: Any) -> Optional[str]:
    # Expandable fields arrive either as an id string or as the expanded object
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def minor_to_major(amount: Optional[int], currency: Optional[str] = None) -> Optional[float]:
    """Convert an amount in the currency's minor unit to major units."""
    if amount is None:
        return None
    if currency and currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return float(amount)
    return amount / 100


ZERO_DECIMAL_CURRENCIES = frozenset({"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"})


class GatewayCoupon(BaseModel):
    """Discount definition held by the gateway."""

    id: str
    name: Optional[str] = None
    percent_off: Optional[float] = None
    amount_off: Optional[int] = Field(None, description="Fixed discount in minor units")
    currency: Optional[str] = None
    duration: str = Field(default="once", description="once, repeating or forever")
    valid: bool = True

    @classmethod
    def from_gateway(cls, obj: Mapping[str, Any]) -> "GatewayCoupon":
        return cls(
            id=obj.get("id"),
            name=obj.get("name"),
            percent_off=obj.get("percent_off"),
            amount_off=obj.get("amount_off"),
            currency=obj.get("currency"),
            duration=obj.get("duration") or "once",
            valid=bool(obj.get("valid", True)),
        )

    @property
    def is_single_period(self) -> bool:
        """True when the discount covers exactly one invoice."""
        return self.duration == "once"

    @property
    def amount_off_major(self) -> Optional[float]:
        return minor_to_major(self.amount_off, self.currency)

    def describe(self) -> str:
        """Human-readable description of the discount."""
        if self.percent_off is not None:
            percent = int(self.percent_off) if float(self.percent_off).is_integer() else self.percent_off
            return f"{percent}% off your next billing period"
        if self.amount_off is not None:
            currency = (self.currency or "").upper()
            return f"{self.amount_off_major:.2f} {currency} off your next billing period".strip()
        return "Discount on your next billing period"


class GatewaySubscription(BaseModel):
    """Gateway subscription resource."""

    id: str
    customer_id: str
    status: str
    current_period_start_millis: int
    current_period_end_millis: int
    cancel_at_period_end: bool = False
    pause_collection_behavior: Optional[str] = Field(None, description="Set while collection is paused")
    price_id: Optional[str] = None
    default_payment_method_id: Optional[str] = None
    owner_id: Optional[str] = Field(None, description="metadata.owner_id")
    client_secret: Optional[str] = Field(None, description="Latest invoice payment intent secret")
    coupon: Optional[GatewayCoupon] = Field(None, description="Coupon attached to the subscription")

    @property
    def is_paused(self) -> bool:
        return self.pause_collection_behavior is not None or self.status == "paused"

    @classmethod
    def from_gateway(cls, obj: Mapping[str, Any]) -> "GatewaySubscription":
        item = _first_item(obj)
        # Newer API versions report period bounds on the subscription item
        start = obj.get("current_period_start") or item.get("current_period_start")
        end = obj.get("current_period_end") or item.get("current_period_end")
        price = item.get("price") or {}
        pause = obj.get("pause_collection") or None
        metadata = obj.get("metadata") or {}

        client_secret = None
        latest_invoice = obj.get("latest_invoice")
        if latest_invoice is not None and not isinstance(latest_invoice, str):
            payment_intent = latest_invoice.get("payment_intent")
            if payment_intent is not None and not isinstance(payment_intent, str):
                client_secret = payment_intent.get("client_secret")

        return cls(
            id=obj.get("id"),
            customer_id=_id_of(obj.get("customer")),
            status=obj.get("status"),
            current_period_start_millis=_millis(start) or 0,
            current_period_end_millis=_millis(end) or 0,
            cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
            pause_collection_behavior=pause.get("behavior") if pause else None,
            price_id=_id_of(price) if price else None,
            default_payment_method_id=_id_of(obj.get("default_payment_method")),
            owner_id=metadata.get("owner_id"),
            client_secret=client_secret,
            coupon=_extract_coupon(obj),
        )


def _extract_coupon(obj: Mapping[str, Any]) -> Optional[GatewayCoupon]:
    candidates = []
    discount = obj.get("discount")
    if discount and not isinstance(discount, str):
        candidates.append(discount)
    for entry in obj.get("discounts") or []:
        if entry and not isinstance(entry, str):
            candidates.append(entry)

    for entry in candidates:
        coupon = entry.get("coupon")
        if coupon is None:
            source = entry.get("source") or {}
            coupon = source.get("coupon")
        if coupon is not None and not isinstance(coupon, str):
            return GatewayCoupon.from_gateway(coupon)
    return None


class GatewayCustomer(BaseModel):
    """Gateway customer resource."""

    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    default_payment_method_id: Optional[str] = None
    owner_id: Optional[str] = None

    @classmethod
    def from_gateway(cls, obj: Mapping[str, Any]) -> "GatewayCustomer":
        invoice_settings = obj.get("invoice_settings") or {}
        metadata = obj.get("metadata") or {}
        return cls(
            id=obj.get("id"),
            email=obj.get("email"),
            name=obj.get("name"),
            default_payment_method_id=_id_of(invoice_settings.get("default_payment_method")),
            owner_id=metadata.get("owner_id"),
        )


class GatewayPaymentMethod(BaseModel):
    """Saved card instrument."""

    id: str
    customer_id: Optional[str] = None
    fingerprint: Optional[str] = None
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None

    @classmethod
    def from_gateway(cls, obj: Mapping[str, Any]) -> "GatewayPaymentMethod":
        card = obj.get("card") or {}
        return cls(
            id=obj.get("id"),
            customer_id=_id_of(obj.get("customer")),
            fingerprint=card.get("fingerprint"),
            brand=card.get("brand"),
            last4=card.get("last4"),
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
        )


class GatewayPrice(BaseModel):
    """Recurring price with its product, as listed in the plan catalog."""

    id: str
    product_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    unit_amount: int = Field(..., description="Amount in minor units")
    currency: str
    interval: str = "month"
    interval_count: int = 1
    features: list[str] = Field(default_factory=list)
    is_popular: bool = False

    @property
    def amount(self) -> float:
        return minor_to_major(self.unit_amount, self.currency)

    @classmethod
    def from_gateway(cls, obj: Mapping[str, Any]) -> "GatewayPrice":
        import json

        recurring = obj.get("recurring") or {}
        product = obj.get("product")
        product_obj = product if product is not None and not isinstance(product, str) else {}
        metadata = product_obj.get("metadata") or {}

        features: list[str] = []
        raw_features = metadata.get("features")
        if raw_features:
            try:
                features = list(json.loads(raw_features))
            except (TypeError, ValueError):
                features = [f.strip() for f in str(raw_features).split(",") if f.strip()]

        return cls(
            id=obj.get("id"),
            product_id=_id_of(product),
            name=product_obj.get("name"),
            description=product_obj.get("description"),
            unit_amount=obj.get("unit_amount") or 0,
            currency=(obj.get("currency") or "usd").lower(),
            interval=recurring.get("interval") or "month",
            interval_count=recurring.get("interval_count") or 1,
            features=features,
            is_popular=str(metadata.get("isPopular", metadata.get("is_popular", ""))).lower() == "true",
        )


class GatewayInvoice(BaseModel):
    """Invoice entry for payment history."""

    id: str
    number: Optional[str] = None
    status: Optional[str] = None
    subscription_id: Optional[str] = None
    amount_due: int = 0
    amount_paid: int = 0
    currency: str = "usd"
    created_millis: Optional[int] = None
    paid_at_millis: Optional[int] = None
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None

    @classmethod
    def from_gateway(cls, obj: Mapping[str, Any]) -> "GatewayInvoice":
        transitions = obj.get("status_transitions") or {}
        subscription = obj.get("subscription")
        if subscription is None:
            parent = obj.get("parent") or {}
            details = parent.get("subscription_details") or {}
            subscription = details.get("subscription")
        return cls(
            id=obj.get("id"),
            number=obj.get("number"),
            status=obj.get("status"),
            subscription_id=_id_of(subscription),
            amount_due=obj.get("amount_due") or 0,
            amount_paid=obj.get("amount_paid") or 0,
            currency=(obj.get("currency") or "usd").lower(),
            created_millis=_millis(obj.get("created")),
            paid_at_millis=_millis(transitions.get("paid_at")),
            hosted_invoice_url=obj.get("hosted_invoice_url"),
            invoice_pdf=obj.get("invoice_pdf"),
        )


class MonetaryCommitment(BaseModel):
    """An open commitment held by a customer at the gateway."""

    resource: str = Field(..., description="subscription, subscription_schedule, quote or invoice_item")
    id: str
    currency: str
