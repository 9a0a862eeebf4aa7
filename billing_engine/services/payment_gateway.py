"""Payment gateway client - thin typed wrapper over the Stripe SDK.

Responsibilities:
- Configure the SDK from settings (key, API version, timeout, retries)
- Translate Stripe resources into gateway models
- Translate ``stripe.StripeError`` into ``GatewayError``
- Refuse synthetic special-offer ids, which have no gateway counterpart
"""

import json
import threading
from typing import Any, Callable, List, Optional

import stripe

from billing_engine.errors import BillingError
from billing_engine.logging_config import get_logger
from billing_engine.models.gateway import (
    GatewayCoupon,
    GatewayCustomer,
    GatewayInvoice,
    GatewayPaymentMethod,
    GatewayPrice,
    GatewaySubscription,
    MonetaryCommitment,
)
from billing_engine.utils.id_generator import is_special_offer_subscription_id

logger = get_logger(__name__)

# Gateway subscription statuses that no longer commit the customer to a currency
CLOSED_SUBSCRIPTION_STATUSES = frozenset({"canceled", "incomplete_expired"})
OPEN_SCHEDULE_STATUSES = frozenset({"not_started", "active"})


class GatewayError(BillingError):
    """An upstream gateway call failed.

    The gateway's detail is preserved so the caller can surface it or retry.
    """

    def __init__(
        self,
        message: str,
        operation: str,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        user_message: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.code = code
        self.http_status = http_status
        self.user_message = user_message
        self.retryable = retryable

    @property
    def is_missing_resource(self) -> bool:
        return self.code == "resource_missing"

    @classmethod
    def from_stripe(cls, operation: str, error: "stripe.StripeError") -> "GatewayError":
        http_status = getattr(error, "http_status", None)
        retryable = isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)) or (
            http_status is not None and http_status >= 500
        )
        return cls(
            message=str(getattr(error, "user_message", None) or error),
            operation=operation,
            code=getattr(error, "code", None),
            http_status=http_status,
            user_message=getattr(error, "user_message", None),
            retryable=retryable,
        )


class PaymentGateway:
    """Synchronous Stripe client used by every engine component."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout_seconds: float = 30.0,
        max_network_retries: int = 0,
        webhook_tolerance_seconds: int = 300,
    ):
        self._webhook_secret = webhook_secret
        self._webhook_tolerance_seconds = webhook_tolerance_seconds

        if api_key:
            stripe.api_key = api_key
        else:
            logger.warning("gateway_api_key_missing", message="Gateway calls will be rejected by Stripe")
        if api_version:
            stripe.api_version = api_version
        stripe.max_network_retries = max_network_retries
        stripe.default_http_client = stripe.new_default_http_client(timeout=timeout_seconds)

        logger.info(
            "payment_gateway_initialized",
            api_version=api_version,
            timeout_seconds=timeout_seconds,
            max_network_retries=max_network_retries,
        )

    def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as e:
            error = GatewayError.from_stripe(operation, e)
            logger.error(
                "gateway_call_failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                code=error.code,
                http_status=error.http_status,
                retryable=error.retryable,
            )
            raise error from e

    @staticmethod
    def _require_gateway_id(subscription_id: str) -> None:
        if is_special_offer_subscription_id(subscription_id):
            raise ValueError(f"Special-offer subscription {subscription_id} has no gateway counterpart")

    # Customers

    def create_customer(
        self, owner_id: str, email: Optional[str] = None, name: Optional[str] = None
    ) -> GatewayCustomer:
        customer = self._call(
            "customer.create",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata={"owner_id": owner_id},
        )
        logger.info("gateway_customer_created", customer_id=customer.get("id"))
        return GatewayCustomer.from_gateway(customer)

    def find_customer_by_owner(self, owner_id: str) -> Optional[GatewayCustomer]:
        """Search the gateway for a customer tagged with ``metadata.owner_id``."""
        result = self._call(
            "customer.search",
            stripe.Customer.search,
            query=f"metadata['owner_id']:'{owner_id}'",
            limit=1,
        )
        data = result.get("data") or []
        return GatewayCustomer.from_gateway(data[0]) if data else None

    def retrieve_customer(self, customer_id: str) -> GatewayCustomer:
        customer = self._call("customer.retrieve", stripe.Customer.retrieve, customer_id)
        return GatewayCustomer.from_gateway(customer)

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> GatewayCustomer:
        customer = self._call(
            "customer.modify",
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )
        return GatewayCustomer.from_gateway(customer)

    # Payment methods

    def retrieve_payment_method(self, payment_method_id: str) -> GatewayPaymentMethod:
        pm = self._call("payment_method.retrieve", stripe.PaymentMethod.retrieve, payment_method_id)
        return GatewayPaymentMethod.from_gateway(pm)

    def list_payment_methods(self, customer_id: str) -> List[GatewayPaymentMethod]:
        result = self._call(
            "payment_method.list",
            stripe.PaymentMethod.list,
            customer=customer_id,
            type="card",
            limit=100,
        )
        return [GatewayPaymentMethod.from_gateway(pm) for pm in result.get("data") or []]

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> GatewayPaymentMethod:
        pm = self._call(
            "payment_method.attach",
            stripe.PaymentMethod.attach,
            payment_method_id,
            customer=customer_id,
        )
        logger.info("gateway_payment_method_attached", customer_id=customer_id, payment_method_id=payment_method_id)
        return GatewayPaymentMethod.from_gateway(pm)

    def detach_payment_method(self, payment_method_id: str) -> GatewayPaymentMethod:
        pm = self._call("payment_method.detach", stripe.PaymentMethod.detach, payment_method_id)
        logger.info("gateway_payment_method_detached", payment_method_id=payment_method_id)
        return GatewayPaymentMethod.from_gateway(pm)

    def update_payment_method(
        self,
        payment_method_id: str,
        exp_month: Optional[int] = None,
        exp_year: Optional[int] = None,
        billing_details: Optional[dict] = None,
    ) -> GatewayPaymentMethod:
        params: dict = {}
        card = {k: v for k, v in (("exp_month", exp_month), ("exp_year", exp_year)) if v is not None}
        if card:
            params["card"] = card
        if billing_details:
            params["billing_details"] = billing_details
        pm = self._call("payment_method.modify", stripe.PaymentMethod.modify, payment_method_id, **params)
        return GatewayPaymentMethod.from_gateway(pm)

    # Catalog

    def retrieve_price(self, price_id: str) -> GatewayPrice:
        price = self._call("price.retrieve", stripe.Price.retrieve, price_id, expand=["product"])
        return GatewayPrice.from_gateway(price)

    def list_prices(self, currency: Optional[str] = None) -> List[GatewayPrice]:
        params: dict = {"active": True, "type": "recurring", "limit": 100, "expand": ["data.product"]}
        if currency:
            params["currency"] = currency.lower()
        result = self._call("price.list", stripe.Price.list, **params)
        return [GatewayPrice.from_gateway(price) for price in result.get("data") or []]

    def retrieve_coupon(self, coupon_id: str) -> GatewayCoupon:
        coupon = self._call("coupon.retrieve", stripe.Coupon.retrieve, coupon_id)
        return GatewayCoupon.from_gateway(coupon)

    # Subscriptions

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str,
        owner_id: str,
    ) -> GatewaySubscription:
        subscription = self._call(
            "subscription.create",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            default_payment_method=payment_method_id,
            payment_behavior="error_if_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            expand=["latest_invoice.payment_intent"],
            metadata={"owner_id": owner_id},
        )
        logger.info(
            "gateway_subscription_created",
            customer_id=customer_id,
            external_subscription_id=subscription.get("id"),
            status=subscription.get("status"),
        )
        return GatewaySubscription.from_gateway(subscription)

    def _modify_subscription(self, operation: str, subscription_id: str, **params: Any) -> GatewaySubscription:
        self._require_gateway_id(subscription_id)
        subscription = self._call(operation, stripe.Subscription.modify, subscription_id, **params)
        return GatewaySubscription.from_gateway(subscription)

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool = True) -> GatewaySubscription:
        return self._modify_subscription(
            "subscription.cancel_at_period_end", subscription_id, cancel_at_period_end=cancel
        )

    def cancel_subscription(self, subscription_id: str) -> GatewaySubscription:
        self._require_gateway_id(subscription_id)
        subscription = self._call("subscription.cancel", stripe.Subscription.cancel, subscription_id)
        return GatewaySubscription.from_gateway(subscription)

    def pause_collection(self, subscription_id: str) -> GatewaySubscription:
        return self._modify_subscription(
            "subscription.pause", subscription_id, pause_collection={"behavior": "void"}
        )

    def resume_collection(self, subscription_id: str) -> GatewaySubscription:
        # An empty string clears pause_collection
        return self._modify_subscription("subscription.resume", subscription_id, pause_collection="")

    def apply_coupon(self, subscription_id: str, coupon_id: str) -> GatewaySubscription:
        """Attach a coupon so it discounts the next invoice only."""
        return self._modify_subscription(
            "subscription.apply_coupon",
            subscription_id,
            discounts=[{"coupon": coupon_id}],
            proration_behavior="none",
            expand=["discounts"],
        )

    def set_subscription_payment_method(self, subscription_id: str, payment_method_id: str) -> GatewaySubscription:
        return self._modify_subscription(
            "subscription.payment_method", subscription_id, default_payment_method=payment_method_id
        )

    # Currency commitments

    def list_open_commitments(self, customer_id: str, scope: str = "full") -> List[MonetaryCommitment]:
        """Enumerate resources that already commit the customer to a currency.

        Args:
            customer_id: Gateway customer id
            scope: ``full`` or ``subscriptions_only``
        """
        commitments: List[MonetaryCommitment] = []

        subscriptions = self._call(
            "subscription.list", stripe.Subscription.list, customer=customer_id, status="all", limit=100
        )
        for sub in subscriptions.get("data") or []:
            if sub.get("status") in CLOSED_SUBSCRIPTION_STATUSES or not sub.get("currency"):
                continue
            commitments.append(MonetaryCommitment(resource="subscription", id=sub["id"], currency=sub["currency"]))

        if scope == "subscriptions_only":
            return commitments

        schedules = self._call(
            "subscription_schedule.list", stripe.SubscriptionSchedule.list, customer=customer_id, limit=100
        )
        for schedule in schedules.get("data") or []:
            if schedule.get("status") not in OPEN_SCHEDULE_STATUSES:
                continue
            for phase in schedule.get("phases") or []:
                if phase.get("currency"):
                    commitments.append(
                        MonetaryCommitment(
                            resource="subscription_schedule", id=schedule["id"], currency=phase["currency"]
                        )
                    )

        quotes = self._call("quote.list", stripe.Quote.list, customer=customer_id, status="open", limit=100)
        for quote in quotes.get("data") or []:
            if quote.get("currency"):
                commitments.append(MonetaryCommitment(resource="quote", id=quote["id"], currency=quote["currency"]))

        items = self._call(
            "invoice_item.list", stripe.InvoiceItem.list, customer=customer_id, pending=True, limit=100
        )
        for item in items.get("data") or []:
            if item.get("currency"):
                commitments.append(
                    MonetaryCommitment(resource="invoice_item", id=item["id"], currency=item["currency"])
                )

        return commitments

    # Invoices

    def list_invoices(self, customer_id: str, limit: int = 10) -> List[GatewayInvoice]:
        result = self._call("invoice.list", stripe.Invoice.list, customer=customer_id, limit=limit)
        return [GatewayInvoice.from_gateway(invoice) for invoice in result.get("data") or []]

    # Webhooks

    def construct_event(self, payload: bytes, signature_header: str) -> dict:
        """Verify a webhook signature and parse the envelope.

        Raises:
            stripe.SignatureVerificationError: If the signature does not match
            ValueError: If the payload is not valid JSON or no secret is configured
        """
        if not self._webhook_secret:
            raise ValueError("Webhook signing secret is not configured")
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            payload, signature_header, self._webhook_secret, tolerance=self._webhook_tolerance_seconds
        )
        return json.loads(payload)


_gateway_instance: Optional[PaymentGateway] = None
_gateway_lock = threading.Lock()


def get_payment_gateway() -> PaymentGateway:
    """Get or create the singleton PaymentGateway from configuration."""
    global _gateway_instance
    if _gateway_instance is None:
        with _gateway_lock:
            if _gateway_instance is None:
                from billing_engine.config import get_config

                config = get_config()
                _gateway_instance = PaymentGateway(
                    api_key=config.stripe_secret_key,
                    webhook_secret=config.stripe_webhook_secret,
                    api_version=config.gateway.api_version,
                    timeout_seconds=config.gateway.timeout_seconds,
                    max_network_retries=config.gateway.max_network_retries,
                    webhook_tolerance_seconds=config.gateway.webhook_tolerance_seconds,
                )
    return _gateway_instance


def reset_payment_gateway() -> None:
    """Reset the singleton PaymentGateway (for testing)."""
    global _gateway_instance
    with _gateway_lock:
        _gateway_instance = None
