"""Owner-facing billing API.

Implements:
- POST /billing/subscriptions - Subscribe to a plan
- GET /billing/subscriptions - Subscription history
- GET /billing/subscriptions/latest - Most recent subscription
- POST /billing/subscriptions/cancel - Cancel at period end or immediately
- POST /billing/subscriptions/pause - Pause collection
- POST /billing/subscriptions/resume - Resume collection
- POST /billing/subscriptions/renew - Renew after a special offer
- PUT /billing/subscriptions/payment-method - Change the charged card
- GET /billing/access - Dashboard access decision
- GET/DELETE/PATCH /billing/cards - Saved card management
- GET /billing/special-offer - Check eligibility and present the offer
- POST /billing/special-offer/apply|decline - Answer the offer
- GET /billing/invoices - Payment history
- GET /billing/plans - Plan catalog

The calling owner is identified by the ``X-Owner-Id`` header, which the
upstream authentication layer sets.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from billing_engine.logging_config import bind_context, get_logger
from billing_engine.models.api_request import (
    CancelSubscriptionRequest,
    CreateSubscriptionRequest,
    PaymentMethodRequest,
    UpdateCardRequest,
)
from billing_engine.models.api_response import (
    CardListResponse,
    InvoiceListResponse,
    PlanListResponse,
    SubscriptionListResponse,
)
from billing_engine.models.billing import (
    AccessDecision,
    CardDetailsUpdate,
    CreateSubscriptionResult,
    SavedCard,
    SpecialOfferQuote,
)
from billing_engine.models.subscription import Subscription
from billing_engine.services.payment_methods import PaymentMethodRegistry, get_payment_method_registry
from billing_engine.services.reporting import ReportingService, get_reporting_service
from billing_engine.services.special_offer import SpecialOfferEngine, get_special_offer_engine
from billing_engine.services.subscription_engine import SubscriptionEngine, get_subscription_engine

logger = get_logger(__name__)
router = APIRouter(tags=["Billing"], prefix="/billing")


def get_owner_id(x_owner_id: str = Header(..., description="Authenticated owner/business id")) -> str:
    owner_id = x_owner_id.strip()
    if not owner_id:
        raise HTTPException(
            status_code=400,
            detail={"error": "missing_owner", "message": "X-Owner-Id header must not be empty"},
        )
    bind_context(owner_id=owner_id)
    return owner_id


# Subscriptions


@router.post(
    "/subscriptions",
    response_model=CreateSubscriptionResult,
    status_code=201,
    summary="Subscribe to a plan",
)
def create_subscription(
    request: CreateSubscriptionRequest,
    owner_id: str = Depends(get_owner_id),
    engine: SubscriptionEngine = Depends(get_subscription_engine),
) -> CreateSubscriptionResult:
    """Create a subscription for the calling owner.

    Raises:
        409: The owner already has a subscription granting access
        422: The plan's currency conflicts with an open commitment
        404: The card does not exist or belongs to someone else
        502: The payment gateway rejected the request
    """
    logger.info("create_subscription_request", price_id=request.price_id)
    result = engine.create_subscription(
        owner_id=owner_id,
        payment_method_id=request.payment_method_id,
        price_id=request.price_id,
        email=request.email,
        name=request.name,
    )
    logger.info(
        "create_subscription_success",
        subscription_id=result.subscription.id,
        is_new_card=result.is_new_card,
    )
    return result


@router.get("/subscriptions", response_model=SubscriptionListResponse, summary="Subscription history")
def list_subscriptions(
    owner_id: str = Depends(get_owner_id),
    engine: SubscriptionEngine = Depends(get_subscription_engine),
) -> SubscriptionListResponse:
    return SubscriptionListResponse(owner_id=owner_id, subscriptions=engine.get_owner_subscriptions(owner_id))


@router.get("/subscriptions/latest", response_model=Subscription, summary="Most recent subscription")
def get_latest_subscription(
    owner_id: str = Depends(get_owner_id),
    reporting: ReportingService = Depends(get_reporting_service),
) -> Subscription:
    latest = reporting.get_latest_subscription(owner_id)
    if latest is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "subscription_not_found", "message": "Owner has no subscriptions"},
        )
    return latest


@router.post("/subscriptions/cancel", response_model=Subscription, summary="Cancel subscription")
def cancel_subscription(
    request: CancelSubscriptionRequest,
    owner_id: str = Depends(get_owner_id),
    engine: SubscriptionEngine = Depends(get_subscription_engine),
) -> Subscription:
    """Cancel the owner's subscription.

    ``at_period_end`` keeps access until the current period ends;
    ``immediately`` ends it now.
    """
    logger.info("cancel_subscription_request", mode=request.mode)
    if request.mode == "immediately":
        return engine.cancel_immediately(owner_id)
    return engine.cancel_at_period_end(owner_id)


@router.post("/subscriptions/pause", response_model=Subscription, summary="Pause subscription")
def pause_subscription(
    owner_id: str = Depends(get_owner_id),
    engine: SubscriptionEngine = Depends(get_subscription_engine),
) -> Subscription:
    return engine.pause_subscription(owner_id)


@router.post("/subscriptions/resume", response_model=Subscription, summary="Resume subscription")
def resume_subscription(
    owner_id: str = Depends(get_owner_id),
    engine: SubscriptionEngine = Depends(get_subscription_engine),
) -> Subscription:
    return engine.resume_subscription(owner_id)


@router.post(
    "/subscriptions/renew",
    response_model=CreateSubscriptionResult,
    status_code=201,
    summary="Renew after a special offer",
)
def renew_subscription(
    request: PaymentMethodRequest,
    owner_id: str = Depends(get_owner_id),
    engine: SubscriptionEngine = Depends(get_subscription_engine),
) -> CreateSubscriptionResult:
    """Replace a special-offer subscription with a regular one at the original price."""
    return engine.renew_after_special_offer(owner_id, request.payment_method_id)


@router.put("/subscriptions/payment-method", response_model=Subscription, summary="Change card")
def change_payment_method(
    request: PaymentMethodRequest,
    owner_id: str = Depends(get_owner_id),
    engine: SubscriptionEngine = Depends(get_subscription_engine),
) -> Subscription:
    return engine.change_payment_method(owner_id, request.payment_method_id)


@router.get("/access", response_model=AccessDecision, summary="Dashboard access check")
def check_access(
    owner_id: str = Depends(get_owner_id),
    reporting: ReportingService = Depends(get_reporting_service),
) -> AccessDecision:
    return reporting.check_access(owner_id)


# Saved cards


@router.get("/cards", response_model=CardListResponse, summary="List saved cards")
def list_cards(
    owner_id: str = Depends(get_owner_id),
    registry: PaymentMethodRegistry = Depends(get_payment_method_registry),
) -> CardListResponse:
    return CardListResponse(owner_id=owner_id, cards=registry.list_saved_cards(owner_id))


@router.delete("/cards/{payment_method_id}", status_code=204, summary="Remove saved card")
def remove_card(
    payment_method_id: str,
    owner_id: str = Depends(get_owner_id),
    registry: PaymentMethodRegistry = Depends(get_payment_method_registry),
) -> None:
    registry.remove_card(owner_id, payment_method_id)


@router.post("/cards/{payment_method_id}/default", response_model=CardListResponse, summary="Set default card")
def set_default_card(
    payment_method_id: str,
    owner_id: str = Depends(get_owner_id),
    registry: PaymentMethodRegistry = Depends(get_payment_method_registry),
) -> CardListResponse:
    registry.set_default_card(owner_id, payment_method_id)
    return CardListResponse(owner_id=owner_id, cards=registry.list_saved_cards(owner_id))


@router.patch("/cards/{payment_method_id}", response_model=SavedCard, summary="Update card details")
def update_card(
    payment_method_id: str,
    request: UpdateCardRequest,
    owner_id: str = Depends(get_owner_id),
    registry: PaymentMethodRegistry = Depends(get_payment_method_registry),
) -> SavedCard:
    update = CardDetailsUpdate(**request.model_dump())
    return registry.update_card_details(owner_id, payment_method_id, update)


# Special offer


@router.get("/special-offer", response_model=SpecialOfferQuote, summary="Check special offer")
def check_special_offer(
    owner_id: str = Depends(get_owner_id),
    offers: SpecialOfferEngine = Depends(get_special_offer_engine),
) -> SpecialOfferQuote:
    """Check eligibility for the one-time special offer and present its terms.

    Raises:
        404: No active regular subscription
        409: The offer was already used
        422: The offer is not available in the subscription's current state
    """
    return offers.check_eligibility(owner_id)


@router.post("/special-offer/apply", response_model=Subscription, summary="Accept special offer")
def apply_special_offer(
    owner_id: str = Depends(get_owner_id),
    offers: SpecialOfferEngine = Depends(get_special_offer_engine),
) -> Subscription:
    return offers.apply(owner_id)


@router.post("/special-offer/decline", response_model=Subscription, summary="Decline special offer")
def decline_special_offer(
    owner_id: str = Depends(get_owner_id),
    offers: SpecialOfferEngine = Depends(get_special_offer_engine),
) -> Subscription:
    return offers.decline(owner_id)


# Read-only gateway listings


@router.get("/invoices", response_model=InvoiceListResponse, summary="Payment history")
def list_invoices(
    limit: int = Query(10, ge=1, le=100),
    owner_id: str = Depends(get_owner_id),
    reporting: ReportingService = Depends(get_reporting_service),
) -> InvoiceListResponse:
    return InvoiceListResponse(owner_id=owner_id, invoices=reporting.get_payment_history(owner_id, limit=limit))


@router.get("/plans", response_model=PlanListResponse, summary="Plan catalog")
def list_plans(
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    reporting: ReportingService = Depends(get_reporting_service),
) -> PlanListResponse:
    return PlanListResponse(currency=currency, plans=reporting.list_plans(currency=currency))
