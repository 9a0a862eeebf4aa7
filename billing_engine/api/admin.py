"""Administrative API for operators and test orchestration.

Implements:
- POST /admin/time/advance - Fast-forward virtual time
- POST /admin/time/set - Jump virtual time to a timestamp
- POST /admin/time/reset - Return to real time
- POST /admin/special-offers - Grant a special-offer subscription
- POST /admin/special-offers/sweep - Expire elapsed special-offer subscriptions
- POST /admin/special-offers/reminders - Send expiring-offer reminders
- GET /admin/status - Owner counts by subscription status
- GET /admin/owners/{owner_id}/subscriptions - An owner's rows
- POST /admin/reset - Clear all local state

Mounted only when ``admin_api_enabled`` is set in the configuration.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from billing_engine.logging_config import get_logger
from billing_engine.models.api_request import AdvanceTimeRequest, GrantOfferRequest, SetTimeRequest
from billing_engine.models.api_response import (
    BatchResponse,
    ResetResponse,
    SubscriptionListResponse,
    TimeResponse,
)
from billing_engine.models.billing import StatusCounts
from billing_engine.models.subscription import Subscription
from billing_engine.repositories.subscription_store import SubscriptionStore, get_subscription_store
from billing_engine.services.clock import Clock, get_clock
from billing_engine.services.reconciliation import ReconciliationProcessor, get_reconciliation_processor
from billing_engine.services.reporting import ReportingService, get_reporting_service
from billing_engine.services.special_offer import SpecialOfferEngine, get_special_offer_engine

logger = get_logger(__name__)
router = APIRouter(tags=["Admin API"], prefix="/admin")


@router.post("/time/advance", response_model=TimeResponse, summary="Advance virtual time")
def advance_time(request: AdvanceTimeRequest, clock: Clock = Depends(get_clock)) -> TimeResponse:
    """Move the virtual clock forward.

    Only the clock moves; gateway events for the skipped period still have
    to be delivered through the webhook endpoint.
    """
    days = request.days or 0
    hours = request.hours or 0
    minutes = request.minutes or 0
    if days == 0 and hours == 0 and minutes == 0:
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid request", "message": "At least one of days, hours or minutes is required"},
        )
    try:
        result = clock.advance_time(days=days, hours=hours, minutes=minutes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"error": "Invalid request", "message": str(e)})

    parts = [f"{value} {unit}" for value, unit in ((days, "days"), (hours, "hours"), (minutes, "minutes")) if value]
    return TimeResponse(
        previous_time_millis=result["old_time_millis"],
        current_time_millis=result["new_time_millis"],
        offset_millis=clock.offset_millis,
        message=f"Advanced time by {', '.join(parts)}",
    )


@router.post("/time/set", response_model=TimeResponse, summary="Set virtual time")
def set_time(request: SetTimeRequest, clock: Clock = Depends(get_clock)) -> TimeResponse:
    try:
        result = clock.set_time(request.timestamp_millis)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"error": "Invalid request", "message": str(e)})
    return TimeResponse(
        previous_time_millis=result["old_time_millis"],
        current_time_millis=result["new_time_millis"],
        offset_millis=clock.offset_millis,
        message="Virtual time set",
    )


@router.post("/time/reset", response_model=TimeResponse, summary="Reset virtual time")
def reset_time(clock: Clock = Depends(get_clock)) -> TimeResponse:
    result = clock.reset()
    return TimeResponse(
        previous_time_millis=result["old_time_millis"],
        current_time_millis=result["new_time_millis"],
        offset_millis=0,
        message="Virtual time reset to real time",
    )


@router.post(
    "/special-offers",
    response_model=Subscription,
    status_code=201,
    summary="Grant special-offer subscription",
)
def grant_special_offer(
    request: GrantOfferRequest,
    offers: SpecialOfferEngine = Depends(get_special_offer_engine),
) -> Subscription:
    """Grant a special-offer pseudo-subscription outside the gateway.

    Raises:
        409: The owner already used the offer or already has access
    """
    logger.info("grant_special_offer_request", owner_id=request.owner_id, price_id=request.price_id)
    return offers.grant_offer_subscription(
        owner_id=request.owner_id,
        price_id=request.price_id,
        amount=request.amount,
        currency=request.currency,
        interval=request.interval,
        interval_count=request.interval_count,
    )


@router.post("/special-offers/sweep", response_model=BatchResponse, summary="Expire elapsed offers")
def sweep_special_offers(
    processor: ReconciliationProcessor = Depends(get_reconciliation_processor),
) -> BatchResponse:
    expired = processor.sweep_pseudo_offers()
    return BatchResponse(
        processed=len(expired),
        subscription_ids=[row.id for row in expired],
        message=f"Expired {len(expired)} special offer subscription(s)",
    )


@router.post("/special-offers/reminders", response_model=BatchResponse, summary="Send expiring-offer reminders")
def send_offer_reminders(
    within_days: Optional[int] = Query(None, ge=0, description="Reminder horizon, defaults to the configured value"),
    offers: SpecialOfferEngine = Depends(get_special_offer_engine),
) -> BatchResponse:
    reminded = offers.notify_expiring_offers(within_days=within_days)
    return BatchResponse(
        processed=len(reminded),
        subscription_ids=[row.id for row in reminded],
        message=f"Sent {len(reminded)} reminder(s)",
    )


@router.get("/status", response_model=StatusCounts, summary="Owner counts by status")
def get_status_counts(reporting: ReportingService = Depends(get_reporting_service)) -> StatusCounts:
    return reporting.get_status_counts()


@router.get(
    "/owners/{owner_id}/subscriptions",
    response_model=SubscriptionListResponse,
    summary="An owner's subscription rows",
)
def list_owner_subscriptions(
    owner_id: str,
    store: SubscriptionStore = Depends(get_subscription_store),
) -> SubscriptionListResponse:
    return SubscriptionListResponse(owner_id=owner_id, subscriptions=store.get_by_owner(owner_id))


@router.post("/reset", response_model=ResetResponse, summary="Clear all local state")
def reset_state(
    store: SubscriptionStore = Depends(get_subscription_store),
    clock: Clock = Depends(get_clock),
) -> ResetResponse:
    """Drop every local subscription row and return to real time.

    Gateway-side resources are left untouched.
    """
    cleared = store.count()
    store.clear()
    clock.reset()
    logger.warning("local_state_reset", subscriptions_cleared=cleared)
    return ResetResponse(subscriptions_cleared=cleared, message=f"Cleared {cleared} subscription(s)")
