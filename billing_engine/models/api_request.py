"""API request models for the subscription, webhook and admin endpoints."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class CreateSubscriptionRequest(BaseModel):
    """Request to subscribe the calling owner to a plan."""

    price_id: str = Field(..., description="Gateway price id (e.g. price_monthly_usd)")
    payment_method_id: str = Field(..., description="Card id collected on the client")
    email: Optional[str] = Field(None, description="Customer email, used when a gateway customer is created")
    name: Optional[str] = Field(None, description="Customer name, used when a gateway customer is created")

    class Config:
        json_schema_extra = {
            "example": {
                "price_id": "price_monthly_usd",
                "payment_method_id": "pm_card_visa",
                "email": "owner@example.com",
                "name": "Example Ltd",
            }
        }


class CancelSubscriptionRequest(BaseModel):
    """Request to cancel the owner's current subscription."""

    mode: Literal["at_period_end", "immediately"] = Field(
        default="at_period_end",
        description="Keep access until the period ends, or end it now",
    )


class PaymentMethodRequest(BaseModel):
    """Request naming a card, for renewals and card changes."""

    payment_method_id: str = Field(..., description="Card id collected on the client")


class UpdateCardRequest(BaseModel):
    """Request to update a saved card's expiry and billing details."""

    exp_month: Optional[int] = Field(None, ge=1, le=12)
    exp_year: Optional[int] = Field(None, ge=2000)
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "exp_month": 12,
                "exp_year": 2030,
                "name": "Jane Doe",
            }
        }


class AdvanceTimeRequest(BaseModel):
    """Request to advance virtual time."""

    days: Optional[int] = Field(None, description="Days to advance")
    hours: Optional[int] = Field(None, description="Hours to advance")
    minutes: Optional[int] = Field(None, description="Minutes to advance")

    class Config:
        json_schema_extra = {
            "example": {
                "days": 30,
                "hours": 0,
                "minutes": 0,
            }
        }


class SetTimeRequest(BaseModel):
    """Request to jump virtual time to a timestamp."""

    timestamp_millis: int = Field(..., description="Target virtual time (Unix millis)")


class GrantOfferRequest(BaseModel):
    """Administrative grant of a special-offer pseudo-subscription."""

    owner_id: str = Field(..., description="Owner receiving the offer")
    price_id: str = Field(..., description="Gateway price the offer stands in for")
    amount: float = Field(..., ge=0, description="Offer price per cycle in major units")
    currency: str = Field(..., min_length=3, max_length=3)
    interval: Literal["day", "week", "month", "year"] = "month"
    interval_count: int = Field(default=1, ge=1)

    @field_validator("currency")
    @classmethod
    def lowercase_currency(cls, value: str) -> str:
        return value.lower()

    class Config:
        json_schema_extra = {
            "example": {
                "owner_id": "owner-123",
                "price_id": "price_monthly_usd",
                "amount": 24.5,
                "currency": "usd",
                "interval": "month",
                "interval_count": 1,
            }
        }
