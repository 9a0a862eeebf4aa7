"""Engine settings models.

Models from billing.yaml configuration.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class GatewayConfig(BaseModel):
    """Payment gateway (Stripe) connection settings.

    Secrets are never stored in the YAML file; only the names of the
    environment variables holding them.
    """

    api_key_env: str = Field(default="STRIPE_SECRET_KEY", description="Env var holding the secret API key")
    webhook_secret_env: str = Field(
        default="STRIPE_WEBHOOK_SECRET", description="Env var holding the webhook signing secret"
    )
    api_version: Optional[str] = Field(None, description="Pinned gateway API version")
    timeout_seconds: float = Field(default=30.0, description="HTTP timeout per gateway call")
    max_network_retries: int = Field(default=0, description="Automatic retries performed by the SDK")
    webhook_tolerance_seconds: int = Field(default=300, description="Allowed signature timestamp skew")

    class Config:
        json_schema_extra = {
            "example": {
                "api_key_env": "STRIPE_SECRET_KEY",
                "webhook_secret_env": "STRIPE_WEBHOOK_SECRET",
                "api_version": None,
                "timeout_seconds": 30.0,
                "max_network_retries": 0,
            }
        }


class SpecialOfferConfig(BaseModel):
    """One-time special offer settings."""

    enabled: bool = Field(default=True, description="Offer special discounts to customers about to cancel")
    coupon_id: str = Field(..., description="Gateway coupon granted by the offer")
    reminder_days_before_end: int = Field(
        default=3, description="Send the expiring reminder this many days before the discount ends"
    )
    management_contact: str = Field(
        default="support", description="Who owners contact to manage special-offer subscriptions"
    )

    @field_validator("reminder_days_before_end")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("reminder_days_before_end must be >= 0")
        return value


class CurrencyGuardConfig(BaseModel):
    """Currency consistency guard settings."""

    enabled: bool = Field(default=True)
    scope: Literal["full", "subscriptions_only"] = Field(
        default="full",
        description="'full' also checks schedules, open quotes and pending invoice items",
    )


class PubSubConfig(BaseModel):
    """Pub/Sub configuration for outbound notifications."""

    project_id: str = Field(..., description="GCP project ID")
    topic: str = Field(..., description="Pub/Sub topic name")
    default_subscription: Optional[str] = Field(None, description="Subscription created for the mailer")


class NotificationConfig(BaseModel):
    """Outbound notification settings."""

    enabled: bool = Field(default=True, description="Publish templated messages")
    publish_timeout_seconds: float = Field(default=5.0)
    pubsub: PubSubConfig


class BillingSettings(BaseModel):
    """Complete billing.yaml configuration."""

    default_currency: str = Field(default="usd", description="Lowercase ISO 4217 code")
    admin_api_enabled: bool = Field(default=False, description="Mount the administrative router")
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    special_offer: SpecialOfferConfig
    currency_guard: CurrencyGuardConfig = Field(default_factory=CurrencyGuardConfig)
    notifications: NotificationConfig

    @field_validator("default_currency")
    @classmethod
    def _lowercase_currency(cls, value: str) -> str:
        return value.lower()
