"""Request schemas for the subscription and webhook APIs.

Field names follow the JSON wire format (camelCase aliases). Sanitizing
validators run after the length constraints, so an over-long value is
reported rather than silently truncated.
"""

import re
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_core import PydanticCustomError

from matchguard.app.middleware.validation.sanitizer import InputSanitizer

PlanId = Literal["INTENTION", "PATIENCE", "RELIANCE"]

SUBSCRIPTION_ID_PATTERN = re.compile(r"^sub_[a-zA-Z0-9_]+$")
FEATURE_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def _clean_url(value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    try:
        return InputSanitizer.sanitize_url(value)
    except ValueError as e:
        raise PydanticCustomError("invalid_url", str(e)) from e


def _check_subscription_id(value: str) -> str:
    if not SUBSCRIPTION_ID_PATTERN.match(value):
        raise PydanticCustomError(
            "invalid_format", "Invalid Stripe subscription ID format"
        )
    return value


class CheckoutRequest(WireModel):
    plan_id: PlanId = Field(..., alias="planId")
    success_url: Optional[str] = Field(None, alias="successUrl")
    cancel_url: Optional[str] = Field(None, alias="cancelUrl")
    metadata: Optional[dict[str, str]] = None

    @field_validator("plan_id")
    @classmethod
    def reject_free_plan(cls, v: str) -> str:
        if v == "INTENTION":
            raise PydanticCustomError(
                "free_plan", "Free plan does not require checkout"
            )
        return v

    @field_validator("success_url", "cancel_url")
    @classmethod
    def sanitize_urls(cls, v: Optional[str]) -> Optional[str]:
        return _clean_url(v)


class PortalRequest(WireModel):
    return_url: Optional[str] = Field(None, alias="returnUrl")

    @field_validator("return_url")
    @classmethod
    def sanitize_return_url(cls, v: Optional[str]) -> Optional[str]:
        return _clean_url(v)


class CancelRequest(WireModel):
    subscription_id: str = Field(
        ..., alias="subscriptionId", min_length=1, max_length=100
    )
    reason: Optional[str] = Field(None, max_length=500)
    feedback: Optional[str] = Field(None, max_length=2000)

    @field_validator("subscription_id")
    @classmethod
    def validate_subscription_id(cls, v: str) -> str:
        return _check_subscription_id(v)

    @field_validator("reason")
    @classmethod
    def sanitize_reason(cls, v: Optional[str]) -> Optional[str]:
        return InputSanitizer.sanitize_string(v, 500) if v else v

    @field_validator("feedback")
    @classmethod
    def sanitize_feedback(cls, v: Optional[str]) -> Optional[str]:
        return InputSanitizer.sanitize_string(v, 2000) if v else v


class ReactivateRequest(WireModel):
    subscription_id: str = Field(
        ..., alias="subscriptionId", min_length=1, max_length=100
    )

    @field_validator("subscription_id")
    @classmethod
    def validate_subscription_id(cls, v: str) -> str:
        return _check_subscription_id(v)


class UsageRequest(WireModel):
    feature: str = Field(..., min_length=1, max_length=100)
    increment: int = Field(..., ge=1, le=1000, strict=True)

    @field_validator("feature")
    @classmethod
    def validate_feature(cls, v: str) -> str:
        if not FEATURE_PATTERN.match(v):
            raise PydanticCustomError("invalid_format", "Invalid feature name format")
        return v


class WebhookEventData(WireModel):
    object: dict[str, Any]


class WebhookEvent(WireModel):
    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    data: WebhookEventData
    created: int


class SubscriptionStatusQuery(WireModel):
    include_features: bool = Field(False, alias="includeFeatures")
