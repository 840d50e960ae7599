from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


def _reference_id(value: Any) -> Optional[str]:
    # Stripe sends either an id string or an expanded object for references.
    if isinstance(value, dict):
        value = value.get("id")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class UserRecord(BaseModel):
    user_id: str
    email: Optional[str] = None
    is_pro: Optional[bool] = None
    generation_count: Optional[int] = Field(default=None, ge=0)
    stripe_customer_id: Optional[str] = None
    is_deleted: bool = False
    created_at: datetime
    updated_at: datetime


class UsageSummary(BaseModel):
    user_id: str
    is_pro: bool
    generation_count: int
    generation_limit: int
    remaining: Optional[int] = None


class BillingUpdate(BaseModel):
    is_pro: bool
    stripe_customer_id: Optional[str] = None
    reset_generation_count: bool = False


class CaseStudyCreate(BaseModel):
    client_type: str = Field(..., min_length=1, max_length=200)
    challenge: str = Field(..., min_length=1, max_length=2000)
    solution: str = Field(..., min_length=1, max_length=2000)
    result: str = Field(..., min_length=1, max_length=2000)
    tone: str = Field(..., min_length=1, max_length=100)
    industry: str = Field(..., min_length=1, max_length=200)
    client_quote: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("client_quote")
    @classmethod
    def _blank_quote_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class CaseStudyRecord(BaseModel):
    id: str
    user_id: str
    client_type: str
    challenge: str
    solution: str
    result: str
    tone: str
    industry: str
    client_quote: Optional[str] = None
    ai_output: str
    social_media_text: str = ""
    created_at: datetime


class CaseStudyResponse(BaseModel):
    case_study: str
    social_media_text: str
    saved: bool = False
    id: Optional[str] = None


class AuditLogRecord(BaseModel):
    user_id: str
    event_id: str
    action: str
    actor_id: Optional[str] = None
    target_type: str
    target_id: str
    request_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class BillingProviderStatus(BaseModel):
    user_id: str
    is_pro: bool
    stripe_mode: str
    webhook_signature_verification_enabled: bool
    stripe_secret_key_configured: bool
    stripe_webhook_secret_configured: bool
    stripe_customer_id: Optional[str] = None


class StripeWebhookResponse(BaseModel):
    received: bool = True
    event_type: Optional[str] = None
    action: str
    user_id: Optional[str] = None


class BillingEventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAID = "invoice.paid"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_FAILED = "invoice.payment_failed"


class _StripePayload(BaseModel):
    model_config = {"extra": "ignore"}

    id: Optional[str] = None
    customer: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("customer", mode="before")
    @classmethod
    def _customer_reference(cls, value: Any) -> Optional[str]:
        return _reference_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_or_empty(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}


class CustomerDetails(BaseModel):
    model_config = {"extra": "ignore"}

    email: Optional[str] = None


class CheckoutSessionPayload(_StripePayload):
    client_reference_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_details: Optional[CustomerDetails] = None
    subscription: Optional[str] = None

    @field_validator("subscription", mode="before")
    @classmethod
    def _subscription_reference(cls, value: Any) -> Optional[str]:
        return _reference_id(value)

    @property
    def email(self) -> Optional[str]:
        if self.customer_details and self.customer_details.email:
            return self.customer_details.email
        return self.customer_email


class InvoicePayload(_StripePayload):
    customer_email: Optional[str] = None
    subscription: Optional[str] = None
    parent: Optional[Dict[str, Any]] = None

    @field_validator("subscription", mode="before")
    @classmethod
    def _subscription_reference(cls, value: Any) -> Optional[str]:
        return _reference_id(value)

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        # Newer API versions nest the subscription under parent.subscription_details.
        details = (self.parent or {}).get("subscription_details") or {}
        return _reference_id(details.get("subscription"))

    @property
    def subscription_metadata(self) -> Dict[str, Any]:
        details = (self.parent or {}).get("subscription_details") or {}
        metadata = details.get("metadata")
        return metadata if isinstance(metadata, dict) else {}


class SubscriptionPayload(_StripePayload):
    status: Optional[str] = None


class UnhandledPayload(_StripePayload):
    pass


BillingPayload = Union[CheckoutSessionPayload, InvoicePayload, SubscriptionPayload, UnhandledPayload]


class BillingEvent(BaseModel):
    id: Optional[str] = None
    type: str = Field(..., min_length=1)
    created: Optional[int] = None
    livemode: bool = False
    payload: BillingPayload

    @property
    def known_type(self) -> Optional[BillingEventType]:
        try:
            return BillingEventType(self.type)
        except ValueError:
            return None


class StripeCustomer(BaseModel):
    id: str
    email: Optional[str] = None
    deleted: bool = False


class StripeSubscription(BaseModel):
    id: str
    status: Optional[str] = None
    customer: Optional[str] = None


class ReconcileOutcome(BaseModel):
    event_type: str
    action: str
    user_id: Optional[str] = None
    is_pro: Optional[bool] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class CaseStudyList(BaseModel):
    items: List[CaseStudyRecord] = Field(default_factory=list)
