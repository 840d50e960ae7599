import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

import stripe

from instant_case_study.schemas import (
    BillingEvent,
    BillingEventType,
    BillingUpdate,
    CheckoutSessionPayload,
    InvoicePayload,
    ReconcileOutcome,
    StripeCustomer,
    StripeSubscription,
    SubscriptionPayload,
    UnhandledPayload,
    UserRecord,
)
from instant_case_study.user_store import UserNotFoundError, UserStore, UserStoreError

logger = logging.getLogger("instant_case_study.billing")

ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})
USER_ID_METADATA_KEYS = ("user_id", "userId")

ACTION_PRO_ENABLED = "pro_enabled"
ACTION_PRO_DISABLED = "pro_disabled"
ACTION_UNRESOLVED = "unresolved"
ACTION_IGNORED = "ignored"
ACTION_OBSERVED = "observed"
ACTION_SUBSCRIPTION_INACTIVE = "subscription_inactive"
APPLIED_ACTIONS = frozenset({ACTION_PRO_ENABLED, ACTION_PRO_DISABLED})


def _json_log(fields: Dict[str, Any]) -> str:
    return json.dumps(fields, separators=(",", ":"), default=str)


def _optional_text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class WebhookVerificationError(ValueError):
    pass


class BillingProviderError(Exception):
    pass


class BillingStateWriteError(Exception):
    pass


class StripeClient(ABC):
    @abstractmethod
    def parse_webhook_event(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def retrieve_customer(self, customer_id: str) -> Optional[StripeCustomer]:
        raise NotImplementedError

    @abstractmethod
    def retrieve_subscription(self, subscription_id: str) -> Optional[StripeSubscription]:
        raise NotImplementedError


def _decode_event_body(payload: bytes) -> Dict[str, Any]:
    try:
        body = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError("Webhook payload is not valid JSON") from exc
    if not isinstance(body, dict):
        raise ValueError("Webhook payload must be a JSON object")
    return body


class DisabledStripeClient(StripeClient):
    def parse_webhook_event(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        del signature_header
        return _decode_event_body(payload)

    def retrieve_customer(self, customer_id: str) -> Optional[StripeCustomer]:
        del customer_id
        raise BillingProviderError("STRIPE_SECRET_KEY is required to retrieve customers")

    def retrieve_subscription(self, subscription_id: str) -> Optional[StripeSubscription]:
        del subscription_id
        raise BillingProviderError("STRIPE_SECRET_KEY is required to retrieve subscriptions")


def _is_missing_resource(exc: "stripe.InvalidRequestError") -> bool:
    return getattr(exc, "code", None) == "resource_missing"


class StripeSdkClient(StripeClient):
    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str]):
        self._api_key = api_key.strip() if api_key else ""
        self._webhook_secret = webhook_secret.strip() if webhook_secret else ""

    def parse_webhook_event(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        if self._webhook_secret:
            if not signature_header:
                raise WebhookVerificationError("Missing Stripe-Signature header")
            try:
                stripe.WebhookSignature.verify_header(
                    payload.decode("utf-8"),
                    signature_header,
                    self._webhook_secret,
                    tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
                )
            except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
                raise WebhookVerificationError("Invalid Stripe signature") from exc
        return _decode_event_body(payload)

    def _require_api_key(self):
        if not self._api_key:
            raise BillingProviderError("STRIPE_SECRET_KEY is required to call the Stripe API")

    def retrieve_customer(self, customer_id: str) -> Optional[StripeCustomer]:
        self._require_api_key()
        try:
            customer = stripe.Customer.retrieve(customer_id, api_key=self._api_key)
        except stripe.InvalidRequestError as exc:
            if _is_missing_resource(exc):
                return None
            raise BillingProviderError(f"Failed to retrieve Stripe customer {customer_id}: {exc}") from exc
        except stripe.StripeError as exc:
            raise BillingProviderError(f"Failed to retrieve Stripe customer {customer_id}: {exc}") from exc

        return StripeCustomer(
            id=getattr(customer, "id", None) or customer_id,
            email=_optional_text(getattr(customer, "email", None)),
            deleted=bool(getattr(customer, "deleted", False)),
        )

    def retrieve_subscription(self, subscription_id: str) -> Optional[StripeSubscription]:
        self._require_api_key()
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self._api_key)
        except stripe.InvalidRequestError as exc:
            if _is_missing_resource(exc):
                return None
            raise BillingProviderError(f"Failed to retrieve Stripe subscription {subscription_id}: {exc}") from exc
        except stripe.StripeError as exc:
            raise BillingProviderError(f"Failed to retrieve Stripe subscription {subscription_id}: {exc}") from exc

        customer = getattr(subscription, "customer", None)
        return StripeSubscription(
            id=getattr(subscription, "id", None) or subscription_id,
            status=_optional_text(getattr(subscription, "status", None)),
            customer=_optional_text(getattr(customer, "id", customer)),
        )


def get_stripe_client() -> StripeClient:
    api_key = os.environ.get("STRIPE_SECRET_KEY", "")
    webhook_secret = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    if api_key.strip() or webhook_secret.strip():
        return StripeSdkClient(api_key=api_key, webhook_secret=webhook_secret)
    return DisabledStripeClient()


_PAYLOAD_MODELS = {
    BillingEventType.CHECKOUT_COMPLETED: CheckoutSessionPayload,
    BillingEventType.INVOICE_PAID: InvoicePayload,
    BillingEventType.PAYMENT_FAILED: InvoicePayload,
    BillingEventType.SUBSCRIPTION_CREATED: SubscriptionPayload,
    BillingEventType.SUBSCRIPTION_UPDATED: SubscriptionPayload,
    BillingEventType.SUBSCRIPTION_DELETED: SubscriptionPayload,
}


def parse_billing_event(raw: Dict[str, Any]) -> BillingEvent:
    """Turn a verified Stripe event body into a typed BillingEvent.

    The payload model is chosen by the event type; unknown types keep a
    minimal payload so they can still be acknowledged. Raises ValueError
    (pydantic's ValidationError included) on malformed input.
    """
    if not isinstance(raw, dict):
        raise ValueError("Webhook payload must be a JSON object")
    event_type = _optional_text(raw.get("type"))
    if not event_type:
        raise ValueError("Webhook event type is missing")

    data = raw.get("data") or {}
    payload_object = data.get("object") if isinstance(data, dict) else None
    if not isinstance(payload_object, dict):
        payload_object = {}

    try:
        known_type = BillingEventType(event_type)
    except ValueError:
        known_type = None
    model = _PAYLOAD_MODELS.get(known_type, UnhandledPayload)

    return BillingEvent(
        id=_optional_text(raw.get("id")),
        type=event_type,
        created=raw.get("created"),
        livemode=bool(raw.get("livemode", False)),
        payload=model.model_validate(payload_object),
    )


@dataclass
class IdentityMatch:
    user: Optional[UserRecord]
    source: str


def metadata_user_id(metadata_sources: Iterable[Dict[str, Any]]) -> Optional[str]:
    for metadata in metadata_sources:
        for key in USER_ID_METADATA_KEYS:
            value = _optional_text((metadata or {}).get(key))
            if value:
                return value
    return None


def _active_user(user: Optional[UserRecord]) -> Optional[UserRecord]:
    if user is None or user.is_deleted:
        return None
    return user


def resolve_user(
    *,
    user_store: UserStore,
    stripe_client: StripeClient,
    user_id: Optional[str] = None,
    email: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> IdentityMatch:
    """Map an event to an internal user.

    Order: explicit user id from metadata, then an email carried on the
    event, then the email of the Stripe customer. Deleted Stripe customers
    and soft-deleted users never match.
    """
    if user_id:
        user = _active_user(user_store.get_user(user_id))
        if user:
            return IdentityMatch(user=user, source="metadata")
        logger.warning(_json_log({"event": "billing.identity.metadata_user_missing", "user_id": user_id}))

    if email:
        user = _active_user(user_store.find_user_by_email(email))
        if user:
            return IdentityMatch(user=user, source="event_email")

    if not customer_id:
        return IdentityMatch(user=None, source="no_reference")

    customer = stripe_client.retrieve_customer(customer_id)
    if customer is None:
        return IdentityMatch(user=None, source="customer_missing")
    if customer.deleted:
        return IdentityMatch(user=None, source="customer_deleted")
    if not customer.email:
        return IdentityMatch(user=None, source="customer_without_email")

    user = _active_user(user_store.find_user_by_email(customer.email))
    if user:
        return IdentityMatch(user=user, source="customer_email")
    return IdentityMatch(user=None, source="email_not_found")


def _unresolved(event: BillingEvent, match: IdentityMatch, customer_id: Optional[str]) -> ReconcileOutcome:
    logger.warning(
        _json_log(
            {
                "event": "billing.identity.unresolved",
                "stripe_event_id": event.id,
                "event_type": event.type,
                "reason": match.source,
                "stripe_customer_id": customer_id,
            }
        )
    )
    return ReconcileOutcome(
        event_type=event.type,
        action=ACTION_UNRESOLVED,
        details={"reason": match.source, "stripe_customer_id": customer_id},
    )


def _apply_update(
    event: BillingEvent,
    match: IdentityMatch,
    update: BillingUpdate,
    user_store: UserStore,
    customer_id: Optional[str],
) -> ReconcileOutcome:
    user_id = match.user.user_id
    try:
        updated = user_store.apply_billing_update(user_id, update)
    except UserNotFoundError:
        return _unresolved(event, IdentityMatch(user=None, source="user_vanished"), customer_id)
    except UserStoreError as exc:
        logger.error(
            _json_log(
                {
                    "event": "billing.state.write_failed",
                    "stripe_event_id": event.id,
                    "event_type": event.type,
                    "user_id": user_id,
                    "error": str(exc),
                }
            )
        )
        raise BillingStateWriteError(str(exc)) from exc

    action = ACTION_PRO_ENABLED if update.is_pro else ACTION_PRO_DISABLED
    logger.info(
        _json_log(
            {
                "event": "billing.state.applied",
                "stripe_event_id": event.id,
                "event_type": event.type,
                "user_id": user_id,
                "identity_source": match.source,
                "is_pro": updated.is_pro,
            }
        )
    )
    return ReconcileOutcome(
        event_type=event.type,
        action=action,
        user_id=user_id,
        is_pro=updated.is_pro,
        details={
            "identity_source": match.source,
            "stripe_customer_id": updated.stripe_customer_id,
            "generation_count_reset": update.reset_generation_count,
        },
    )


def _pro_update(is_pro: bool, customer_id: Optional[str] = None) -> BillingUpdate:
    return BillingUpdate(
        is_pro=is_pro,
        stripe_customer_id=customer_id,
        reset_generation_count=is_pro,
    )


def _handle_checkout_completed(
    event: BillingEvent,
    user_store: UserStore,
    stripe_client: StripeClient,
) -> ReconcileOutcome:
    payload: CheckoutSessionPayload = event.payload
    user_id = metadata_user_id([payload.metadata]) or _optional_text(payload.client_reference_id)
    match = resolve_user(
        user_store=user_store,
        stripe_client=stripe_client,
        user_id=user_id,
        email=payload.email,
        customer_id=payload.customer,
    )
    if match.user is None:
        return _unresolved(event, match, payload.customer)
    return _apply_update(event, match, _pro_update(True, payload.customer), user_store, payload.customer)


def _handle_invoice_paid(
    event: BillingEvent,
    user_store: UserStore,
    stripe_client: StripeClient,
) -> ReconcileOutcome:
    payload: InvoicePayload = event.payload
    subscription_id = payload.subscription_id
    if not subscription_id:
        logger.info(_json_log({"event": "billing.invoice.no_subscription", "stripe_event_id": event.id}))
        return ReconcileOutcome(event_type=event.type, action=ACTION_IGNORED, details={"reason": "no_subscription"})

    subscription = stripe_client.retrieve_subscription(subscription_id)
    status = subscription.status if subscription else None
    if status not in ACTIVE_SUBSCRIPTION_STATUSES:
        logger.info(
            _json_log(
                {
                    "event": "billing.invoice.subscription_inactive",
                    "stripe_event_id": event.id,
                    "stripe_subscription_id": subscription_id,
                    "status": status,
                }
            )
        )
        return ReconcileOutcome(
            event_type=event.type,
            action=ACTION_SUBSCRIPTION_INACTIVE,
            details={"stripe_subscription_id": subscription_id, "status": status},
        )

    customer_id = payload.customer or (subscription.customer if subscription else None)
    match = resolve_user(
        user_store=user_store,
        stripe_client=stripe_client,
        user_id=metadata_user_id([payload.metadata, payload.subscription_metadata]),
        customer_id=customer_id,
    )
    if match.user is None:
        return _unresolved(event, match, customer_id)
    return _apply_update(event, match, _pro_update(True), user_store, customer_id)


def _apply_subscription_status(
    event: BillingEvent,
    is_pro: bool,
    user_store: UserStore,
    stripe_client: StripeClient,
) -> ReconcileOutcome:
    payload: SubscriptionPayload = event.payload
    match = resolve_user(
        user_store=user_store,
        stripe_client=stripe_client,
        user_id=metadata_user_id([payload.metadata]),
        customer_id=payload.customer,
    )
    if match.user is None:
        return _unresolved(event, match, payload.customer)
    return _apply_update(event, match, _pro_update(is_pro, payload.customer), user_store, payload.customer)


def _handle_subscription_changed(
    event: BillingEvent,
    user_store: UserStore,
    stripe_client: StripeClient,
) -> ReconcileOutcome:
    payload: SubscriptionPayload = event.payload
    is_pro = (payload.status or "").strip().lower() in ACTIVE_SUBSCRIPTION_STATUSES
    return _apply_subscription_status(event, is_pro, user_store, stripe_client)


def _handle_subscription_deleted(
    event: BillingEvent,
    user_store: UserStore,
    stripe_client: StripeClient,
) -> ReconcileOutcome:
    return _apply_subscription_status(event, False, user_store, stripe_client)


def _handle_payment_failed(
    event: BillingEvent,
    user_store: UserStore,
    stripe_client: StripeClient,
) -> ReconcileOutcome:
    del user_store, stripe_client
    payload: InvoicePayload = event.payload
    # Pro access is left untouched; Stripe's dunning ends in subscription.deleted.
    logger.warning(
        _json_log(
            {
                "event": "billing.invoice.payment_failed",
                "stripe_event_id": event.id,
                "stripe_invoice_id": payload.id,
                "stripe_customer_id": payload.customer,
                "stripe_subscription_id": payload.subscription_id,
            }
        )
    )
    return ReconcileOutcome(
        event_type=event.type,
        action=ACTION_OBSERVED,
        details={"stripe_customer_id": payload.customer, "stripe_invoice_id": payload.id},
    )


EventHandler = Callable[[BillingEvent, UserStore, StripeClient], ReconcileOutcome]

EVENT_HANDLERS: Dict[BillingEventType, EventHandler] = {
    BillingEventType.CHECKOUT_COMPLETED: _handle_checkout_completed,
    BillingEventType.INVOICE_PAID: _handle_invoice_paid,
    BillingEventType.SUBSCRIPTION_CREATED: _handle_subscription_changed,
    BillingEventType.SUBSCRIPTION_UPDATED: _handle_subscription_changed,
    BillingEventType.SUBSCRIPTION_DELETED: _handle_subscription_deleted,
    BillingEventType.PAYMENT_FAILED: _handle_payment_failed,
}


def reconcile_billing_event(
    event: BillingEvent,
    user_store: UserStore,
    stripe_client: StripeClient,
) -> ReconcileOutcome:
    logger.info(
        _json_log(
            {
                "event": "billing.webhook.received",
                "stripe_event_id": event.id,
                "event_type": event.type,
                "livemode": event.livemode,
            }
        )
    )
    known_type = event.known_type
    handler = EVENT_HANDLERS.get(known_type) if known_type else None
    if handler is None:
        logger.info(_json_log({"event": "billing.webhook.ignored", "event_type": event.type}))
        return ReconcileOutcome(event_type=event.type, action=ACTION_IGNORED)
    return handler(event, user_store, stripe_client)
