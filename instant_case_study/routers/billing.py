import json
import logging
import os
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status as http_status

from instant_case_study.audit_store import AuditLogStoreError, billing_event_id, get_audit_log_store
from instant_case_study.auth import get_current_user
from instant_case_study.billing_service import (
    APPLIED_ACTIONS,
    BillingProviderError,
    BillingStateWriteError,
    WebhookVerificationError,
    get_stripe_client,
    parse_billing_event,
    reconcile_billing_event,
)
from instant_case_study.generation_service import is_pro
from instant_case_study.routers.users import ensure_user_record
from instant_case_study.schemas import (
    AuditLogRecord,
    BillingEvent,
    BillingProviderStatus,
    ReconcileOutcome,
    StripeWebhookResponse,
)
from instant_case_study.user_store import get_user_store

router = APIRouter(tags=["billing"])
logger = logging.getLogger("instant_case_study.billing")


def _json_log(fields) -> str:
    return json.dumps(fields, separators=(",", ":"), default=str)


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _optional_text(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _stripe_mode(secret_key: str) -> str:
    value = (secret_key or "").strip()
    if not value:
        return "disabled"
    if value.startswith("sk_live_") or value.startswith("rk_live_"):
        return "live"
    if value.startswith("sk_test_") or value.startswith("rk_test_"):
        return "test"
    return "configured"


def _require_stripe_webhook_secret():
    webhook_secret = _optional_text(os.environ.get("STRIPE_WEBHOOK_SECRET"))
    if webhook_secret:
        return

    allow_unsigned = _as_bool(
        os.environ.get("ALLOW_UNSAFE_STRIPE_WEBHOOK_WITHOUT_SECRET"),
        default=False,
    )
    if allow_unsigned:
        return

    raise HTTPException(
        status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Stripe webhook is not configured",
    )


def _request_id(request: Request):
    request_id = getattr(getattr(request, "state", object()), "request_id", None)
    if request_id:
        return str(request_id)
    return request.headers.get("x-correlation-id") or request.headers.get("x-request-id")


def _audit_billing_transition(audit_store, event: BillingEvent, outcome: ReconcileOutcome, request: Request):
    now = datetime.now(timezone.utc)
    record = AuditLogRecord(
        user_id=outcome.user_id,
        event_id=billing_event_id(event.id, created=event.created, now=now),
        action=f"billing.{outcome.action}",
        actor_id="stripe-webhook",
        target_type="user",
        target_id=outcome.user_id,
        request_id=_request_id(request),
        details={
            "event_type": event.type,
            "stripe_event_id": event.id,
            "is_pro": outcome.is_pro,
            **outcome.details,
        },
        created_at=now,
    )
    audit_store.put_event(record)


@router.post("/webhooks/stripe", response_model=StripeWebhookResponse)
async def stripe_webhook(
    request: Request,
    user_store=Depends(get_user_store),
    stripe_client=Depends(get_stripe_client),
    audit_store=Depends(get_audit_log_store),
):
    _require_stripe_webhook_secret()
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        raw_event = stripe_client.parse_webhook_event(payload=payload, signature_header=signature)
    except WebhookVerificationError as exc:
        logger.warning(_json_log({"event": "billing.webhook.rejected", "reason": str(exc)}))
        raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload") from exc

    try:
        event = parse_billing_event(raw_event)
    except ValueError as exc:
        raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload") from exc

    try:
        outcome = reconcile_billing_event(event=event, user_store=user_store, stripe_client=stripe_client)
    except BillingStateWriteError as exc:
        raise HTTPException(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to apply billing state",
        ) from exc
    except BillingProviderError as exc:
        logger.error(_json_log({"event": "billing.provider.failed", "stripe_event_id": event.id, "error": str(exc)}))
        raise HTTPException(
            status_code=http_status.HTTP_502_BAD_GATEWAY,
            detail="Failed to reach Stripe",
        ) from exc

    if outcome.action in APPLIED_ACTIONS and outcome.user_id:
        try:
            _audit_billing_transition(audit_store, event, outcome, request)
        except AuditLogStoreError as exc:
            # The user row is already written; redelivery reapplies it and rewrites the entry.
            logger.error(
                _json_log(
                    {
                        "event": "billing.audit.write_failed",
                        "stripe_event_id": event.id,
                        "user_id": outcome.user_id,
                        "error": str(exc),
                    }
                )
            )
            raise HTTPException(
                status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to record billing audit entry",
            ) from exc

    return StripeWebhookResponse(
        received=True,
        event_type=event.type,
        action=outcome.action,
        user_id=outcome.user_id,
    )


@router.get("/billing/status", response_model=BillingProviderStatus)
async def get_billing_status(
    user=Depends(get_current_user),
    user_store=Depends(get_user_store),
):
    record = ensure_user_record(user, user_store)
    secret_key = _optional_text(os.environ.get("STRIPE_SECRET_KEY")) or ""
    webhook_secret = _optional_text(os.environ.get("STRIPE_WEBHOOK_SECRET")) or ""

    return BillingProviderStatus(
        user_id=record.user_id,
        is_pro=is_pro(record),
        stripe_mode=_stripe_mode(secret_key),
        webhook_signature_verification_enabled=bool(webhook_secret),
        stripe_secret_key_configured=bool(secret_key),
        stripe_webhook_secret_configured=bool(webhook_secret),
        stripe_customer_id=record.stripe_customer_id,
    )


@router.get("/billing/events", response_model=List[AuditLogRecord])
async def list_billing_events(
    limit: int = Query(default=50, ge=1, le=500),
    user=Depends(get_current_user),
    audit_store=Depends(get_audit_log_store),
):
    return audit_store.list_events(user["sub"], limit=limit)
