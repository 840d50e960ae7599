from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status as http_status

from instant_case_study.auth import get_current_user
from instant_case_study.generation_service import (
    FREE_GENERATION_LIMIT,
    generation_count,
    is_pro,
    remaining_generations,
)
from instant_case_study.schemas import UsageSummary, UserRecord
from instant_case_study.user_store import UserNotFoundError, get_user_store, normalize_email

router = APIRouter(prefix="/users", tags=["users"])


def ensure_user_record(user, store) -> UserRecord:
    """Return the caller's row, creating it from token claims on first use.

    Existing rows are never rewritten here so billing fields written by the
    Stripe webhook are not clobbered.
    """
    existing = store.get_user(user["sub"])
    if existing:
        if existing.is_deleted:
            raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="User not found")
        return existing

    now = datetime.now(timezone.utc)
    record = UserRecord(
        user_id=user["sub"],
        email=normalize_email(user.get("email")),
        is_pro=False,
        generation_count=0,
        created_at=now,
        updated_at=now,
    )
    return store.upsert_user(record)


def build_usage_summary(record: UserRecord) -> UsageSummary:
    return UsageSummary(
        user_id=record.user_id,
        is_pro=is_pro(record),
        generation_count=generation_count(record),
        generation_limit=FREE_GENERATION_LIMIT,
        remaining=remaining_generations(record),
    )


@router.get("/me", response_model=UserRecord)
async def get_current_user_record(
    user=Depends(get_current_user),
    store=Depends(get_user_store),
):
    return ensure_user_record(user, store)


@router.get("/me/usage", response_model=UsageSummary)
async def get_current_usage(
    user=Depends(get_current_user),
    store=Depends(get_user_store),
):
    return build_usage_summary(ensure_user_record(user, store))


@router.delete("/me", response_model=UserRecord)
async def delete_current_user(
    user=Depends(get_current_user),
    store=Depends(get_user_store),
):
    ensure_user_record(user, store)
    try:
        return store.soft_delete_user(user["sub"])
    except UserNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="User not found") from exc
