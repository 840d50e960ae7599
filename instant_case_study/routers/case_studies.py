import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status

from instant_case_study.auth import get_current_user
from instant_case_study.case_study_store import CaseStudyStoreError, get_case_study_store
from instant_case_study.generation_service import (
    FREE_GENERATION_LIMIT,
    CaseStudyGenerationError,
    GenerationLimitReachedError,
    ensure_generation_allowed,
    generate_case_study,
    get_case_study_generator,
    is_pro,
    new_case_study_record,
)
from instant_case_study.routers.users import ensure_user_record
from instant_case_study.schemas import CaseStudyCreate, CaseStudyList, CaseStudyRecord, CaseStudyResponse
from instant_case_study.user_store import (
    UsageLimitExceededError,
    UserNotFoundError,
    UserStoreError,
    get_user_store,
)

router = APIRouter(prefix="/case-studies", tags=["case-studies"])
logger = logging.getLogger("instant_case_study.generation")


def _json_log(fields) -> str:
    return json.dumps(fields, separators=(",", ":"), default=str)


@router.post("", response_model=CaseStudyResponse)
async def create_case_study(
    payload: CaseStudyCreate,
    user=Depends(get_current_user),
    user_store=Depends(get_user_store),
    case_study_store=Depends(get_case_study_store),
    generator=Depends(get_case_study_generator),
):
    record = ensure_user_record(user, user_store)
    try:
        ensure_generation_allowed(record)
    except GenerationLimitReachedError as exc:
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        case_study, social_media_text = generate_case_study(payload, generator)
    except CaseStudyGenerationError as exc:
        logger.error(_json_log({"event": "generation.failed", "user_id": record.user_id, "error": str(exc)}))
        raise HTTPException(status_code=http_status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    if not is_pro(record):
        try:
            user_store.increment_generation_count(record.user_id, limit=FREE_GENERATION_LIMIT)
        except UsageLimitExceededError as exc:
            # A concurrent request used the last free generation.
            logger.warning(_json_log({"event": "generation.limit_race", "user_id": record.user_id}))
            raise HTTPException(
                status_code=http_status.HTTP_403_FORBIDDEN,
                detail="Generation limit reached. Please upgrade to Pro.",
            ) from exc
        except (UserNotFoundError, UserStoreError) as exc:
            logger.error(
                _json_log({"event": "generation.count_increment_failed", "user_id": record.user_id, "error": str(exc)})
            )

    saved = new_case_study_record(record.user_id, payload, case_study, social_media_text)
    try:
        case_study_store.put_case_study(saved)
    except CaseStudyStoreError as exc:
        logger.error(_json_log({"event": "generation.save_failed", "user_id": record.user_id, "error": str(exc)}))
        return CaseStudyResponse(case_study=case_study, social_media_text=social_media_text)

    logger.info(_json_log({"event": "generation.completed", "user_id": record.user_id, "case_study_id": saved.id}))
    return CaseStudyResponse(
        case_study=case_study,
        social_media_text=social_media_text,
        saved=True,
        id=saved.id,
    )


@router.get("", response_model=CaseStudyList)
async def list_case_studies(
    limit: int = Query(default=50, ge=1, le=200),
    user=Depends(get_current_user),
    case_study_store=Depends(get_case_study_store),
):
    return CaseStudyList(items=case_study_store.list_case_studies(user["sub"], limit=limit))


@router.get("/{case_study_id}", response_model=CaseStudyRecord)
async def get_case_study(
    case_study_id: str,
    user=Depends(get_current_user),
    case_study_store=Depends(get_case_study_store),
):
    record = case_study_store.get_case_study(user["sub"], case_study_id)
    if not record:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="case study not found")
    return record
