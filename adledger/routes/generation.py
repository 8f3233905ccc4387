import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from adledger.core.database import get_db
from adledger.core.security import get_current_user, require_cron_secret, require_workflow_key
from adledger.models import AdImage, GenerationJob, User
from adledger.schemas.generation import (
    GenerationJobCreateRequest,
    GenerationJobListResponse,
    GenerationJobResponse,
    JobStatusCallbackRequest,
    PartialChargeRequest,
    PartialChargeResponse,
)
from adledger.services import generation as generation_service

router = APIRouter()
logger = logging.getLogger(__name__)


def _image_count(db: Session, job_id: str) -> int:
    return int(db.query(func.count(AdImage.id)).filter(AdImage.jobId == job_id).scalar() or 0)


def _job_to_response(job: GenerationJob, *, image_count: Optional[int] = None) -> GenerationJobResponse:
    return GenerationJobResponse(
        id=job.id,
        status=job.status,
        prompt=job.prompt,
        params=job.params or {},
        formats=job.formats or [],
        tokensCost=int(job.tokensCost or 0),
        ledgerId=job.ledgerId,
        errorCode=job.errorCode,
        errorMessage=job.errorMessage,
        createdAt=job.createdAt,
        startedAt=job.startedAt,
        completedAt=job.completedAt,
        imageCount=image_count or 0,
    )


@router.post("/jobs", response_model=GenerationJobResponse)
async def create_job(
    payload: GenerationJobCreateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    # 代币不足时抛 InsufficientTokensError，由全局 handler 返回 402 + INSUFFICIENT_TOKENS
    job = generation_service.create_generation_job(
        db,
        current_user.id,
        job_id=payload.jobId,
        formats=payload.formats,
        prompt=payload.prompt,
        params=payload.params,
    )
    db.commit()
    return _job_to_response(job, image_count=_image_count(db, job.id))


@router.get("/jobs", response_model=GenerationJobListResponse)
async def list_my_jobs(
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    rows = generation_service.list_jobs_for_user(db, current_user.id, limit=limit)
    return GenerationJobListResponse(items=[_job_to_response(job, image_count=count) for job, count in rows])


@router.get("/jobs/{job_id}", response_model=GenerationJobResponse)
async def get_my_job(
    job_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    job = generation_service.get_generation_job(db, job_id, user_id=current_user.id)
    return _job_to_response(job, image_count=_image_count(db, job.id))


@router.post("/jobs/{job_id}/cancel", response_model=GenerationJobResponse)
async def cancel_my_job(
    job_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    generation_service.get_generation_job(db, job_id, user_id=current_user.id)
    job = generation_service.cancel_job(db, job_id, error_message="Canceled by user")
    db.commit()
    return _job_to_response(job, image_count=_image_count(db, job.id))


@router.post("/jobs/{job_id}/charge-partial", response_model=PartialChargeResponse)
async def charge_partial_for_job(
    job_id: str,
    payload: PartialChargeRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    result = generation_service.charge_partial_job(db, current_user.id, job_id, payload.tokens)
    db.commit()
    charged = -int(result.entry.delta) if result.entry is not None else 0
    return PartialChargeResponse(jobId=job_id, tokensCharged=charged, applied=result.applied, balance=result.balance)


@router.post("/callback", response_model=GenerationJobResponse, dependencies=[Depends(require_workflow_key)])
async def job_status_callback(
    payload: JobStatusCallbackRequest,
    db: Session = Depends(get_db),
):
    """AI 工作流回调：推进任务状态；FAILED/CANCELED 在同一事务内退款"""
    job = generation_service.update_job_status(
        db,
        payload.jobId,
        payload.status,
        error_code=payload.errorCode,
        error_message=payload.errorMessage,
        image_urls=payload.imageUrls,
    )
    db.commit()
    logger.info(f"工作流回调已处理: job={payload.jobId} status={payload.status.value}")
    return _job_to_response(job, image_count=_image_count(db, job.id))


@router.post("/stale-jobs", dependencies=[Depends(require_cron_secret)])
async def expire_stale_jobs(
    maxAgeMinutes: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
):
    failed = generation_service.fail_stale_jobs(db, max_age_minutes=maxAgeMinutes)
    db.commit()
    return {"failed": failed}
