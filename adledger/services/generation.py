import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adledger.core.config import settings
from adledger.models import AdImage, GenerationJob, JobStatus
from adledger.services import tokens as tokens_service
from adledger.services.errors import InvalidJobTransitionError, JobNotFoundError

logger = logging.getLogger(__name__)

SQUARE_FORMATS = {"1:1", "square"}
STORY_FORMATS = {"9:16", "story"}

# 允许的状态迁移；同状态重复上报视为幂等
_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED},
    JobStatus.SUCCEEDED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELED: set(),
}


def calculate_token_cost(formats: Optional[Iterable[str]]) -> int:
    """按版式计价：方图或竖版单选一个价，两者都选一个价，未指定按单版式计。"""
    selected = set(formats or [])
    has_square = bool(selected & SQUARE_FORMATS)
    has_story = bool(selected & STORY_FORMATS)
    if has_square and has_story:
        return settings.TOKENS_COST_MULTI_FORMAT
    return settings.TOKENS_COST_SINGLE_FORMAT


def _lock_job(db: Session, job_id: str) -> GenerationJob:
    stmt = (
        select(GenerationJob)
        .where(GenerationJob.id == job_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    job = db.execute(stmt).scalar_one_or_none()
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def get_generation_job(db: Session, job_id: str, *, user_id: Optional[str] = None) -> GenerationJob:
    query = db.query(GenerationJob).filter(GenerationJob.id == job_id)
    if user_id is not None:
        query = query.filter(GenerationJob.userId == user_id)
    job = query.first()
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def list_jobs_for_user(db: Session, user_id: str, *, limit: int = 20) -> list[tuple[GenerationJob, int]]:
    rows = (
        db.query(GenerationJob, func.count(AdImage.id))
        .outerjoin(AdImage, AdImage.jobId == GenerationJob.id)
        .filter(GenerationJob.userId == user_id)
        .group_by(GenerationJob.id)
        .order_by(GenerationJob.createdAt.desc(), GenerationJob.id.desc())
        .limit(limit)
        .all()
    )
    return [(job, int(count or 0)) for job, count in rows]


def create_generation_job(
    db: Session,
    user_id: str,
    *,
    job_id: Optional[str] = None,
    formats: Optional[list[str]] = None,
    prompt: Optional[str] = None,
    params: Optional[dict[str, Any]] = None,
    tokens_cost: Optional[int] = None,
) -> GenerationJob:
    """预扣代币并创建任务，两者在同一事务内，要么都成功要么都不落库。

    用同一个 job_id 重复提交时返回已有任务，不会重复扣费。
    """
    job_id = job_id or str(uuid.uuid4())
    formats = list(formats or [])
    cost = calculate_token_cost(formats) if tokens_cost is None else int(tokens_cost)

    with tokens_service.transaction(db):
        existing = db.get(GenerationJob, job_id)
        if existing is not None:
            if existing.userId != user_id:
                raise JobNotFoundError(job_id)
            logger.info(f"任务已存在，直接返回: job={job_id}")
            return existing

        reservation = tokens_service.reserve_tokens(db, user_id, cost, job_id)
        job = GenerationJob(
            id=job_id,
            userId=user_id,
            status=JobStatus.QUEUED.value,
            prompt=prompt,
            params=params or {},
            formats=formats,
            tokensCost=cost,
            ledgerId=reservation.entry.id if reservation.entry is not None else None,
            createdAt=datetime.utcnow(),
        )
        try:
            with db.begin_nested():
                db.add(job)
                db.flush()
        except IntegrityError:
            # 并发的同 id 提交：以先落库的为准
            existing = db.get(GenerationJob, job_id)
            if existing is None or existing.userId != user_id:
                raise
            return existing

        logger.info(f"任务已创建: job={job_id} user={user_id} cost={cost} balance={reservation.balance}")
        return job


def _transition(
    db: Session,
    job_id: str,
    target: JobStatus,
    *,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
    image_urls: Optional[list[str]] = None,
) -> GenerationJob:
    now = datetime.utcnow()
    with tokens_service.transaction(db):
        job = _lock_job(db, job_id)
        current = JobStatus(job.status)

        if current == target:
            # 重复回调：状态已是目标状态，不再产生任何副作用
            logger.info(f"任务状态重复上报已忽略: job={job_id} status={target.value}")
            return job
        if target not in _TRANSITIONS[current]:
            raise InvalidJobTransitionError(job_id, current.value, target.value)

        job.status = target.value
        if target == JobStatus.RUNNING:
            job.startedAt = now
        else:
            job.completedAt = now

        if target in (JobStatus.FAILED, JobStatus.CANCELED):
            job.errorCode = error_code or target.value
            job.errorMessage = error_message
            # 状态变更与退款同一事务；退款本身按 job_id 幂等
            tokens_service.refund_tokens(db, job.userId, int(job.tokensCost or 0), job.id)

        if target == JobStatus.SUCCEEDED:
            for url in image_urls or []:
                db.add(AdImage(jobId=job.id, userId=job.userId, imageUrl=url))

        db.flush()
        logger.info(f"任务状态变更: job={job_id} {current.value} -> {target.value}")
        return job


def mark_job_running(db: Session, job_id: str) -> GenerationJob:
    return _transition(db, job_id, JobStatus.RUNNING)


def mark_job_succeeded(db: Session, job_id: str, *, image_urls: Optional[list[str]] = None) -> GenerationJob:
    return _transition(db, job_id, JobStatus.SUCCEEDED, image_urls=image_urls)


def mark_job_failed(
    db: Session,
    job_id: str,
    *,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> GenerationJob:
    return _transition(db, job_id, JobStatus.FAILED, error_code=error_code, error_message=error_message)


def cancel_job(db: Session, job_id: str, *, error_message: Optional[str] = None) -> GenerationJob:
    return _transition(db, job_id, JobStatus.CANCELED, error_code="CANCELED", error_message=error_message)


def update_job_status(
    db: Session,
    job_id: str,
    status: JobStatus,
    *,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
    image_urls: Optional[list[str]] = None,
) -> GenerationJob:
    status = JobStatus(status)
    if status == JobStatus.QUEUED:
        raise InvalidJobTransitionError(job_id, "unknown", status.value)
    return _transition(
        db,
        job_id,
        status,
        error_code=error_code,
        error_message=error_message,
        image_urls=image_urls,
    )


def charge_partial_job(db: Session, user_id: str, job_id: str, tokens: int) -> tokens_service.LedgerResult:
    """失败/取消的任务仍产出了部分图片：把这部分费用从退款里扣回来。"""
    job = get_generation_job(db, job_id, user_id=user_id)
    if JobStatus(job.status) not in (JobStatus.FAILED, JobStatus.CANCELED):
        raise InvalidJobTransitionError(job_id, job.status, "PARTIAL_CHARGE")
    return tokens_service.charge_partial(db, user_id, min(int(tokens), int(job.tokensCost or 0)), job_id)


def fail_stale_jobs(db: Session, *, max_age_minutes: Optional[int] = None, now: Optional[datetime] = None) -> int:
    """长时间停留在 QUEUED/RUNNING 的任务按超时失败处理并退款，返回处理的任务数。"""
    age = settings.STALE_JOB_MINUTES if max_age_minutes is None else max_age_minutes
    cutoff = (now or datetime.utcnow()) - timedelta(minutes=age)
    stale_ids = [
        job_id
        for (job_id,) in db.query(GenerationJob.id)
        .filter(
            GenerationJob.status.in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value]),
            # RUNNING 的任务从开始执行算起，排队时间不计入
            func.coalesce(GenerationJob.startedAt, GenerationJob.createdAt) < cutoff,
        )
        .all()
    ]

    failed = 0
    for job_id in stale_ids:
        try:
            mark_job_failed(db, job_id, error_code="TIMEOUT", error_message=f"No result after {age} minutes")
            failed += 1
        except InvalidJobTransitionError:
            # 查询之后回调已经把任务推进到终态
            continue
    return failed
