from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from adledger.models import JobStatus

ALLOWED_FORMATS = {"1:1", "square", "9:16", "story"}


class GenerationJobCreateRequest(BaseModel):
    # 客户端可自带 jobId，重复提交同一个 jobId 不会重复扣费
    jobId: Optional[str] = None
    formats: list[str] = Field(default_factory=list)
    prompt: Optional[str] = None
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("formats")
    @classmethod
    def validate_formats(cls, v: list[str]) -> list[str]:
        unknown = [item for item in v if item not in ALLOWED_FORMATS]
        if unknown:
            raise ValueError(f"不支持的版式: {', '.join(unknown)}")
        return v


class GenerationJobResponse(BaseModel):
    id: str
    status: str
    prompt: Optional[str] = None
    params: dict[str, Any] = Field(default_factory=dict)
    formats: list[str] = Field(default_factory=list)
    tokensCost: int
    ledgerId: Optional[int] = None
    errorCode: Optional[str] = None
    errorMessage: Optional[str] = None
    createdAt: datetime
    startedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    imageCount: int = 0


class GenerationJobListResponse(BaseModel):
    items: list[GenerationJobResponse]


class JobStatusCallbackRequest(BaseModel):
    jobId: str
    status: JobStatus
    errorCode: Optional[str] = None
    errorMessage: Optional[str] = None
    imageUrls: list[str] = Field(default_factory=list)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: JobStatus) -> JobStatus:
        if v == JobStatus.QUEUED:
            raise ValueError("回调不能把任务改回 QUEUED")
        return v


class PartialChargeRequest(BaseModel):
    tokens: int = Field(ge=0)


class PartialChargeResponse(BaseModel):
    jobId: str
    tokensCharged: int
    applied: bool
    balance: int
