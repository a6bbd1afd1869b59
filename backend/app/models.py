from __future__ import annotations
from typing import Any, Literal, Optional
from pydantic import BaseModel, Field

ProviderKind = Literal["hosted", "self_hosted"]
ApiVariant = Literal["v1", "deployments"]
RunType = Literal["generation", "remix"]


class DeploymentNamesModel(BaseModel):
    video: str = ""
    planner: str = ""
    image: str = ""


class ProviderConfigModel(BaseModel):
    kind: ProviderKind = "hosted"
    base_url: Optional[str] = None
    endpoint: Optional[str] = None
    api_variant: ApiVariant = "v1"
    api_version: Optional[str] = None
    deployments: DeploymentNamesModel = Field(default_factory=DeploymentNamesModel)


class PlanRequest(BaseModel):
    base_prompt: str
    seconds_per_segment: int = 4
    segment_count: int = Field(default=1, ge=1)
    provider: ProviderConfigModel = Field(default_factory=ProviderConfigModel)


class PlannedSegmentModel(BaseModel):
    title: str
    seconds: int
    prompt: str


class PlanResponse(BaseModel):
    segments: list[PlannedSegmentModel]


class SegmentRequestModel(BaseModel):
    prompt: str
    seconds: int = 4
    size: Optional[str] = None
    model: Optional[str] = None


class CreateRunRequest(BaseModel):
    segments: list[SegmentRequestModel] = Field(default_factory=list)
    provider: ProviderConfigModel = Field(default_factory=ProviderConfigModel)
    first_frame_b64: Optional[str] = None
    last_frame_b64: Optional[str] = None


class RemixRequest(BaseModel):
    parent_job_id: str
    prompt: str
    provider: ProviderConfigModel = Field(default_factory=ProviderConfigModel)
    reference_image_b64: Optional[str] = None


class RunQueueResponse(BaseModel):
    job_id: str
    run_id: str
    run_type: RunType = "generation"
    queue_name: str = "default"
    status_url: str = ""
    video_url: str = ""
    queued_at: str = ""


class JobStatusResponse(BaseModel):
    job_id: str
    status: Literal["queued", "started", "finished", "failed"]
    progress: int = 0
    segment_index: Optional[int] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    queue_name: Optional[str] = None
    run_type: Optional[RunType] = None
    run_id: Optional[str] = None
    enqueued_at: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    queued_at: Optional[str] = None


class ImageRequest(BaseModel):
    prompt: str
    size: Optional[str] = None
    count: int = Field(default=1, ge=1, le=4)
    provider: ProviderConfigModel = Field(default_factory=ProviderConfigModel)


class ImageCandidate(BaseModel):
    b64_json: Optional[str] = None
    url: Optional[str] = None
    revised_prompt: Optional[str] = None


class ImageResponse(BaseModel):
    images: list[ImageCandidate] = Field(default_factory=list)


class VideoParametersModel(BaseModel):
    seconds: int
    size: str
    model: str


class VideoRecordModel(BaseModel):
    job_id: str
    local_id: str
    prompt: str
    provider: str
    parameters: VideoParametersModel
    created_at: int
    expires_at: int
    is_expired: bool
    remix_count: int = 0
    remixed_from: Optional[str] = None


class HistoryResponse(BaseModel):
    videos: list[VideoRecordModel] = Field(default_factory=list)


class DeleteHistoryResponse(BaseModel):
    local_id: str
    deleted: bool


class PruneHistoryResponse(BaseModel):
    removed: int
    local_ids: list[str] = Field(default_factory=list)


class RedisDependencyStatus(BaseModel):
    ok: bool
    error: str = ""


class MediaEngineDependencyStatus(BaseModel):
    ok: bool
    ffmpeg: str
    ffprobe: str


class HealthDepsResponse(BaseModel):
    ok: bool
    redis: RedisDependencyStatus
    media: MediaEngineDependencyStatus
