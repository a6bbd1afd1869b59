from __future__ import annotations

import base64
import binascii
import re
import secrets

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import FileResponse

from backend.app.config import settings
from backend.app.errors import ExpiredError, PipelineError, PlanningError, ProviderError, ValidationError
from backend.app.models import (
    CreateRunRequest,
    DeleteHistoryResponse,
    HealthDepsResponse,
    HistoryResponse,
    ImageCandidate,
    ImageRequest,
    ImageResponse,
    JobStatusResponse,
    PlanRequest,
    PlanResponse,
    ProviderConfigModel,
    PruneHistoryResponse,
    RemixRequest,
    RunQueueResponse,
)
from backend.app.jobs import fetch_job, get_queue, get_redis, job_progress, queue_name
from backend.app.pipeline.concat import get_media_engine
from backend.app.pipeline.orchestrator import build_segments, supports_frame_pair
from backend.app.pipeline.pipeline_main import run_generation_job, run_remix_job, segment_requests_from_payload
from backend.app.pipeline.planner import plan_segments
from backend.app.pipeline.remix import ensure_remixable
from backend.app.pipeline.utils import now_ms, utc_now_iso
from backend.app.provider.client import provider_client_for
from backend.app.provider.config import ProviderConfig, parse_provider_config, validate_credential
from backend.app.storage import VideoHistory, final_video_path

app = FastAPI(title="continuity-video-generator", version="0.1.0")

RUN_ID_RE = re.compile(r"^run_[0-9a-f]{8,32}$")


def _http_error(exc: PipelineError) -> HTTPException:
    if isinstance(exc, ExpiredError):
        return HTTPException(status_code=410, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, PlanningError):
        detail = {"error": str(exc), "expected": exc.expected, "actual": exc.actual}
        return HTTPException(status_code=422, detail=detail)
    if isinstance(exc, ProviderError):
        status = exc.status if exc.status is not None and 400 <= exc.status < 500 else 502
        return HTTPException(status_code=status, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _provider(body_provider: ProviderConfigModel, credential: str | None) -> tuple[ProviderConfig, str]:
    try:
        config = parse_provider_config(body_provider.model_dump())
        return config, validate_credential(config, credential)
    except PipelineError as exc:
        raise _http_error(exc) from exc


def _check_b64(value: str | None, field: str) -> None:
    if not value:
        return
    try:
        base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"{field} is not valid base64") from exc


def _history() -> VideoHistory:
    return VideoHistory(settings.data_dir)


def _iso_or_none(value: object) -> str | None:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return str(value.isoformat())
    return str(value)


def _enqueue_run(fn: object, run_type: str, payload: dict) -> RunQueueResponse:
    run_id = f"run_{secrets.token_hex(8)}"
    queued_at = utc_now_iso()
    q = get_queue()
    job = q.enqueue(
        fn,
        run_id,
        payload,
        job_timeout=getattr(settings, "job_timeout_s", 7200),
        meta={"run_id": run_id, "run_type": run_type, "queued_at": queued_at, "progress": 0},
    )
    return RunQueueResponse(
        job_id=job.id,
        run_id=run_id,
        run_type=run_type,
        queue_name=queue_name(),
        status_url=f"/jobs/{job.id}",
        video_url=f"/runs/{run_id}/video",
        queued_at=queued_at,
    )


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/health/deps", response_model=HealthDepsResponse)
def health_deps():
    redis_ok = False
    redis_error = ""
    try:
        redis_ok = bool(get_redis().ping())
    except Exception as exc:
        redis_error = str(exc)

    engine = get_media_engine()
    media_ok = engine.ready()

    return {
        "ok": redis_ok and media_ok,
        "redis": {"ok": redis_ok, "error": redis_error},
        "media": {"ok": media_ok, "ffmpeg": engine.ffmpeg_bin, "ffprobe": engine.ffprobe_bin},
    }


@app.post("/plan", response_model=PlanResponse)
def plan(body: PlanRequest, x_api_key: str | None = Header(default=None)):
    config, credential = _provider(body.provider, x_api_key)
    try:
        planned = plan_segments(
            body.base_prompt,
            body.seconds_per_segment,
            body.segment_count,
            config,
            credential,
        )
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return PlanResponse(segments=[seg.to_dict() for seg in planned])


@app.post("/runs", response_model=RunQueueResponse)
def create_run(body: CreateRunRequest, x_api_key: str | None = Header(default=None)):
    config, credential = _provider(body.provider, x_api_key)
    _check_b64(body.first_frame_b64, "first_frame_b64")
    _check_b64(body.last_frame_b64, "last_frame_b64")

    payload = body.model_dump()
    try:
        build_segments(segment_requests_from_payload(payload))
        if body.last_frame_b64 and not supports_frame_pair(config):
            raise ValidationError("A last frame is only supported by self-hosted providers")
    except PipelineError as exc:
        raise _http_error(exc) from exc

    payload["credential"] = credential
    return _enqueue_run(run_generation_job, "generation", payload)


@app.post("/remix", response_model=RunQueueResponse)
def create_remix(body: RemixRequest, x_api_key: str | None = Header(default=None)):
    config, credential = _provider(body.provider, x_api_key)
    _check_b64(body.reference_image_b64, "reference_image_b64")

    parent = _history().get(body.parent_job_id)
    if parent is None:
        raise HTTPException(status_code=404, detail="Parent video not found")
    try:
        ensure_remixable(parent, now_ms())
        if not body.prompt.strip():
            raise ValidationError("Missing required fields: prompt")
    except PipelineError as exc:
        raise _http_error(exc) from exc

    payload = body.model_dump()
    payload["credential"] = credential
    return _enqueue_run(run_remix_job, "remix", payload)


@app.post("/images", response_model=ImageResponse)
def generate_images(body: ImageRequest, x_api_key: str | None = Header(default=None)):
    config, credential = _provider(body.provider, x_api_key)
    size = body.size or getattr(settings, "default_video_size", "1280x720")
    try:
        images = provider_client_for(config, credential).generate_images(body.prompt, size, count=body.count)
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return ImageResponse(images=[
        ImageCandidate(b64_json=img.b64_json, url=img.url, revised_prompt=img.revised_prompt) for img in images
    ])


@app.get("/history", response_model=HistoryResponse)
def list_history():
    at_ms = now_ms()
    return {"videos": [record.to_dict(at_ms) for record in _history().list()]}


@app.delete("/history/{local_id}", response_model=DeleteHistoryResponse)
def delete_history(local_id: str):
    if not _history().delete(local_id):
        raise HTTPException(status_code=404, detail="History record not found")
    return DeleteHistoryResponse(local_id=local_id, deleted=True)


@app.post("/history/prune", response_model=PruneHistoryResponse)
def prune_history():
    removed = _history().prune_expired(now_ms())
    return PruneHistoryResponse(removed=len(removed), local_ids=[rec.local_id for rec in removed])


@app.get("/runs/{run_id}/video")
def run_video(run_id: str):
    if not RUN_ID_RE.match(run_id):
        raise HTTPException(status_code=404, detail="Run not found")
    path = final_video_path(settings.data_dir, run_id)
    if not path.exists():
        raise HTTPException(status_code=404, detail="Video not ready")
    return FileResponse(str(path), media_type="video/mp4", filename=f"{run_id}.mp4")


@app.get("/jobs/{job_id}", response_model=JobStatusResponse)
def job_status(job_id: str):
    try:
        job = fetch_job(job_id)
    except Exception:
        raise HTTPException(status_code=404, detail="Job not found")

    status = "queued"
    if job.is_started:
        status = "started"
    if job.is_finished:
        status = "finished"
    if job.is_failed:
        status = "failed"

    meta = job.meta if isinstance(getattr(job, "meta", None), dict) else {}
    progress = job_progress(job)
    err = None
    if job.is_failed:
        err = progress["error"] or (str(job.exc_info)[-2000:] if job.exc_info else "failed")

    run_type_raw = str(meta.get("run_type")) if meta.get("run_type") else None
    run_type = run_type_raw if run_type_raw in {"generation", "remix"} else None
    return JobStatusResponse(
        job_id=job.id,
        status=status,
        progress=progress["progress"],
        segment_index=progress["segment_index"],
        result=job.result,
        error=err,
        queue_name=str(getattr(job, "origin", "") or queue_name()),
        run_type=run_type,
        run_id=str(meta.get("run_id")) if meta.get("run_id") else None,
        enqueued_at=_iso_or_none(getattr(job, "enqueued_at", None)),
        started_at=_iso_or_none(getattr(job, "started_at", None)),
        ended_at=_iso_or_none(getattr(job, "ended_at", None)),
        queued_at=str(meta.get("queued_at")) if meta.get("queued_at") else None,
    )
