from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from rq import get_current_job

from backend.app.config import settings
from backend.app.errors import PipelineError, ValidationError
from backend.app.pipeline.models import PipelineResult, RunState, SegmentRequest
from backend.app.pipeline.orchestrator import run_pipeline
from backend.app.pipeline.remix import run_remix
from backend.app.pipeline.utils import append_log, atomic_write_bytes, atomic_write_json, ensure_dir, utc_now_iso
from backend.app.provider.config import parse_provider_config, provider_config_to_dict
from backend.app.storage import VideoHistory, final_video_path, run_dir, run_json_path, run_log_path

GENERATION_KIND = "generation"
REMIX_KIND = "remix"


def _decode_image(payload: dict[str, Any], key: str) -> bytes | None:
    raw = payload.get(key)
    if not raw:
        return None
    try:
        return base64.b64decode(str(raw), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"{key} is not valid base64") from exc


def segment_requests_from_payload(payload: dict[str, Any]) -> list[SegmentRequest]:
    items = payload.get("segments")
    if not isinstance(items, list) or not items:
        raise ValidationError("At least one segment is required")
    requests: list[SegmentRequest] = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError("Each segment must be an object")
        requests.append(SegmentRequest(
            prompt=str(item.get("prompt") or ""),
            seconds=item.get("seconds"),
            size=str(item.get("size") or settings.default_video_size),
            model=str(item.get("model") or settings.default_video_model),
        ))
    return requests


def _publish(**meta: Any) -> None:
    job = get_current_job()
    if job is None:
        return
    job.meta.update(meta)
    job.save_meta()


class RunRecorder:
    """Keeps ``run.json``, the run log and the rq job meta in step for one run."""

    def __init__(self, data_dir: str, run_id: str, kind: str, payload: dict[str, Any]) -> None:
        self.data_dir = data_dir
        self.run_id = run_id
        self.log_path = run_log_path(data_dir, run_id)
        ensure_dir(run_dir(data_dir, run_id))
        self.doc: dict[str, Any] = {
            "run_id": run_id,
            "kind": kind,
            "status": "queued",
            "progress": 0,
            "created_at": utc_now_iso(),
            "updated_at": utc_now_iso(),
            "provider": payload.get("provider"),
            "request": {k: v for k, v in payload.items() if k not in ("credential", "provider") and not k.endswith("_b64")},
            "state": RunState().to_dict(),
            "segments": [],
            "records": [],
            "error": None,
            "final_mp4_path": None,
        }
        self.save()

    def save(self) -> None:
        self.doc["updated_at"] = utc_now_iso()
        atomic_write_json(run_json_path(self.data_dir, self.run_id), self.doc)

    def log(self, line: str) -> None:
        append_log(self.log_path, line)

    def on_state(self, state: RunState) -> None:
        self.doc["status"] = state.phase
        self.doc["state"] = state.to_dict()
        self.save()
        self.log(f"state {state.phase} segment={state.segment_index} error={state.error or '-'}")
        _publish(status=state.phase, segment_index=state.segment_index)

    def on_progress(self, progress: int) -> None:
        if progress == self.doc["progress"]:
            return
        self.doc["progress"] = progress
        _publish(progress=progress)

    def on_segment_progress(self, index: int, progress: int) -> None:
        _publish(segment_index=index, segment_progress=progress)

    def succeed(self, result: PipelineResult) -> dict[str, Any]:
        final_mp4 = final_video_path(self.data_dir, self.run_id)
        atomic_write_bytes(final_mp4, result.media)
        self.doc.update({
            "status": "succeeded",
            "progress": 100,
            "segments": [seg.to_dict() for seg in result.segments],
            "records": [rec.to_dict() for rec in result.records],
            "final_mp4_path": str(final_mp4),
        })
        self.save()
        self.log(f"export complete: {final_mp4}")
        _publish(progress=100, status="succeeded")
        return {
            "ok": True,
            "run_id": self.run_id,
            "final_mp4": str(final_mp4),
            "job_ids": [rec.job_id for rec in result.records],
        }

    def fail(self, exc: Exception) -> None:
        self.doc["status"] = "failed"
        self.doc["error"] = {
            "type": exc.__class__.__name__,
            "message": str(exc),
            "segment_index": getattr(exc, "segment_index", None),
        }
        self.save()
        self.log(f"run failed: {exc}")
        _publish(status="failed", error=str(exc))


def run_generation_job(run_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    """
    Worker entry point for a queued multi-segment run.

    The payload carries the provider config, the credential, the segment
    requests and optional base64 first/last frames. The finished video is
    written to ``runs/<run_id>/final.mp4``.
    """
    data_dir = settings.data_dir
    recorder = RunRecorder(data_dir, run_id, GENERATION_KIND, payload)
    recorder.log("generation run start")
    try:
        provider_config = parse_provider_config(payload.get("provider"))
        recorder.doc["provider"] = provider_config_to_dict(provider_config)
        result = run_pipeline(
            segment_requests_from_payload(payload),
            provider_config,
            str(payload.get("credential") or ""),
            first_frame=_decode_image(payload, "first_frame_b64"),
            last_frame=_decode_image(payload, "last_frame_b64"),
            on_segment_progress=recorder.on_segment_progress,
            on_overall_progress=recorder.on_progress,
            history=VideoHistory(data_dir),
            on_state=recorder.on_state,
        )
    except PipelineError as exc:
        recorder.fail(exc)
        raise
    print(f"[Worker] generation run {run_id} complete")
    return recorder.succeed(result)


def run_remix_job(run_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Worker entry point for a queued remix of a prior job."""
    data_dir = settings.data_dir
    recorder = RunRecorder(data_dir, run_id, REMIX_KIND, payload)
    recorder.log(f"remix run start: parent={payload.get('parent_job_id')}")
    history = VideoHistory(data_dir)
    try:
        provider_config = parse_provider_config(payload.get("provider"))
        recorder.doc["provider"] = provider_config_to_dict(provider_config)
        parent_job_id = str(payload.get("parent_job_id") or "")
        parent = history.get(parent_job_id)
        if parent is None:
            raise ValidationError(f"Parent video {parent_job_id} is not in history")
        result = run_remix(
            parent,
            str(payload.get("prompt") or ""),
            provider_config,
            str(payload.get("credential") or ""),
            history=history,
            reference_image=_decode_image(payload, "reference_image_b64"),
            on_progress=recorder.on_progress,
            on_state=recorder.on_state,
        )
    except PipelineError as exc:
        recorder.fail(exc)
        raise
    print(f"[Worker] remix run {run_id} complete")
    return recorder.succeed(result)


def load_run(data_dir: str, run_id: str) -> dict[str, Any]:
    path = run_json_path(data_dir, run_id)
    if not path.exists():
        raise FileNotFoundError(f"Run not found: {run_id}")
    return json.loads(path.read_text(encoding="utf-8"))
