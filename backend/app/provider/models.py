from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any

QUEUED = "queued"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL_STATUSES = {COMPLETED, FAILED}

_STATUS_ALIASES = {
    "queued": QUEUED,
    "pending": QUEUED,
    "preprocessing": IN_PROGRESS,
    "running": IN_PROGRESS,
    "processing": IN_PROGRESS,
    "in_progress": IN_PROGRESS,
    "completed": COMPLETED,
    "succeeded": COMPLETED,
    "failed": FAILED,
    "cancelled": FAILED,
    "canceled": FAILED,
    "expired": FAILED,
    "error": FAILED,
}


def normalize_job_status(value: Any) -> str:
    raw = str(value or "").strip().lower()
    if not raw:
        return QUEUED
    status = _STATUS_ALIASES.get(raw)
    if status is None:
        print(f"[Provider] unrecognised job status {raw!r}; treating as in progress")
        return IN_PROGRESS
    return status


def _progress_or_none(value: Any) -> int | None:
    if value is None:
        return None
    try:
        progress = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return max(0, min(100, progress))


def _error_message(value: Any) -> str | None:
    if isinstance(value, dict):
        message = value.get("message")
        return str(message) if message else None
    if isinstance(value, str) and value.strip():
        return value
    return None


@dataclass(frozen=True)
class GenerationJob:
    id: str
    status: str = QUEUED
    progress: int | None = None
    error_message: str | None = None
    remixed_from: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "GenerationJob":
        job_id = str(data.get("id") or "").strip()
        if not job_id:
            raise ValueError("provider response is missing a job id")
        remixed_from = data.get("remixed_from_video_id") or data.get("remixed_from")
        return cls(
            id=job_id,
            status=normalize_job_status(data.get("status")),
            progress=_progress_or_none(data.get("progress")),
            error_message=_error_message(data.get("error")),
            remixed_from=str(remixed_from) if remixed_from else None,
        )


@dataclass(frozen=True)
class GeneratedImage:
    b64_json: str | None = None
    url: str | None = None
    revised_prompt: str | None = None

    def image_bytes(self) -> bytes | None:
        if not self.b64_json:
            return None
        return base64.b64decode(self.b64_json)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "GeneratedImage":
        return cls(
            b64_json=data.get("b64_json") or None,
            url=data.get("url") or None,
            revised_prompt=data.get("revised_prompt") or None,
        )
