from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

PENDING = "pending"
GENERATING = "generating"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL = {COMPLETED, FAILED}


class SegmentTransitionError(ValueError):
    pass


@dataclass(frozen=True)
class Segment:
    index: int
    prompt: str
    seconds: int
    size: str
    model: str
    status: str = PENDING
    progress: int = 0
    media: bytes | None = None
    job_id: str | None = None
    created_at_ms: int | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def to_dict(self) -> dict[str, Any]:
        # Media stays in memory; only its size is reported.
        return {
            "index": self.index,
            "prompt": self.prompt,
            "seconds": self.seconds,
            "size": self.size,
            "model": self.model,
            "status": self.status,
            "progress": self.progress,
            "job_id": self.job_id,
            "created_at": self.created_at_ms,
            "error": self.error,
            "media_bytes": len(self.media) if self.media is not None else 0,
        }


def _require_open(segment: Segment, action: str) -> None:
    if segment.is_terminal:
        raise SegmentTransitionError(f"cannot {action} segment {segment.index} in terminal status {segment.status}")


def start_segment(segment: Segment) -> Segment:
    _require_open(segment, "start")
    return replace(segment, status=GENERATING, progress=0)


def attach_job(segment: Segment, job_id: str) -> Segment:
    _require_open(segment, "attach a job to")
    return replace(segment, job_id=job_id)


def update_progress(segment: Segment, progress: int) -> Segment:
    _require_open(segment, "update progress of")
    return replace(segment, progress=max(0, min(100, int(progress))))


def complete_segment(segment: Segment, media: bytes, created_at_ms: int) -> Segment:
    _require_open(segment, "complete")
    return replace(segment, status=COMPLETED, progress=100, media=media, created_at_ms=created_at_ms, error=None)


def fail_segment(segment: Segment, error: str) -> Segment:
    _require_open(segment, "fail")
    return replace(segment, status=FAILED, error=error or "Failed to generate segment")
