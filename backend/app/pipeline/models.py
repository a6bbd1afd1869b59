from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from backend.app.pipeline.utils import now_ms

REMIX_WINDOW_MS = 24 * 60 * 60 * 1000


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except Exception:
        return default


def calculate_expires_at(created_at_ms: int) -> int:
    return created_at_ms + REMIX_WINDOW_MS


@dataclass(frozen=True)
class SegmentRequest:
    prompt: str
    seconds: int
    size: str
    model: str


@dataclass(frozen=True)
class PlannedSegment:
    title: str
    seconds: int
    prompt: str

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "seconds": self.seconds, "prompt": self.prompt}


@dataclass(frozen=True)
class VideoParameters:
    seconds: int
    size: str
    model: str

    def to_dict(self) -> dict[str, Any]:
        return {"seconds": self.seconds, "size": self.size, "model": self.model}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VideoParameters":
        return cls(
            seconds=_to_int(data.get("seconds"), 0),
            size=str(data.get("size") or ""),
            model=str(data.get("model") or ""),
        )


@dataclass(frozen=True)
class VideoMetadata:
    """History record for one finished generation.

    ``expires_at_ms`` always equals ``created_at_ms`` plus the remix window;
    whether a record is expired is computed at read time, never stored.
    """

    job_id: str
    local_id: str
    prompt: str
    provider: str
    parameters: VideoParameters
    created_at_ms: int
    remixed_from: str | None = None
    remix_count: int = 0

    @property
    def expires_at_ms(self) -> int:
        return calculate_expires_at(self.created_at_ms)

    def is_expired(self, at_ms: int | None = None) -> bool:
        return is_video_expired(self, at_ms)

    def to_dict(self, at_ms: int | None = None) -> dict[str, Any]:
        data: dict[str, Any] = {
            "job_id": self.job_id,
            "local_id": self.local_id,
            "prompt": self.prompt,
            "provider": self.provider,
            "parameters": self.parameters.to_dict(),
            "created_at": self.created_at_ms,
            "expires_at": self.expires_at_ms,
            "remix_count": self.remix_count,
            "is_expired": self.is_expired(at_ms),
        }
        if self.remixed_from:
            data["remixed_from"] = self.remixed_from
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VideoMetadata":
        # Stored expires_at / is_expired are ignored; both derive from created_at.
        remixed_from = data.get("remixed_from")
        return cls(
            job_id=str(data.get("job_id") or ""),
            local_id=str(data.get("local_id") or ""),
            prompt=str(data.get("prompt") or ""),
            provider=str(data.get("provider") or ""),
            parameters=VideoParameters.from_dict(dict(data.get("parameters") or {})),
            created_at_ms=_to_int(data.get("created_at"), 0),
            remixed_from=str(remixed_from) if remixed_from else None,
            remix_count=max(0, _to_int(data.get("remix_count"), 0)),
        )


def is_video_expired(record: VideoMetadata, at_ms: int | None = None) -> bool:
    current = now_ms() if at_ms is None else at_ms
    return current > record.expires_at_ms


IDLE = "idle"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"


@dataclass(frozen=True)
class RunState:
    phase: str = IDLE
    segment_index: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase, "segment_index": self.segment_index, "error": self.error}


@dataclass
class PipelineResult:
    media: bytes
    segments: list[Any] = field(default_factory=list)
    records: list[VideoMetadata] = field(default_factory=list)
