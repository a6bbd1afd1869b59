from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

from backend.app.errors import ValidationError
from backend.app.pipeline.models import VideoMetadata, is_video_expired
from backend.app.pipeline.utils import atomic_write_json, ensure_dir, now_ms, utc_now_iso

SCHEMA_VERSION = "1.0.0"

# One writer at a time per process; every mutation is a full read-modify-write.
_HISTORY_LOCK = threading.RLock()


def history_path(data_dir: str) -> Path:
    return Path(data_dir) / "history" / "videos.json"


def run_dir(data_dir: str, run_id: str) -> Path:
    return Path(data_dir) / "runs" / run_id


def run_json_path(data_dir: str, run_id: str) -> Path:
    return run_dir(data_dir, run_id) / "run.json"


def run_log_path(data_dir: str, run_id: str) -> Path:
    return run_dir(data_dir, run_id) / "logs" / "run.log"


def final_video_path(data_dir: str, run_id: str) -> Path:
    return run_dir(data_dir, run_id) / "final.mp4"


def _default_history() -> dict[str, Any]:
    return {"schema_version": SCHEMA_VERSION, "updated_at": utc_now_iso(), "videos": []}


def _load_raw(path: Path) -> dict[str, Any]:
    if not path.exists():
        return _default_history()
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict) or not isinstance(data.get("videos"), list):
        return _default_history()
    return data


def _save_raw(path: Path, data: dict[str, Any]) -> None:
    ensure_dir(path.parent)
    data["updated_at"] = utc_now_iso()
    atomic_write_json(path, data)


def _serialize(record: VideoMetadata) -> dict[str, Any]:
    data = record.to_dict()
    # Expiry is derived on read.
    data.pop("is_expired", None)
    data.pop("expires_at", None)
    return data


class VideoHistory:
    """Append-only log of finished generations kept under ``<data_dir>/history``.

    Records can be appended or deleted; the parent ``remix_count`` bump made by
    ``append_remix`` is the only in-place change.
    """

    def __init__(self, data_dir: str) -> None:
        self.data_dir = data_dir
        self.path = history_path(data_dir)

    def _records(self) -> list[VideoMetadata]:
        raw = _load_raw(self.path)
        return [VideoMetadata.from_dict(item) for item in raw["videos"] if isinstance(item, dict)]

    def list(self) -> list[VideoMetadata]:
        with _HISTORY_LOCK:
            return self._records()

    def get(self, job_id: str) -> VideoMetadata | None:
        for record in self.list():
            if record.job_id == job_id:
                return record
        return None

    def append(self, record: VideoMetadata) -> VideoMetadata:
        with _HISTORY_LOCK:
            raw = _load_raw(self.path)
            if any(str(item.get("local_id")) == record.local_id for item in raw["videos"] if isinstance(item, dict)):
                raise ValueError(f"duplicate history local_id: {record.local_id}")
            raw["videos"].append(_serialize(record))
            _save_raw(self.path, raw)
        return record

    def delete(self, local_id: str) -> bool:
        with _HISTORY_LOCK:
            raw = _load_raw(self.path)
            kept = [item for item in raw["videos"] if not (isinstance(item, dict) and str(item.get("local_id")) == local_id)]
            if len(kept) == len(raw["videos"]):
                return False
            raw["videos"] = kept
            _save_raw(self.path, raw)
            return True

    def append_remix(self, record: VideoMetadata, parent_job_id: str) -> VideoMetadata:
        """Store a remix and bump its parent's ``remix_count`` in one write.

        Raises ``ValidationError`` and writes nothing when the parent is gone.
        """
        with _HISTORY_LOCK:
            raw = _load_raw(self.path)
            items = [item for item in raw["videos"] if isinstance(item, dict)]
            parent = next((item for item in items if str(item.get("job_id")) == parent_job_id), None)
            if parent is None:
                raise ValidationError(f"Parent video {parent_job_id} is no longer in history")
            if any(str(item.get("local_id")) == record.local_id for item in items):
                raise ValueError(f"duplicate history local_id: {record.local_id}")
            parent["remix_count"] = VideoMetadata.from_dict(parent).remix_count + 1
            raw["videos"].append(_serialize(record))
            _save_raw(self.path, raw)
        return record

    def prune_expired(self, at_ms: int | None = None) -> list[VideoMetadata]:
        current = now_ms() if at_ms is None else at_ms
        with _HISTORY_LOCK:
            raw = _load_raw(self.path)
            kept: list[dict[str, Any]] = []
            removed: list[VideoMetadata] = []
            for item in raw["videos"]:
                if not isinstance(item, dict):
                    continue
                record = VideoMetadata.from_dict(item)
                if is_video_expired(record, current):
                    removed.append(record)
                else:
                    kept.append(item)
            if removed:
                raw["videos"] = kept
                _save_raw(self.path, raw)
        return removed
