from __future__ import annotations

from typing import Any

from redis import Redis
from rq import Queue
from rq.job import Job

from backend.app.config import settings


def queue_name() -> str:
    return (settings.rq_queue or "").strip() or "default"


def get_redis() -> Redis:
    return Redis.from_url(settings.redis_url)


def get_queue() -> Queue:
    return Queue(queue_name(), connection=get_redis())


def fetch_job(job_id: str) -> Job:
    return Job.fetch(job_id, connection=get_redis())


def job_progress(job: Job) -> dict[str, Any]:
    """Progress fields a run publishes into its job meta while executing."""
    meta = job.meta if isinstance(getattr(job, "meta", None), dict) else {}
    segment_index = meta.get("segment_index")
    return {
        "progress": int(meta.get("progress") or 0),
        "segment_index": segment_index if isinstance(segment_index, int) else None,
        "error": str(meta.get("error")) if meta.get("error") else None,
    }
