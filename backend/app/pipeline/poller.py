from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from tenacity import (
    RetryError,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    stop_any,
    stop_when_event_set,
    wait_fixed,
)

from backend.app.config import settings
from backend.app.errors import GenerationFailed, GenerationTimeout, PipelineCancelled
from backend.app.provider.client import ProviderClient
from backend.app.provider.models import FAILED, GenerationJob

ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class PollPolicy:
    """How long to keep asking the provider about one job.

    ``max_attempts`` and ``deadline_s`` are optional ceilings; with both unset
    the poller waits for a terminal status indefinitely.
    """

    interval_s: float = 2.0
    max_attempts: int | None = None
    deadline_s: float | None = None

    @classmethod
    def from_settings(cls) -> "PollPolicy":
        return cls(
            interval_s=settings.poll_interval_s,
            max_attempts=settings.poll_max_attempts or None,
            deadline_s=settings.poll_deadline_s or None,
        )


def _stop_condition(policy: PollPolicy, cancel_event: threading.Event | None):
    conditions = []
    if policy.max_attempts:
        conditions.append(stop_after_attempt(policy.max_attempts))
    if policy.deadline_s:
        conditions.append(stop_after_delay(policy.deadline_s))
    if cancel_event is not None:
        conditions.append(stop_when_event_set(cancel_event))
    return stop_any(*conditions)


def poll_until_complete(
    client: ProviderClient,
    job_id: str,
    on_progress: ProgressCallback | None = None,
    *,
    policy: PollPolicy | None = None,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], object] | None = None,
) -> GenerationJob:
    policy = policy or PollPolicy.from_settings()
    if sleep is None:
        sleep = cancel_event.wait if cancel_event is not None else time.sleep

    def _tick() -> GenerationJob:
        if cancel_event is not None and cancel_event.is_set():
            raise PipelineCancelled(f"Polling cancelled for job {job_id}")
        job = client.status(job_id)
        if on_progress is not None and job.progress is not None:
            on_progress(job.progress)
        if job.status == FAILED:
            raise GenerationFailed(job.error_message or "Video generation failed", job_id=job_id)
        return job

    retrying = Retrying(
        retry=retry_if_result(lambda job: not job.is_terminal),
        wait=wait_fixed(policy.interval_s),
        stop=_stop_condition(policy, cancel_event),
        sleep=sleep,
        reraise=True,
    )
    try:
        job = retrying(_tick)
    except RetryError as exc:
        if cancel_event is not None and cancel_event.is_set():
            raise PipelineCancelled(f"Polling cancelled for job {job_id}") from exc
        attempts = exc.last_attempt.attempt_number
        raise GenerationTimeout(
            f"Job {job_id} did not finish after {attempts} status checks",
            job_id=job_id,
        ) from exc
    print(f"[Poller] job {job_id} completed")
    return job
