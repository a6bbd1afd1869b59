from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Callable

from backend.app.errors import ExpiredError, ValidationError
from backend.app.pipeline.frames import fit_image_to_size
from backend.app.pipeline.models import FAILED, RUNNING, SUCCEEDED, PipelineResult, RunState, VideoMetadata
from backend.app.pipeline.orchestrator import generate_segment, new_record, segment_error
from backend.app.pipeline.poller import PollPolicy
from backend.app.pipeline.segments import Segment, complete_segment, fail_segment, start_segment
from backend.app.pipeline.utils import now_ms
from backend.app.provider.client import ProviderClient, provider_client_for
from backend.app.provider.config import ProviderConfig


def _iso_ms(value_ms: int) -> str:
    return datetime.fromtimestamp(value_ms / 1000, tz=timezone.utc).isoformat()


def ensure_remixable(parent: VideoMetadata, at_ms: int | None = None) -> None:
    if parent.is_expired(at_ms):
        raise ExpiredError(
            f"Video {parent.job_id} expired at {_iso_ms(parent.expires_at_ms)} and can no longer be remixed",
            job_id=parent.job_id,
        )


def run_remix(
    parent: VideoMetadata,
    new_prompt: str,
    provider_config: ProviderConfig,
    credential: str,
    *,
    history: Any | None = None,
    reference_image: bytes | None = None,
    client: ProviderClient | None = None,
    poll_policy: PollPolicy | None = None,
    on_progress: Callable[[int], None] | None = None,
    cancel_event: threading.Event | None = None,
    on_state: Callable[[RunState], None] | None = None,
    at_ms: int | None = None,
) -> PipelineResult:
    """
    Generate one new segment from a finished job and a new prompt.

    Seconds, size and model are inherited from the parent. Nothing reaches the
    provider when the parent is expired or unknown to the history store.
    """
    ensure_remixable(parent, at_ms)
    prompt = (new_prompt or "").strip()
    if not prompt:
        raise ValidationError("Missing required fields: prompt")
    if history is not None:
        stored = history.get(parent.job_id)
        if stored is None:
            raise ValidationError(f"Parent video {parent.job_id} is not in history")
        parent = stored
        ensure_remixable(parent, at_ms)

    params = parent.parameters
    reference = fit_image_to_size(reference_image, params.size) if reference_image else None
    client = client or provider_client_for(provider_config, credential)

    print(f"[Remix] remixing {parent.job_id} ({params.seconds}s, {params.size}, {params.model})")
    segment = start_segment(
        Segment(index=0, prompt=prompt, seconds=params.seconds, size=params.size, model=params.model)
    )
    if on_state is not None:
        on_state(RunState(phase=RUNNING, segment_index=0))

    def _on_update(seg: Segment) -> None:
        nonlocal segment
        segment = seg
        if on_progress is not None:
            on_progress(seg.progress)

    try:
        segment, media = generate_segment(
            client,
            segment,
            refs={"reference_image": reference},
            remix_of=parent.job_id,
            poll_policy=poll_policy,
            cancel_event=cancel_event,
            on_update=_on_update,
        )
        created_at_ms = now_ms()
        record = new_record(segment, segment.job_id or "", provider_config, created_at_ms, remixed_from=parent.job_id)
        if history is not None:
            history.append_remix(record, parent.job_id)
        segment = complete_segment(segment, media, created_at_ms)
    except Exception as exc:
        error = segment_error(exc, 0)
        if not segment.is_terminal:
            segment = fail_segment(segment, error.message)
        print(f"[Remix] failed: {error}")
        if on_state is not None:
            on_state(RunState(phase=FAILED, segment_index=0, error=error.message))
        if error is exc:
            raise
        raise error from exc

    if on_progress is not None:
        on_progress(100)
    if on_state is not None:
        on_state(RunState(phase=SUCCEEDED))
    print(f"[Remix] complete: {record.job_id} remixed from {parent.job_id}")
    return PipelineResult(media=media, segments=[segment], records=[record])
