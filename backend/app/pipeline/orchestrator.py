from __future__ import annotations

import threading
import uuid
from typing import Any, Callable, Sequence

from backend.app.errors import PipelineError, ValidationError
from backend.app.pipeline.concat import MediaEngine, get_media_engine
from backend.app.pipeline.frames import extract_last_frame, fit_image_to_size, parse_size
from backend.app.pipeline.models import (
    FAILED,
    RUNNING,
    SUCCEEDED,
    PipelineResult,
    RunState,
    SegmentRequest,
    VideoMetadata,
    VideoParameters,
)
from backend.app.pipeline.poller import PollPolicy, poll_until_complete
from backend.app.pipeline.segments import (
    Segment,
    attach_job,
    complete_segment,
    fail_segment,
    start_segment,
    update_progress,
)
from backend.app.pipeline.utils import now_ms
from backend.app.provider.client import ProviderClient, provider_client_for, validate_seconds
from backend.app.provider.config import ProviderConfig, SelfHostedProvider

# Share of overall progress spent generating; concatenation fills the rest.
GENERATION_BAND = 80

SegmentProgressCallback = Callable[[int, int], None]
OverallProgressCallback = Callable[[int], None]
StateCallback = Callable[[RunState], None]


def overall_progress(index: int, total: int, segment_progress: int) -> int:
    band = GENERATION_BAND / total
    return int(index * band + (max(0, min(100, segment_progress)) / 100) * band)


def concat_progress(progress: int) -> int:
    return int(GENERATION_BAND + max(0, min(100, progress)) * (100 - GENERATION_BAND) / 100)


def _emit(callback: Callable[..., None] | None, *args: Any) -> None:
    if callback is not None:
        callback(*args)


def segment_error(exc: BaseException, index: int | None) -> PipelineError:
    """Attach the failing segment index, wrapping anything outside the taxonomy."""
    if isinstance(exc, PipelineError):
        if exc.segment_index is None:
            exc.segment_index = index
        return exc
    return PipelineError(str(exc) or exc.__class__.__name__, segment_index=index)


def supports_frame_pair(provider_config: ProviderConfig, client: ProviderClient | None = None) -> bool:
    if client is not None:
        return client.supports_frame_pair
    return isinstance(provider_config, SelfHostedProvider)


def build_segments(requests: Sequence[SegmentRequest]) -> list[Segment]:
    if not requests:
        raise ValidationError("At least one segment is required")

    segments: list[Segment] = []
    for idx, req in enumerate(requests):
        prompt = (req.prompt or "").strip()
        if not prompt:
            raise ValidationError(f"Missing required fields: prompt (segment {idx})")
        seconds = validate_seconds(req.seconds)
        parse_size(req.size)
        if not (req.model or "").strip():
            raise ValidationError(f"Missing required fields: model (segment {idx})")
        segments.append(Segment(index=idx, prompt=prompt, seconds=seconds, size=req.size, model=req.model))

    sizes = {seg.size for seg in segments}
    models = {seg.model for seg in segments}
    if len(sizes) > 1 or len(models) > 1:
        raise ValidationError("All segments of a run must share the same size and model")
    return segments


def reference_images(
    index: int,
    total: int,
    frame_pair: bool,
    first_frame: bytes | None,
    last_frame: bytes | None,
    carried_frame: bytes | None,
) -> dict[str, bytes | None]:
    """Submit kwargs carrying the reference imagery for segment ``index``.

    A frame carried from the previous segment always wins over the caller's
    first frame. The caller's last frame only ever goes to the final segment.
    """
    start = carried_frame if index > 0 else first_frame
    if not frame_pair:
        return {"reference_image": start}
    refs: dict[str, bytes | None] = {"first_frame": start}
    if index == total - 1 and last_frame:
        refs["last_frame"] = last_frame
    return refs


def generate_segment(
    client: ProviderClient,
    segment: Segment,
    *,
    refs: dict[str, bytes | None] | None = None,
    remix_of: str | None = None,
    poll_policy: PollPolicy | None = None,
    cancel_event: threading.Event | None = None,
    on_update: Callable[[Segment], None] | None = None,
) -> tuple[Segment, bytes]:
    """Submit one segment, wait for it and download the result.

    ``on_update`` receives every intermediate segment value; the returned
    segment is still ``generating``; callers complete it with the media.
    """
    job = client.submit(
        segment.prompt,
        segment.seconds,
        segment.size,
        segment.model,
        remix_of=remix_of,
        **(refs or {}),
    )
    current = attach_job(segment, job.id)
    _emit(on_update, current)

    def _on_progress(progress: int) -> None:
        nonlocal current
        current = update_progress(current, progress)
        _emit(on_update, current)

    poll_until_complete(client, job.id, _on_progress, policy=poll_policy, cancel_event=cancel_event)
    media = client.fetch_content(job.id)
    print(f"[Pipeline] segment {segment.index} downloaded ({len(media)} bytes, job {job.id})")
    return current, media


def new_record(
    segment: Segment,
    job_id: str,
    provider_config: ProviderConfig,
    created_at_ms: int,
    remixed_from: str | None = None,
) -> VideoMetadata:
    return VideoMetadata(
        job_id=job_id,
        local_id=uuid.uuid4().hex,
        prompt=segment.prompt,
        provider=provider_config.kind,
        parameters=VideoParameters(seconds=segment.seconds, size=segment.size, model=segment.model),
        created_at_ms=created_at_ms,
        remixed_from=remixed_from,
    )


def run_pipeline(
    requests: Sequence[SegmentRequest],
    provider_config: ProviderConfig,
    credential: str,
    *,
    first_frame: bytes | None = None,
    last_frame: bytes | None = None,
    on_segment_progress: SegmentProgressCallback | None = None,
    on_overall_progress: OverallProgressCallback | None = None,
    history: Any | None = None,
    engine: MediaEngine | None = None,
    client: ProviderClient | None = None,
    poll_policy: PollPolicy | None = None,
    cancel_event: threading.Event | None = None,
    on_state: StateCallback | None = None,
) -> PipelineResult:
    """
    Generate every requested segment in order and assemble one video.

    Segment ``i + 1`` is seeded with the last frame of segment ``i``. One
    history record is appended as soon as each segment finishes, so a failed
    run leaves records for exactly the segments that completed before it.
    The first failure aborts the run; the raised error carries the index of
    the failing segment.
    """
    segments = build_segments(requests)
    total = len(segments)
    frame_pair = supports_frame_pair(provider_config, client)
    if last_frame and not frame_pair:
        raise ValidationError("A last frame is only supported by self-hosted providers")

    size = segments[0].size
    caller_first = fit_image_to_size(first_frame, size) if first_frame else None
    caller_last = fit_image_to_size(last_frame, size) if last_frame else None

    client = client or provider_client_for(provider_config, credential)
    if total > 1:
        engine = engine or get_media_engine()

    records: list[VideoMetadata] = []
    index: int | None = 0
    print(f"[Pipeline] run start: {total} segments, {size}, {segments[0].model} ({provider_config.kind})")

    try:
        for i in range(total):
            index = i
            _emit(on_state, RunState(phase=RUNNING, segment_index=i))
            segments[i] = start_segment(segments[i])
            _emit(on_segment_progress, i, 0)
            _emit(on_overall_progress, overall_progress(i, total, 0))

            carried = None
            if i > 0:
                carried = extract_last_frame(
                    segments[i - 1].media or b"",
                    ffmpeg_bin=engine.ffmpeg_bin,
                    ffprobe_bin=engine.ffprobe_bin,
                    scratch_dir=engine.scratch_dir,
                )
            refs = reference_images(i, total, frame_pair, caller_first, caller_last, carried)

            def _on_update(seg: Segment, i: int = i) -> None:
                changed = seg.progress != segments[i].progress
                segments[i] = seg
                if changed:
                    _emit(on_segment_progress, i, seg.progress)
                    _emit(on_overall_progress, overall_progress(i, total, seg.progress))

            segment, media = generate_segment(
                client,
                segments[i],
                refs=refs,
                poll_policy=poll_policy,
                cancel_event=cancel_event,
                on_update=_on_update,
            )
            created_at_ms = now_ms()
            record = new_record(segment, segment.job_id or "", provider_config, created_at_ms)
            if history is not None:
                history.append(record)
            records.append(record)
            segments[i] = complete_segment(segment, media, created_at_ms)
            _emit(on_segment_progress, i, 100)
            _emit(on_overall_progress, overall_progress(i, total, 100))
            print(f"[Pipeline] segment {i + 1}/{total} complete")

        index = None
        if total == 1:
            final = segments[0].media or b""
        else:
            final = engine.concatenate(
                [seg.media or b"" for seg in segments],
                on_progress=lambda p: _emit(on_overall_progress, concat_progress(p)),
            )
    except Exception as exc:
        error = segment_error(exc, index)
        if index is not None and not segments[index].is_terminal:
            segments[index] = fail_segment(segments[index], error.message)
        print(f"[Pipeline] run failed: {error}")
        _emit(on_state, RunState(phase=FAILED, segment_index=index, error=error.message))
        if error is exc:
            raise
        raise error from exc

    _emit(on_overall_progress, 100)
    _emit(on_state, RunState(phase=SUCCEEDED))
    print(f"[Pipeline] run complete: {len(final)} bytes")
    return PipelineResult(media=final, segments=segments, records=records)
