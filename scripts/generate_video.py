from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from backend.app.config import settings
from backend.app.pipeline.models import PipelineResult, SegmentRequest
from backend.app.pipeline.orchestrator import run_pipeline
from backend.app.pipeline.planner import plan_segments
from backend.app.pipeline.remix import run_remix
from backend.app.pipeline.utils import atomic_write_bytes
from backend.app.provider.config import parse_provider_config
from backend.app.storage import VideoHistory


def _read_optional(path: str | None) -> bytes | None:
    if not path:
        return None
    p = Path(path).resolve()
    if not p.exists():
        raise FileNotFoundError(f"Missing image: {p}")
    return p.read_bytes()


def _provider_from_args(args: argparse.Namespace) -> dict:
    if args.provider == "hosted":
        return {"kind": "hosted", "base_url": args.base_url}
    return {
        "kind": "self_hosted",
        "endpoint": args.endpoint,
        "api_variant": args.api_variant,
        "api_version": args.api_version,
        "deployments": {
            "video": args.video_deployment,
            "planner": args.planner_deployment,
            "image": args.image_deployment,
        },
    }


def _print_progress(pct: int) -> None:
    print(f"[Progress] {pct}%")


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a continuous multi-segment video from a prompt")
    parser.add_argument("--prompt", required=True, help="Base prompt, or the new prompt when remixing")
    parser.add_argument("--segments", type=int, default=1, help="Number of segments to generate")
    parser.add_argument("--seconds", type=int, default=4, choices=[4, 8, 12])
    parser.add_argument("--size", default=settings.default_video_size)
    parser.add_argument("--model", default=settings.default_video_model)
    parser.add_argument("--plan", action="store_true", help="Split the prompt into segments with the planner")
    parser.add_argument("--first-frame", help="Image used as the opening frame")
    parser.add_argument("--last-frame", help="Image used as the closing frame (self-hosted only)")
    parser.add_argument("--remix-of", help="Job id from history to remix instead of generating")
    parser.add_argument("--provider", choices=["hosted", "self_hosted"], default="hosted")
    parser.add_argument("--base-url", default=settings.hosted_base_url)
    parser.add_argument("--endpoint", default="")
    parser.add_argument("--api-variant", choices=["v1", "deployments"], default="v1")
    parser.add_argument("--api-version", default=None)
    parser.add_argument("--video-deployment", default="")
    parser.add_argument("--planner-deployment", default="")
    parser.add_argument("--image-deployment", default="")
    parser.add_argument("--api-key", default=os.getenv("VIDEO_API_KEY", ""), help="Defaults to $VIDEO_API_KEY")
    parser.add_argument("--output", default="", help="Output MP4 path")
    args = parser.parse_args()

    provider_config = parse_provider_config(_provider_from_args(args))
    history = VideoHistory(settings.data_dir)

    if args.remix_of:
        parent = history.get(args.remix_of)
        if parent is None:
            raise RuntimeError(f"Job {args.remix_of} is not in history")
        result: PipelineResult = run_remix(
            parent,
            args.prompt,
            provider_config,
            args.api_key,
            history=history,
            reference_image=_read_optional(args.first_frame),
            on_progress=_print_progress,
        )
    else:
        if args.plan:
            planned = plan_segments(args.prompt, args.seconds, args.segments, provider_config, args.api_key)
            for seg in planned:
                print(f"[Plan] {seg.title}: {seg.prompt}")
            prompts = [seg.prompt for seg in planned]
        else:
            prompts = [args.prompt] * max(1, args.segments)
        requests = [SegmentRequest(prompt=p, seconds=args.seconds, size=args.size, model=args.model) for p in prompts]
        result = run_pipeline(
            requests,
            provider_config,
            args.api_key,
            first_frame=_read_optional(args.first_frame),
            last_frame=_read_optional(args.last_frame),
            on_overall_progress=_print_progress,
            history=history,
        )

    output = Path(args.output) if args.output else (
        Path(settings.data_dir) / "exports" / datetime.now().strftime("video_%Y%m%d_%H%M%S.mp4")
    )
    atomic_write_bytes(output.resolve(), result.media)

    summary = {
        "ok": True,
        "output": str(output.resolve()),
        "bytes": len(result.media),
        "segments": [seg.to_dict() for seg in result.segments],
        "job_ids": [rec.job_id for rec in result.records],
        "remixed_from": args.remix_of or None,
    }
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":
    main()
