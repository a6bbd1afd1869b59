from __future__ import annotations

import json
import re
from functools import lru_cache
from typing import Any

from jsonschema import Draft202012Validator

from backend.app.errors import PlanningError, ValidationError
from backend.app.pipeline.models import PlannedSegment
from backend.app.provider.client import ProviderClient, provider_client_for, validate_seconds
from backend.app.provider.config import ProviderConfig

PLANNER_TEMPERATURE = 0.7

PLANNER_SYSTEM_INSTRUCTIONS = """You are a prompt director for a text-to-video model. Turn one base prompt into a sequence of shot prompts that play back as one continuous video.

Make every prompt concrete: name the subject, setting, camera move, lighting and mood with specific sensory detail. Keep each prompt cinematic and achievable within its duration.

Rules:
1) Return valid JSON only, with this exact shape:
   {
     "segments": [
       {"title": "Generation 1", "seconds": <int>, "prompt": "<prompt>"},
       ...
     ]
   }
2) Continuity:
   - Segment 1 is self-contained and starts fresh.
   - Segment k>1 must begin exactly where the final frame of segment k-1 ends.
   - Keep visual style, lighting, subjects and wardrobe consistent across segments.
3) Return exactly the number of segments requested. No markdown, no commentary."""

PLAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["segments"],
    "properties": {
        "segments": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["prompt"],
                "properties": {
                    "title": {"type": "string"},
                    "prompt": {"type": "string", "pattern": r"\S"},
                },
            },
        },
    },
}


@lru_cache(maxsize=1)
def _validator() -> Draft202012Validator:
    return Draft202012Validator(PLAN_SCHEMA)


def build_planner_messages(base_prompt: str, seconds_per_segment: int, segment_count: int) -> list[dict[str, Any]]:
    user_input = f"""BASE PROMPT: {base_prompt}

GENERATION LENGTH (seconds): {seconds_per_segment}
TOTAL GENERATIONS: {segment_count}

Return exactly {segment_count} segments in JSON format."""
    return [
        {"role": "system", "content": PLANNER_SYSTEM_INSTRUCTIONS},
        {"role": "user", "content": user_input}
    ]


def _parse_json(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        pass
    match = re.search(r"```(?:json)?\s*([\s\S]*?)```", raw or "")
    if not match:
        return None
    try:
        return json.loads(match.group(1).strip())
    except ValueError:
        return None


def parse_plan(raw: str, seconds_per_segment: int, segment_count: int) -> list[PlannedSegment]:
    """Validate a raw planner reply and return exactly ``segment_count`` segments.

    The model decides narrative content only; every segment's duration is
    forced to ``seconds_per_segment``.
    """
    parsed = _parse_json(raw)
    if not isinstance(parsed, dict) or not isinstance(parsed.get("segments"), list):
        raise PlanningError("Planner returned malformed JSON", expected=segment_count)

    entries = parsed["segments"]
    if len(entries) != segment_count:
        raise PlanningError(
            f"Expected {segment_count} segments, got {len(entries)}",
            expected=segment_count,
            actual=len(entries),
        )

    errors = sorted(_validator().iter_errors(parsed), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        path = ".".join(str(part) for part in first.path) or "$"
        raise PlanningError(
            f"Planner output invalid at {path}: {first.message}",
            expected=segment_count,
            actual=len(entries),
        )

    planned: list[PlannedSegment] = []
    for idx, entry in enumerate(entries):
        title = str(entry.get("title") or "").strip() or f"Generation {idx + 1}"
        planned.append(PlannedSegment(title=title, seconds=seconds_per_segment, prompt=entry["prompt"].strip()))
    return planned


def plan_segments(
    base_prompt: str,
    seconds_per_segment: int,
    segment_count: int,
    provider_config: ProviderConfig,
    credential: str,
    *,
    client: ProviderClient | None = None,
) -> list[PlannedSegment]:
    base_prompt = (base_prompt or "").strip()
    if not base_prompt:
        raise ValidationError("Missing required fields: base_prompt")
    seconds_per_segment = validate_seconds(seconds_per_segment)
    try:
        segment_count = int(segment_count)
    except (TypeError, ValueError) as exc:
        raise ValidationError("segment_count must be an integer") from exc
    if segment_count < 1:
        raise ValidationError("segment_count must be >= 1")

    client = client or provider_client_for(provider_config, credential)
    messages = build_planner_messages(base_prompt, seconds_per_segment, segment_count)
    raw = client.complete_chat(messages, temperature=PLANNER_TEMPERATURE, json_mode=True)
    print(f"[Planner] Raw response length: {len(raw)}")

    planned = parse_plan(raw, seconds_per_segment, segment_count)
    print(f"[Planner] Planned {len(planned)} segments of {seconds_per_segment}s")
    return planned
