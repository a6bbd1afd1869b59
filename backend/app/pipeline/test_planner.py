from __future__ import annotations

import json
import unittest

from backend.app.errors import PlanningError, ProviderError, ValidationError
from backend.app.pipeline.planner import build_planner_messages, parse_plan, plan_segments
from backend.app.provider.config import HostedProvider


class _ChatClient:
    def __init__(self, reply: str | Exception) -> None:
        self.reply = reply
        self.calls: list[dict] = []

    def complete_chat(self, messages, *, temperature=0.7, json_mode=True, model=None) -> str:
        self.calls.append({"messages": messages, "temperature": temperature, "json_mode": json_mode})
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


def _plan_json(*entries: dict) -> str:
    return json.dumps({"segments": list(entries)})


class ParsePlanTests(unittest.TestCase):
    def test_seconds_always_forced_to_requested_value(self) -> None:
        raw = _plan_json(
            {"title": "Opening", "seconds": 12, "prompt": "wide shot"},
            {"title": "Close", "seconds": 99, "prompt": "close-up"},
        )
        planned = parse_plan(raw, 8, 2)
        self.assertEqual([8, 8], [seg.seconds for seg in planned])
        self.assertEqual(["Opening", "Close"], [seg.title for seg in planned])

    def test_missing_title_defaults_to_generation_number(self) -> None:
        planned = parse_plan(_plan_json({"prompt": "a"}, {"prompt": "b", "title": " "}), 4, 2)
        self.assertEqual(["Generation 1", "Generation 2"], [seg.title for seg in planned])

    def test_count_mismatch_is_rejected_both_ways(self) -> None:
        for entries in ([{"prompt": "a"}], [{"prompt": "a"}, {"prompt": "b"}, {"prompt": "c"}]):
            with self.assertRaises(PlanningError) as ctx:
                parse_plan(_plan_json(*entries), 4, 2)
            self.assertEqual(2, ctx.exception.expected)
            self.assertEqual(len(entries), ctx.exception.actual)

    def test_malformed_json_rejected(self) -> None:
        with self.assertRaises(PlanningError):
            parse_plan("not json at all", 4, 1)
        with self.assertRaises(PlanningError):
            parse_plan(json.dumps({"shots": []}), 4, 1)

    def test_blank_prompt_rejected_by_schema(self) -> None:
        with self.assertRaises(PlanningError) as ctx:
            parse_plan(_plan_json({"prompt": "   "}), 4, 1)
        self.assertIn("segments.0.prompt", str(ctx.exception))

    def test_fenced_json_block_is_accepted(self) -> None:
        raw = "Here you go:\n```json\n" + _plan_json({"prompt": "scene"}) + "\n```"
        planned = parse_plan(raw, 4, 1)
        self.assertEqual("scene", planned[0].prompt)


class PlanSegmentsTests(unittest.TestCase):
    def test_end_to_end_plan_for_two_segments(self) -> None:
        client = _ChatClient(_plan_json(
            {"title": "Generation 1", "seconds": 4, "prompt": "A cat rolls onto a skateboard in a sunny park."},
            {"title": "Generation 2", "seconds": 4, "prompt": "The cat glides down the path past a fountain."},
        ))

        planned = plan_segments("a cat on a skateboard", 4, 2, HostedProvider(), "sk-test", client=client)

        self.assertEqual(2, len(planned))
        self.assertEqual(["Generation 1", "Generation 2"], [seg.title for seg in planned])
        self.assertTrue(all(seg.seconds == 4 for seg in planned))
        user_message = client.calls[0]["messages"][1]["content"]
        self.assertIn("a cat on a skateboard", user_message)
        self.assertIn("TOTAL GENERATIONS: 2", user_message)
        self.assertTrue(client.calls[0]["json_mode"])

    def test_invalid_input_never_calls_provider(self) -> None:
        client = _ChatClient(_plan_json({"prompt": "x"}))
        for args in (("", 4, 1), ("prompt", 5, 1), ("prompt", 4, 0), ("prompt", 4, "many")):
            with self.assertRaises(ValidationError):
                plan_segments(*args, HostedProvider(), "sk-test", client=client)
        self.assertEqual([], client.calls)

    def test_provider_errors_propagate(self) -> None:
        client = _ChatClient(ProviderError("rate limited", status=429))
        with self.assertRaises(ProviderError):
            plan_segments("prompt", 4, 1, HostedProvider(), "sk-test", client=client)

    def test_messages_include_continuity_rules(self) -> None:
        messages = build_planner_messages("storm at sea", 12, 3)
        self.assertEqual("system", messages[0]["role"])
        self.assertIn("final frame", messages[0]["content"])
        self.assertIn("GENERATION LENGTH (seconds): 12", messages[1]["content"])


if __name__ == "__main__":
    unittest.main()
