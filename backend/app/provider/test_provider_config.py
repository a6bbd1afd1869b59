from __future__ import annotations

import unittest

from backend.app.errors import ValidationError
from backend.app.provider.config import (
    DeploymentNames,
    HostedProvider,
    SelfHostedProvider,
    auth_headers,
    parse_provider_config,
    provider_config_to_dict,
    resolve_address,
    validate_credential,
)
from backend.app.provider.models import COMPLETED, FAILED, IN_PROGRESS, QUEUED, GenerationJob


class ProviderConfigTests(unittest.TestCase):
    def test_missing_kind_selects_hosted(self) -> None:
        config = parse_provider_config({})
        self.assertIsInstance(config, HostedProvider)
        self.assertEqual("hosted", config.kind)

    def test_deployments_variant_requires_api_version(self) -> None:
        with self.assertRaises(ValidationError):
            parse_provider_config({
                "kind": "self_hosted",
                "endpoint": "https://gw.example.com",
                "api_variant": "deployments",
                "deployments": {"video": "vid", "planner": "chat"},
            })

    def test_v1_variant_rejects_api_version(self) -> None:
        with self.assertRaises(ValidationError):
            SelfHostedProvider(
                endpoint="https://gw.example.com",
                deployments=DeploymentNames(video="vid", planner="chat"),
                api_variant="v1",
                api_version="2025-04-01-preview",
            )

    def test_self_hosted_requires_video_and_planner_deployments(self) -> None:
        with self.assertRaises(ValidationError):
            parse_provider_config({
                "kind": "self_hosted",
                "endpoint": "https://gw.example.com",
                "deployments": {"video": "vid"},
            })

    def test_unknown_kind_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            parse_provider_config({"kind": "mystery"})

    def test_round_trip_through_wire_form(self) -> None:
        config = parse_provider_config({
            "kind": "self_hosted",
            "endpoint": "https://gw.example.com/",
            "api_variant": "deployments",
            "api_version": "2025-04-01-preview",
            "deployments": {"video": "vid", "planner": "chat", "image": "img"},
        })
        self.assertEqual("https://gw.example.com", config.endpoint)
        self.assertEqual(config, parse_provider_config(provider_config_to_dict(config)))


class AddressingTests(unittest.TestCase):
    def test_hosted_address(self) -> None:
        url, params = resolve_address(HostedProvider(base_url="https://api.example.com/v1/"), "video", "/videos")
        self.assertEqual("https://api.example.com/v1/videos", url)
        self.assertEqual({}, params)

    def test_self_hosted_v1_address(self) -> None:
        config = SelfHostedProvider(endpoint="https://gw.example.com", deployments=DeploymentNames("vid", "chat"))
        url, params = resolve_address(config, "video", "/videos/job_1")
        self.assertEqual("https://gw.example.com/openai/v1/videos/job_1", url)
        self.assertEqual({}, params)

    def test_self_hosted_deployments_address_uses_role_deployment(self) -> None:
        config = SelfHostedProvider(
            endpoint="https://gw.example.com",
            deployments=DeploymentNames("vid", "chat"),
            api_variant="deployments",
            api_version="2025-04-01-preview",
        )
        url, params = resolve_address(config, "planner", "/chat/completions")
        self.assertEqual("https://gw.example.com/openai/deployments/chat/chat/completions", url)
        self.assertEqual({"api-version": "2025-04-01-preview"}, params)
        # Image role falls back to another deployment when none is configured.
        url, _ = resolve_address(config, "image", "/images/generations")
        self.assertIn("/deployments/chat/", url)

    def test_auth_headers_per_variant(self) -> None:
        self.assertEqual({"Authorization": "Bearer sk-abc"}, auth_headers(HostedProvider(), "sk-abc"))
        config = SelfHostedProvider(endpoint="https://gw.example.com", deployments=DeploymentNames("vid", "chat"))
        self.assertEqual({"api-key": "k"}, auth_headers(config, "k"))


class CredentialTests(unittest.TestCase):
    def test_hosted_credential_needs_prefix(self) -> None:
        with self.assertRaises(ValidationError):
            validate_credential(HostedProvider(), "abc")
        self.assertEqual("sk-abc", validate_credential(HostedProvider(), "  sk-abc "))

    def test_empty_credential_rejected(self) -> None:
        config = SelfHostedProvider(endpoint="https://gw.example.com", deployments=DeploymentNames("vid", "chat"))
        with self.assertRaises(ValidationError):
            validate_credential(config, "")
        self.assertEqual("any-key", validate_credential(config, "any-key"))


class GenerationJobTests(unittest.TestCase):
    def test_status_aliases_normalized(self) -> None:
        self.assertEqual(QUEUED, GenerationJob.from_payload({"id": "j", "status": "pending"}).status)
        self.assertEqual(IN_PROGRESS, GenerationJob.from_payload({"id": "j", "status": "processing"}).status)
        self.assertEqual(COMPLETED, GenerationJob.from_payload({"id": "j", "status": "succeeded"}).status)
        self.assertEqual(FAILED, GenerationJob.from_payload({"id": "j", "status": "cancelled"}).status)

    def test_terminal_synonyms_and_unknown_statuses(self) -> None:
        for raw in ("expired", "error", "Canceled"):
            job = GenerationJob.from_payload({"id": "j", "status": raw})
            self.assertEqual(FAILED, job.status, raw)
            self.assertTrue(job.is_terminal)
        self.assertEqual(IN_PROGRESS, GenerationJob.from_payload({"id": "j", "status": "rendering"}).status)
        self.assertEqual(QUEUED, GenerationJob.from_payload({"id": "j"}).status)

    def test_payload_fields(self) -> None:
        job = GenerationJob.from_payload({
            "id": "video_2",
            "status": "failed",
            "progress": 140,
            "error": {"message": "moderation blocked"},
            "remixed_from_video_id": "video_1",
        })
        self.assertTrue(job.is_terminal)
        self.assertEqual(100, job.progress)
        self.assertEqual("moderation blocked", job.error_message)
        self.assertEqual("video_1", job.remixed_from)

    def test_missing_id_rejected(self) -> None:
        with self.assertRaises(ValueError):
            GenerationJob.from_payload({"status": "queued"})


if __name__ == "__main__":
    unittest.main()
