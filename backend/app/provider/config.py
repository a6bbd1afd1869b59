from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union
from urllib.parse import quote

from backend.app.config import settings
from backend.app.errors import ValidationError

HOSTED_KIND = "hosted"
SELF_HOSTED_KIND = "self_hosted"
API_VARIANT_V1 = "v1"
API_VARIANT_DEPLOYMENTS = "deployments"
HOSTED_CREDENTIAL_PREFIX = "sk-"

DeploymentRole = Literal["video", "planner", "image"]


@dataclass(frozen=True)
class HostedProvider:
    base_url: str = field(default_factory=lambda: settings.hosted_base_url)
    kind: str = HOSTED_KIND


@dataclass(frozen=True)
class DeploymentNames:
    video: str
    planner: str
    image: str = ""

    def for_role(self, role: DeploymentRole) -> str:
        if role == "image":
            # Image deployment is optional; reuse whatever the gateway exposes.
            return self.image or self.planner or self.video
        return getattr(self, role)


@dataclass(frozen=True)
class SelfHostedProvider:
    endpoint: str
    deployments: DeploymentNames
    api_variant: str = API_VARIANT_V1
    api_version: str | None = None
    kind: str = SELF_HOSTED_KIND

    def __post_init__(self) -> None:
        endpoint = (self.endpoint or "").strip().rstrip("/")
        if not endpoint:
            raise ValidationError("Self-hosted endpoint is required")
        object.__setattr__(self, "endpoint", endpoint)
        if self.api_variant not in (API_VARIANT_V1, API_VARIANT_DEPLOYMENTS):
            raise ValidationError(f"Unknown api_variant: {self.api_variant}")
        if not (self.deployments.video or "").strip():
            raise ValidationError("Self-hosted video deployment is required")
        if not (self.deployments.planner or "").strip():
            raise ValidationError("Self-hosted planner deployment is required")
        version = (self.api_version or "").strip() or None
        if self.api_variant == API_VARIANT_DEPLOYMENTS and version is None:
            raise ValidationError("api_version is required for the deployments API")
        if self.api_variant == API_VARIANT_V1 and version is not None:
            raise ValidationError("api_version is only valid for the deployments API")
        object.__setattr__(self, "api_version", version)


ProviderConfig = Union[HostedProvider, SelfHostedProvider]


def resolve_address(config: ProviderConfig, role: DeploymentRole, path: str) -> tuple[str, dict[str, str]]:
    """Return (url, query params) for a provider resource path such as ``/videos``."""
    if isinstance(config, HostedProvider):
        return config.base_url.rstrip("/") + path, {}
    if config.api_variant == API_VARIANT_DEPLOYMENTS:
        deployment = quote(config.deployments.for_role(role), safe="")
        url = f"{config.endpoint}/openai/deployments/{deployment}{path}"
        return url, {"api-version": str(config.api_version)}
    return f"{config.endpoint}/openai/v1{path}", {}


def auth_headers(config: ProviderConfig, credential: str) -> dict[str, str]:
    if config.kind == HOSTED_KIND:
        return {"Authorization": f"Bearer {credential}"}
    return {"api-key": credential}


def validate_credential(config: ProviderConfig, credential: str | None) -> str:
    value = (credential or "").strip()
    if not value:
        raise ValidationError("Missing API key")
    if config.kind == HOSTED_KIND and not value.startswith(HOSTED_CREDENTIAL_PREFIX):
        raise ValidationError("Invalid API key format")
    return value


def parse_provider_config(data: dict[str, Any] | None) -> ProviderConfig:
    """Build a provider config from its wire form; missing or ``hosted`` kind selects the hosted API."""
    data = data or {}
    kind = str(data.get("kind") or HOSTED_KIND).strip().lower()
    if kind == HOSTED_KIND:
        base_url = str(data.get("base_url") or "").strip()
        return HostedProvider(base_url=base_url) if base_url else HostedProvider()
    if kind != SELF_HOSTED_KIND:
        raise ValidationError(f"Unknown provider kind: {kind}")

    deployments = data.get("deployments") or {}
    if not isinstance(deployments, dict):
        raise ValidationError("deployments must be an object")
    return SelfHostedProvider(
        endpoint=str(data.get("endpoint") or ""),
        api_variant=str(data.get("api_variant") or API_VARIANT_V1).strip().lower(),
        api_version=data.get("api_version"),
        deployments=DeploymentNames(
            video=str(deployments.get("video") or "").strip(),
            planner=str(deployments.get("planner") or "").strip(),
            image=str(deployments.get("image") or "").strip(),
        ),
    )


def provider_config_to_dict(config: ProviderConfig) -> dict[str, Any]:
    if isinstance(config, HostedProvider):
        return {"kind": HOSTED_KIND, "base_url": config.base_url}
    return {
        "kind": SELF_HOSTED_KIND,
        "endpoint": config.endpoint,
        "api_variant": config.api_variant,
        "api_version": config.api_version,
        "deployments": {
            "video": config.deployments.video,
            "planner": config.deployments.planner,
            "image": config.deployments.image,
        },
    }
