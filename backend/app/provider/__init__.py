from backend.app.provider.client import (
    ALLOWED_SECONDS,
    HostedProviderClient,
    ProviderClient,
    SelfHostedProviderClient,
    provider_client_for,
    validate_seconds,
)
from backend.app.provider.config import (
    DeploymentNames,
    HostedProvider,
    ProviderConfig,
    SelfHostedProvider,
    parse_provider_config,
    provider_config_to_dict,
)
from backend.app.provider.models import GeneratedImage, GenerationJob

__all__ = [
    "ALLOWED_SECONDS",
    "HostedProviderClient",
    "ProviderClient",
    "SelfHostedProviderClient",
    "provider_client_for",
    "validate_seconds",
    "DeploymentNames",
    "HostedProvider",
    "ProviderConfig",
    "SelfHostedProvider",
    "parse_provider_config",
    "provider_config_to_dict",
    "GeneratedImage",
    "GenerationJob",
]
