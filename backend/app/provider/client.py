from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

import httpx

from backend.app.config import settings
from backend.app.errors import ProviderError, ValidationError
from backend.app.provider.config import (
    API_VARIANT_V1,
    DeploymentRole,
    HostedProvider,
    ProviderConfig,
    SelfHostedProvider,
    auth_headers,
    resolve_address,
    validate_credential,
)
from backend.app.provider.models import GeneratedImage, GenerationJob

ALLOWED_SECONDS = (4, 8, 12)
FALLBACK_ERROR_MESSAGE = "Provider request failed"


def validate_seconds(seconds: Any) -> int:
    try:
        value = int(seconds)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid seconds value: must be 4, 8, or 12, got {seconds!r}") from exc
    if value not in ALLOWED_SECONDS:
        raise ValidationError(f"Invalid seconds value: must be 4, 8, or 12, got {value}")
    return value


def _upstream_error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return FALLBACK_ERROR_MESSAGE
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err.strip():
            return err
    return FALLBACK_ERROR_MESSAGE


class ProviderClient(ABC):
    """Submit/status/content calls against one provider variant.

    Subclasses only decide addressing, auth and which model field to send;
    request encoding and error handling are shared.
    """

    supports_frame_pair = False

    def __init__(
        self,
        config: ProviderConfig,
        credential: str,
        *,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config
        self.credential = validate_credential(config, credential)
        self.timeout = timeout if timeout is not None else settings.http_timeout_s
        self.transport = transport

    @property
    def kind(self) -> str:
        return self.config.kind

    @abstractmethod
    def _model_field(self, role: DeploymentRole, model: str | None) -> str | None:
        """Model name to put in the request body, or None to omit it."""

    def _address(self, role: DeploymentRole, path: str) -> tuple[str, dict[str, str]]:
        return resolve_address(self.config, role, path)

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self.transport)

    def _request(
        self,
        method: str,
        role: DeploymentRole,
        path: str,
        *,
        params: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        url, query = self._address(role, path)
        query = {**query, **(params or {})}
        headers = auth_headers(self.config, self.credential)
        try:
            with self._client() as client:
                response = client.request(method, url, params=query or None, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Provider request failed: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderError(_upstream_error_message(response), status=response.status_code)
        return response

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError("Provider returned a non-JSON response", status=response.status_code) from exc
        if not isinstance(data, dict):
            raise ProviderError("Provider returned an unexpected response shape", status=response.status_code)
        return data

    def _job(self, response: httpx.Response) -> GenerationJob:
        try:
            return GenerationJob.from_payload(self._json(response))
        except ValueError as exc:
            raise ProviderError(str(exc), status=response.status_code) from exc

    def _check_frames(self, first_frame: bytes | None, last_frame: bytes | None) -> None:
        if (first_frame or last_frame) and not self.supports_frame_pair:
            raise ValidationError("This provider accepts a single reference image; first/last frames are not supported")

    def submit(
        self,
        prompt: str,
        seconds: int,
        size: str,
        model: str,
        *,
        reference_image: bytes | None = None,
        first_frame: bytes | None = None,
        last_frame: bytes | None = None,
        remix_of: str | None = None,
    ) -> GenerationJob:
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValidationError("Missing required fields: prompt")
        self._check_frames(first_frame, last_frame)

        files: dict[str, tuple[str, bytes, str]] = {}
        if reference_image:
            files["input_reference"] = ("frame.jpg", reference_image, "image/jpeg")
        if first_frame:
            files["first_frame"] = ("first-frame.jpg", first_frame, "image/jpeg")
        if last_frame:
            files["last_frame"] = ("last-frame.jpg", last_frame, "image/jpeg")

        if remix_of:
            # Duration, size and model are inherited from the parent job.
            fields: dict[str, str] = {"prompt": prompt}
            path = f"/videos/{remix_of}/remix"
        else:
            if not (size or "").strip():
                raise ValidationError("Missing required fields: size")
            fields = {"prompt": prompt, "seconds": str(validate_seconds(seconds)), "size": size}
            model_value = self._model_field("video", model)
            if model_value:
                fields["model"] = model_value
            path = "/videos"

        if files:
            response = self._request("POST", "video", path, data=fields, files=files)
        else:
            response = self._request("POST", "video", path, json=fields)
        job = self._job(response)
        print(f"[Provider] submitted job {job.id} ({self.kind}, remix_of={remix_of or '-'})")
        return job

    def status(self, job_id: str) -> GenerationJob:
        return self._job(self._request("GET", "video", f"/videos/{job_id}"))

    def fetch_content(self, job_id: str) -> bytes:
        response = self._request("GET", "video", f"/videos/{job_id}/content", params={"variant": "video"})
        if not response.content:
            raise ProviderError(f"Provider returned empty content for job {job_id}", status=response.status_code)
        return response.content

    def complete_chat(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float = 0.7,
        json_mode: bool = True,
        model: str | None = None,
    ) -> str:
        payload: dict[str, Any] = {"messages": messages, "temperature": temperature}
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        model_value = self._model_field("planner", model or settings.planner_model)
        if model_value:
            payload["model"] = model_value
        data = self._json(self._request("POST", "planner", "/chat/completions", json=payload))
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"Unexpected response shape: {json.dumps(data)[:2000]}") from exc

    def generate_images(self, prompt: str, size: str, *, model: str | None = None, count: int = 1) -> list[GeneratedImage]:
        prompt = (prompt or "").strip()
        if not prompt or not (size or "").strip():
            raise ValidationError("Missing required fields: prompt, size")
        payload: dict[str, Any] = {"prompt": prompt, "size": size, "n": max(1, int(count))}
        model_value = self._model_field("image", model or settings.image_model)
        if model_value:
            payload["model"] = model_value
        data = self._json(self._request("POST", "image", "/images/generations", json=payload))
        return [GeneratedImage.from_payload(item) for item in data.get("data") or [] if isinstance(item, dict)]


class HostedProviderClient(ProviderClient):
    config: HostedProvider

    def _model_field(self, role: DeploymentRole, model: str | None) -> str | None:
        return model


class SelfHostedProviderClient(ProviderClient):
    config: SelfHostedProvider
    supports_frame_pair = True

    def _model_field(self, role: DeploymentRole, model: str | None) -> str | None:
        # The deployments API carries the deployment in the URL.
        if self.config.api_variant == API_VARIANT_V1:
            return self.config.deployments.for_role(role)
        return None


def provider_client_for(
    config: ProviderConfig,
    credential: str,
    *,
    timeout: float | None = None,
    transport: httpx.BaseTransport | None = None,
) -> ProviderClient:
    if isinstance(config, SelfHostedProvider):
        return SelfHostedProviderClient(config, credential, timeout=timeout, transport=transport)
    return HostedProviderClient(config, credential, timeout=timeout, transport=transport)
