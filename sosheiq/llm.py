"""Text-generation client.

The engine only sees a callable:

    async def __call__(self, stage: str, prompt: str) -> str: ...

`stage` is "start", "turn" or "analysis". HttpLLM uses it for logging only.

The transport helpers here (auth_headers, post_json, raise_for_status) are
shared with the image client. They turn every HTTP-level failure into one of
the classified ServiceError subclasses, which is what RetryPolicy keys on.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Literal, NamedTuple, Protocol

import httpx

from sosheiq.errors import (
    RateLimited,
    ServiceTimeout,
    ServiceUnavailable,
    Unauthorized,
)

logger = logging.getLogger(__name__)


class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

def auth_headers(api_key: str) -> dict[str, str]:
    if not api_key:
        return {"Content-Type": "application/json"}
    return {"Content-Type": "application/json", "Authorization": "Bearer " + api_key}


def raise_for_status(resp: httpx.Response, backend: str) -> None:
    """Translate an HTTP error status into the ServiceError taxonomy."""
    status = resp.status_code
    if status < 400:
        return
    if status == 429:
        raise RateLimited(f"{backend} returned HTTP 429")
    if status in (401, 403):
        raise Unauthorized(f"{backend} returned HTTP {status}")
    raise ServiceUnavailable(f"{backend} returned HTTP {status}")


async def post_json(
    url: str,
    body: dict[str, Any],
    *,
    backend: str,
    api_key: str = "",
    timeout: float = 120.0,
) -> Any:
    """POST a JSON body and return the decoded JSON reply."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(url, json=body, headers=auth_headers(api_key))
    except httpx.ConnectError as e:
        raise ServiceUnavailable(f"Cannot connect to {backend} at {url}") from e
    except httpx.TimeoutException as e:
        raise ServiceTimeout(f"{backend} timed out after {timeout}s") from e
    except httpx.TransportError as e:
        raise ServiceUnavailable(f"{backend} transport error: {e}") from e

    raise_for_status(resp, backend)
    try:
        return resp.json()
    except ValueError as e:
        raise ServiceUnavailable(f"{backend} returned a non-JSON body") from e


# ---------------------------------------------------------------------------
# Completion formats
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai"]


class _Format(NamedTuple):
    path: str
    result_key: str          # list of {"text": ...} in the reply
    max_tokens_key: str


_FORMATS: dict[str, _Format] = {
    "koboldcpp": _Format("/api/v1/generate", "results", "max_length"),
    "openai": _Format("/v1/completions", "choices", "max_tokens"),
}


def _first_text(data: Any, key: str) -> str | None:
    if not isinstance(data, dict):
        return None
    items = data.get(key)
    if not items or not isinstance(items[0], dict):
        return None
    text = items[0].get("text")
    return text if isinstance(text, str) else None


class HttpLLM:
    """Text-service client for KoboldCpp or OpenAI-style completion endpoints.

    Both formats take {"prompt": ...} and answer with a list of {"text": ...}
    objects, under "results" (KoboldCpp) or "choices" (OpenAI). Only the first
    completion is used.

    `max_tokens` and `temperature` are sent only when set, so the backend's
    own defaults apply otherwise. `model` is sent only in the openai format.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> None:
        if provider_format not in _FORMATS:
            raise ValueError(f"Unknown provider format: {provider_format!r}")
        self.provider_format = provider_format
        self.endpoint = provider_url.rstrip("/") + _FORMATS[provider_format].path
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature

    @property
    def _backend(self) -> str:
        return "KoboldCpp backend" if self.provider_format == "koboldcpp" else "OpenAI-compatible backend"

    def payload(self, prompt: str) -> dict[str, Any]:
        fmt = _FORMATS[self.provider_format]
        body: dict[str, Any] = {"prompt": prompt}
        if self.provider_format == "openai" and self.model:
            body["model"] = self.model
        if self.max_tokens is not None:
            body[fmt.max_tokens_key] = self.max_tokens
        if self.temperature is not None:
            body["temperature"] = self.temperature
        return body

    async def __call__(self, stage: str, prompt: str) -> str:
        logger.debug("%s: POST %s (%d chars)", stage, self.endpoint, len(prompt))
        data = await post_json(
            self.endpoint,
            self.payload(prompt),
            backend=self._backend,
            api_key=self.api_key,
            timeout=self.timeout,
        )
        text = _first_text(data, _FORMATS[self.provider_format].result_key)
        if text is None:
            raise ServiceUnavailable(f"Unexpected response format from {self._backend}")
        logger.debug("%s: %d chars back", stage, len(text))
        return text
