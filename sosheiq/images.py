"""Image-generation client.

The orchestrator injects an image-service callable matching the protocol:

    async def __call__(self, prompt: str) -> str: ...

It returns base64-encoded image data. Image generation is best-effort: the
orchestrator treats any failure as ImageGenerationFailed and reuses the
previous image, so implementations only need to raise, never to recover.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Protocol

from sosheiq.errors import ServiceUnavailable
from sosheiq.llm import post_json

logger = logging.getLogger(__name__)


class ImageService(Protocol):
    async def __call__(self, prompt: str) -> str: ...


ImageFormat = Literal["openai", "automatic1111"]


def _parse_size(size: str) -> tuple[int, int] | None:
    width, _, height = size.lower().partition("x")
    if not (width.isdigit() and height.isdigit()):
        return None
    return int(width), int(height)


class HttpImageService:
    """Image-service client.

    "openai"         POST /v1/images/generations, base64 under data[0].b64_json
    "automatic1111"  POST /sdapi/v1/txt2img, base64 under images[0]

    `size` is "WIDTHxHEIGHT"; the openai format passes it through as is.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        image_format: ImageFormat = "openai",
        model: str = "",
        size: str = "1024x1024",
        timeout: float = 120.0,
    ) -> None:
        self.base_url = provider_url.rstrip("/")
        self.api_key = api_key
        self.image_format = image_format
        self.model = model
        self.size = size
        self.timeout = timeout

    def request(self, prompt: str) -> tuple[str, dict[str, Any]]:
        if self.image_format == "automatic1111":
            body: dict[str, Any] = {"prompt": prompt, "batch_size": 1}
            dims = _parse_size(self.size)
            if dims:
                body["width"], body["height"] = dims
            return self.base_url + "/sdapi/v1/txt2img", body

        body = {"prompt": prompt, "n": 1, "size": self.size, "response_format": "b64_json"}
        if self.model:
            body["model"] = self.model
        return self.base_url + "/v1/images/generations", body

    async def __call__(self, prompt: str) -> str:
        url, body = self.request(prompt)
        logger.debug("image: POST %s (%d chars)", url, len(prompt))
        data = await post_json(url, body, backend="Image backend", api_key=self.api_key, timeout=self.timeout)

        if self.image_format == "automatic1111":
            images = data.get("images") if isinstance(data, dict) else None
            image = images[0] if images else None
        else:
            items = data.get("data") if isinstance(data, dict) else None
            image = items[0].get("b64_json") if items and isinstance(items[0], dict) else None

        if not isinstance(image, str) or not image:
            raise ServiceUnavailable(f"No image data received from {self.image_format} backend")
        return image
