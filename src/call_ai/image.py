"""Image generation and editing through the OpenAI-compatible image proxy."""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence, Union

import httpx

from call_ai.config import CallAIConfig, env_overrides
from call_ai.errors import HttpError, MalformedPayloadError
from call_ai.llm.request_builder import join_url_parts

_logger = logging.getLogger(__name__)

GENERATE_PATH = "/api/openai-image/generate"
EDIT_PATH = "/api/openai-image/edit"

# Raw bytes, or (filename, bytes), or (filename, bytes, content_type).
ImageInput = Union[bytes, tuple]


def _image_file(index: int, image: ImageInput) -> tuple[str, tuple[str, bytes, str]]:
    if isinstance(image, (bytes, bytearray)):
        return f"image_{index}", (f"image_{index}.png", bytes(image), "image/png")
    filename, data, *rest = image
    return f"image_{index}", (filename, data, rest[0] if rest else "image/png")


async def image_gen(
    prompt: str,
    *,
    model: str = "gpt-image-1",
    api_key: str = "VIBES_DIY",
    size: str = "1024x1024",
    quality: str | None = None,
    style: str | None = None,
    images: Sequence[ImageInput] | None = None,
    img_url: str | None = None,
    config: CallAIConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Generate an image from *prompt*, or edit *images* guided by it.

    Returns the parsed JSON response (``{"created": ..., "data": [{"b64_json": ...}]}``
    for the OpenAI-style proxy).
    """
    config = config if config is not None else CallAIConfig.model_validate(env_overrides())
    origin = img_url or config.img_url or config.chat_url
    headers = {"Authorization": f"Bearer {api_key}"}

    _logger.debug("Generating image with prompt: %.50s...", prompt)
    _logger.debug("Using model: %s", model)

    client = http_client or httpx.AsyncClient(timeout=config.timeout)
    try:
        if not images:
            body: dict[str, Any] = {"model": model, "prompt": prompt, "size": size}
            if quality:
                body["quality"] = quality
            if style:
                body["style"] = style
            url = join_url_parts(origin, GENERATE_PATH)
            resp = await client.post(url, json=body, headers=headers)
            action = "Image generation"
        else:
            data = {"model": model, "prompt": prompt, "size": size}
            if quality:
                data["quality"] = quality
            if style:
                data["style"] = style
            files = [_image_file(i, image) for i, image in enumerate(images)]
            url = join_url_parts(origin, EDIT_PATH)
            resp = await client.post(url, data=data, files=files, headers=headers)
            action = "Image editing"
    finally:
        if http_client is None:
            await client.aclose()

    if resp.is_error:
        raise HttpError(
            f"{action} failed: {resp.status_code} {resp.reason_phrase} - {resp.text}",
            status=resp.status_code,
            status_text=resp.reason_phrase,
            details=resp.text,
            content_type=resp.headers.get("content-type"),
        )

    _logger.debug("Raw response: %.500s...", resp.text)
    try:
        return json.loads(resp.text)
    except json.JSONDecodeError as e:
        _logger.error("Failed to parse image response (%d chars)", len(resp.text))
        raise MalformedPayloadError(
            f"Failed to parse JSON response: {e}",
            status=resp.status_code,
            details=resp.text[:1000],
            original=e,
        ) from e
