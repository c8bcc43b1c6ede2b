"""Anthropic / Claude provider."""

from __future__ import annotations

import base64

import httpx

from .base import ProviderRequest, ProviderSpec

CLAUDE_MESSAGES_URL = "https://api.anthropic.com/v1/messages"


async def generate(request: ProviderRequest, api_key: str, client: httpx.AsyncClient) -> tuple[str, int, int]:
    content: list[dict] = []
    if request.image:
        content.append(
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": request.image_mime_type or "image/png",
                    "data": base64.b64encode(request.image).decode("ascii"),
                },
            }
        )
    content.append({"type": "text", "text": request.prompt})

    body: dict = {
        "model": request.model,
        "max_tokens": request.max_tokens,
        "temperature": request.temperature,
        "messages": [{"role": "user", "content": content}],
    }
    if request.system_prompt:
        body["system"] = request.system_prompt

    resp = await client.post(
        CLAUDE_MESSAGES_URL,
        headers={
            "x-api-key": api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        },
        json=body,
    )
    resp.raise_for_status()
    data = resp.json()

    text = "".join(block["text"] for block in data["content"] if block.get("type") == "text")
    usage = data.get("usage") or {}
    return text, usage.get("input_tokens", 0), usage.get("output_tokens", 0)


SPEC = ProviderSpec(
    name="claude",
    default_model="claude-3-5-haiku-20241022",
    supports_vision=True,
    generate=generate,
    models=("claude-3-5-haiku-20241022", "claude-3-5-sonnet-20241022"),
)
