"""OpenAI provider (also the wire format for OpenAI-compatible backends)."""

from __future__ import annotations

import base64

import httpx

from .base import ProviderRequest, ProviderSpec

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"


def _user_content(request: ProviderRequest) -> str | list[dict]:
    if not request.image:
        return request.prompt
    encoded = base64.b64encode(request.image).decode("ascii")
    mime = request.image_mime_type or "image/png"
    return [
        {"type": "text", "text": request.prompt},
        {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{encoded}"}},
    ]


async def chat_completion(
    url: str,
    request: ProviderRequest,
    api_key: str,
    client: httpx.AsyncClient,
) -> tuple[str, int, int]:
    messages: list[dict] = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})
    messages.append({"role": "user", "content": _user_content(request)})

    resp = await client.post(
        url,
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        json={
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "response_format": {"type": "json_object"},
            "messages": messages,
        },
    )
    resp.raise_for_status()
    data = resp.json()

    text = data["choices"][0]["message"]["content"]
    usage = data.get("usage") or {}
    return text, usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0)


async def generate(request: ProviderRequest, api_key: str, client: httpx.AsyncClient) -> tuple[str, int, int]:
    return await chat_completion(OPENAI_CHAT_URL, request, api_key, client)


SPEC = ProviderSpec(
    name="openai",
    default_model="gpt-4o-mini",
    supports_vision=True,
    generate=generate,
    models=("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-3.5-turbo"),
)
