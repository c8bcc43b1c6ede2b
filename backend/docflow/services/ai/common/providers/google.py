"""Google Gemini provider."""

from __future__ import annotations

import base64

import httpx

from .base import ProviderRequest, ProviderSpec

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


async def generate(request: ProviderRequest, api_key: str, client: httpx.AsyncClient) -> tuple[str, int, int]:
    parts: list[dict] = [{"text": request.prompt}]
    if request.image:
        parts.append(
            {
                "inline_data": {
                    "mime_type": request.image_mime_type or "image/png",
                    "data": base64.b64encode(request.image).decode("ascii"),
                }
            }
        )

    body: dict = {
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": {
            "temperature": request.temperature,
            "maxOutputTokens": request.max_tokens,
            "responseMimeType": "application/json",
        },
    }
    if request.system_prompt:
        body["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}

    resp = await client.post(
        GEMINI_URL.format(model=request.model),
        headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
        json=body,
    )
    resp.raise_for_status()
    data = resp.json()

    candidate_parts = data["candidates"][0]["content"]["parts"]
    text = "".join(part.get("text", "") for part in candidate_parts)
    usage = data.get("usageMetadata") or {}
    return text, usage.get("promptTokenCount", 0), usage.get("candidatesTokenCount", 0)


SPEC = ProviderSpec(
    name="google",
    default_model="gemini-1.5-flash",
    supports_vision=True,
    generate=generate,
    models=("gemini-1.5-pro", "gemini-1.5-flash", "gemini-2.5-flash", "gemini-2.5-pro"),
)
