"""Groq provider (OpenAI-compatible API, text only)."""

from __future__ import annotations

import httpx

from .base import ProviderRequest, ProviderSpec
from .openai import chat_completion

GROQ_CHAT_URL = "https://api.groq.com/openai/v1/chat/completions"


async def generate(request: ProviderRequest, api_key: str, client: httpx.AsyncClient) -> tuple[str, int, int]:
    return await chat_completion(GROQ_CHAT_URL, request, api_key, client)


SPEC = ProviderSpec(
    name="groq",
    default_model="llama-3.1-70b-versatile",
    supports_vision=False,
    generate=generate,
    models=("llama-3.1-70b-versatile", "llama-3.1-8b-instant", "mixtral-8x7b-32768"),
)
