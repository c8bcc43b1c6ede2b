"""Provider strategy types shared by every AI backend."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Optional

import httpx


@dataclass(frozen=True)
class ProviderResult:
    """Raw model output, exactly as the backend returned it."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


@dataclass(frozen=True)
class ProviderRequest:
    prompt: str
    model: str
    system_prompt: Optional[str] = None
    image: Optional[bytes] = None
    image_mime_type: Optional[str] = None
    temperature: float = 0.1
    max_tokens: int = 4096


# (request, api_key, client) -> (text, prompt_tokens, completion_tokens)
GenerateFn = Callable[[ProviderRequest, str, httpx.AsyncClient], Awaitable[tuple[str, int, int]]]


@dataclass(frozen=True)
class ProviderSpec:
    """One AI backend: its identity, capabilities, and how to call it."""

    name: str
    default_model: str
    supports_vision: bool
    generate: GenerateFn = field(repr=False)
    models: tuple[str, ...] = ()
    requires_api_key: bool = True
