"""Provider registry: every AI backend the extraction pipeline can call."""

from __future__ import annotations

from docflow.core.errors import ProviderError

from . import claude, google, groq, mock, openai
from .base import ProviderRequest, ProviderResult, ProviderSpec

__all__ = ["PROVIDERS", "get_provider_spec", "ProviderRequest", "ProviderResult", "ProviderSpec"]

PROVIDERS: dict[str, ProviderSpec] = {
    spec.name: spec
    for spec in (
        openai.SPEC,
        google.SPEC,
        claude.SPEC,
        groq.SPEC,
        mock.SPEC,
    )
}


def get_provider_spec(provider_name: str) -> ProviderSpec:
    name = (provider_name or "").lower().strip()
    spec = PROVIDERS.get(name)
    if spec is None:
        raise ProviderError(f"Unknown AI provider: {provider_name!r}")
    return spec
