"""AI Router: resolves provider + model from configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from docflow.core.config import get_settings
from docflow.core.errors import ProviderError

from .providers import ProviderSpec, get_provider_spec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedConfig:
    """Final resolved provider + model, ready to be handed to an adapter."""

    spec: ProviderSpec
    model: str
    api_key: str
    temperature: float
    max_tokens: int
    timeout_seconds: float

    @property
    def provider_name(self) -> str:
        return self.spec.name


def resolve(provider: str | None = None, model: str | None = None) -> ResolvedConfig:
    """Resolve provider + model.

    Resolution chain (first non-empty wins):
      1. explicit ``provider`` / ``model`` arguments.
      2. ENV: ``AI_PROVIDER`` / ``AI_MODEL``.
      3. the provider's default model.

    Unlike a silent mock fallback, a misconfigured provider is an error:
    unknown or disallowed names and missing API keys raise ``ProviderError``.
    """
    settings = get_settings()

    provider_name = (provider or settings.ai_provider or "mock").lower().strip()
    if provider_name not in settings.ai_allowed_providers:
        raise ProviderError(f"AI provider {provider_name!r} is not allowed")

    spec = get_provider_spec(provider_name)

    model_name = (model or "").strip()
    if not model_name and provider_name == (settings.ai_provider or "").lower().strip():
        model_name = settings.ai_model.strip()
    if spec.models and model_name and model_name not in spec.models:
        logger.warning(
            "Model %r not in allowlist for %r, using default %r",
            model_name,
            provider_name,
            spec.default_model,
        )
        model_name = ""
    if not model_name:
        model_name = spec.default_model

    api_key = settings.api_key_for(provider_name)
    if spec.requires_api_key and not api_key:
        raise ProviderError(f"No API key configured for AI provider {provider_name!r}")

    return ResolvedConfig(
        spec=spec,
        model=model_name,
        api_key=api_key,
        temperature=settings.ai_temperature,
        max_tokens=settings.ai_max_tokens,
        timeout_seconds=settings.ai_timeout_seconds,
    )
