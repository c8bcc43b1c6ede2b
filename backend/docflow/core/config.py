from functools import lru_cache

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

EXPORT_DISPATCH_MODES = ("inline", "background", "worker")


def _split_list(value: str) -> list[str]:
    if not value:
        return []
    return [item.strip().lower() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        validate_by_name=True,
        populate_by_name=True,
    )

    database_url: str = ""

    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: str = ""
    supabase_jwt_secret: str = ""
    supabase_jwt_audience: str = "authenticated"

    storage_bucket_documents: str = "documents"
    storage_bucket_exports: str = "exports"

    docs_enabled: bool = True
    openapi_enabled: bool = True
    expose_error_details: bool = False

    cors_allow_origins: list[str] = Field(default_factory=list)
    cors_allow_methods: list[str] = Field(default_factory=lambda: ["GET", "POST", "DELETE", "OPTIONS"])
    cors_allow_headers: list[str] = Field(default_factory=lambda: ["Authorization", "Content-Type", "Accept"])

    # --- AI providers ---
    ai_provider: str = "mock"
    ai_model: str = ""
    ai_fallback_provider: str = ""
    ai_fallback_model: str = ""
    ai_allowed_providers_raw: str = Field(
        default="mock,openai,google,groq,claude",
        validation_alias=AliasChoices("AI_ALLOWED_PROVIDERS"),
    )
    ai_timeout_seconds: float = 60.0
    ai_temperature: float = 0.1
    ai_max_tokens: int = 4096
    ai_max_input_chars: int = 20000
    ai_extract_max_retries: int = Field(default=0, ge=0, le=5)

    openai_api_key: str = ""
    google_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("GOOGLE_API_KEY", "GOOGLE_GENERATIVE_AI_API_KEY"),
    )
    groq_api_key: str = ""
    anthropic_api_key: str = ""

    # --- Exports ---
    export_expiry_hours: int = Field(default=168, ge=1)
    export_signed_url_seconds: int = 86400
    export_preview_chars: int = 1000
    export_dispatch_mode: str = "inline"
    export_stale_after_minutes: int = 30
    max_document_bytes: int = 20 * 1024 * 1024

    enable_recurring_jobs: bool = False
    export_worker_interval_seconds: int = 30
    export_worker_batch_size: int = 10

    @field_validator("cors_allow_origins", "cors_allow_methods", "cors_allow_headers", mode="before")
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("export_dispatch_mode")
    @classmethod
    def _check_dispatch_mode(cls, value: str) -> str:
        mode = (value or "").strip().lower()
        if mode not in EXPORT_DISPATCH_MODES:
            raise ValueError(f"export_dispatch_mode must be one of {', '.join(EXPORT_DISPATCH_MODES)}")
        return mode

    @property
    def ai_allowed_providers(self) -> list[str]:
        providers = _split_list(self.ai_allowed_providers_raw)
        if "mock" not in providers:
            providers.insert(0, "mock")
        return providers

    def api_key_for(self, provider_name: str) -> str:
        return {
            "openai": self.openai_api_key,
            "google": self.google_api_key,
            "groq": self.groq_api_key,
            "claude": self.anthropic_api_key,
        }.get(provider_name, "")


@lru_cache
def get_settings() -> Settings:
    return Settings()
