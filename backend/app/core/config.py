import json
from functools import lru_cache
from typing import Annotated, Literal, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""

    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False

    auth_jwt_secret: str = Field(
        default="",
        validation_alias=AliasChoices("AUTH_JWT_SECRET", "JWT_SECRET"),
    )
    auth_jwt_audience: str = ""

    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=list)
    cors_allow_methods: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "GET",
        "POST",
        "DELETE",
        "OPTIONS",
    ])
    cors_allow_headers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
    ])

    # --- Inference providers ---
    github_token: str = ""
    openai_api_key: str = ""
    groq_api_key: str = ""
    anthropic_api_key: str = ""
    ai_allowed_providers: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["github", "openai", "groq", "claude", "mock"],
    )

    # --- Task routing table inputs ---
    ai_primary_provider: str = "github"
    ai_extraction_model: str = "openai/gpt-4o"
    ai_quick_response_model: str = "openai/gpt-4o-mini"
    ai_deep_analysis_model: str = "deepseek/deepseek-v3-0324"
    ai_receipt_ocr_model: str = "openai/gpt-4o"
    ai_fallback_provider: str = "groq"
    ai_fallback_model: str = "llama-3.3-70b-versatile"

    ai_temperature: float = 0.1
    ai_max_tokens: int = 1024
    ai_timeout_seconds: float = 20.0
    ai_max_attempts: int = Field(default=2, ge=1, le=2)
    ai_debug_store_raw: bool = False

    # --- Conversation ---
    chat_context_turns: int = Field(default=5, ge=0, le=50)
    chat_pending_store: Literal["memory", "database"] = "memory"
    chat_pending_ttl_seconds: Optional[int] = Field(default=None, gt=0)

    default_timezone: str = "UTC"
    currency_symbol: str = "₹"

    # --- Statement import ---
    statement_max_bytes: int = 5 * 1024 * 1024
    statement_min_columns: int = 5

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        "ai_allowed_providers",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            raw = value.strip()
            if raw == "":
                return []
            if raw.startswith("["):
                return [str(item).strip() for item in json.loads(raw) if str(item).strip()]
            return [item.strip() for item in raw.split(",") if item.strip()]
        return value

    @field_validator("chat_pending_ttl_seconds", mode="before")
    @classmethod
    def _empty_ttl_is_unset(cls, value):
        if isinstance(value, str) and value.strip() in {"", "0", "none"}:
            return None
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
