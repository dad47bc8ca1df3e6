"""Pydantic schemas for KeyRelay configuration validation."""
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_MODELS = [
    "gpt-oss-120b",
    "qwen-3-235b-a22b-instruct-2507",
    "zai-glm-4.7",
]


class UpstreamConfig(BaseModel):
    """Upstream inference provider."""

    chat_completions_url: str = Field(
        default="https://api.cerebras.ai/v1/chat/completions",
        description="Chat-completions endpoint requests are forwarded to",
    )
    models_url: str = Field(
        default="https://api.cerebras.ai/public/v1/models",
        description="Public model listing used for the model catalog",
    )
    timeout_ms: int = Field(default=60000, gt=0, le=600000, description="Forwarded request timeout in milliseconds")
    probe_timeout_ms: int = Field(default=12000, gt=0, description="Credential/model probe timeout in milliseconds")
    catalog_timeout_ms: int = Field(default=8000, gt=0, description="Model catalog fetch timeout in milliseconds")


class PoolConfig(BaseModel):
    """Credential and model rotation."""

    default_models: List[str] = Field(
        default_factory=lambda: list(DEFAULT_MODELS),
        description="Model pool used when no configuration row exists yet",
    )
    fallback_model: Optional[str] = Field(
        default="qwen-3-235b-a22b-instruct-2507",
        description="Model used for credential probes when the pool is empty",
    )
    external_model_id: str = Field(default="keyrelay", description="Model id advertised on /v1/models")
    max_model_attempts: int = Field(default=3, gt=0, le=10, description="Model switches per request on 'model not found'")
    default_cooldown_s: float = Field(default=2.0, gt=0, description="Cooldown after a 429 without usable Retry-After")

    @field_validator("default_models")
    @classmethod
    def validate_default_models(cls, v: List[str]) -> List[str]:
        """Strip names and drop blanks and duplicates, keeping order."""
        models: List[str] = []
        for name in v:
            name = name.strip()
            if name and name not in models:
                models.append(name)
        if not models:
            raise ValueError("default_models must contain at least one model")
        return models


class StorageConfig(BaseModel):
    """Durable store layout and write-back timing."""

    key_prefix: str = Field(default="keyrelay", min_length=1, description="Prefix for every store key")
    flush_interval_ms: int = Field(
        default=15000,
        ge=1000,
        description="Write-back flush interval used when no configuration row exists yet",
    )
    catalog_ttl_s: int = Field(default=21600, gt=0, description="Model catalog freshness window in seconds")


class KeyRelayConfig(BaseModel):
    """Root configuration model."""

    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig, description="Upstream provider")
    pool: PoolConfig = Field(default_factory=PoolConfig, description="Rotation settings")
    storage: StorageConfig = Field(default_factory=StorageConfig, description="Store settings")
    max_proxy_keys: int = Field(default=5, gt=0, description="Maximum number of proxy access keys")
