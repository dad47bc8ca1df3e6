"""Request/Response schemas for KeyRelay.

This module provides Pydantic models for:
- Credential and proxy key administration
- Model pool and catalog management
- Runtime configuration and statistics
"""
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from keyrelay.core.credential_pool import Credential
from keyrelay.core.proxy_keys import ProxyKey
from keyrelay.core.security import SecurityManager


class AddKeyRequest(BaseModel):
    """Request schema for POST /api/keys."""

    key: str = Field(..., description="Upstream API key")

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Key must not be empty")
        return v


class BatchAddRequest(BaseModel):
    """Request schema for POST /api/keys/batch (JSON form)."""

    input: Union[str, List[str]] = Field(..., description="Keys separated by newlines, commas or spaces")

    def secrets(self) -> List[str]:
        text = self.input if isinstance(self.input, str) else "\n".join(self.input)
        return SecurityManager.parse_batch_input(text)


class CredentialView(BaseModel):
    """Credential with its secret masked."""

    id: str
    key: str
    status: str
    use_count: int
    last_used: Optional[float] = None
    created_at: float
    cooldown_until: Optional[float] = None

    @classmethod
    def from_credential(cls, credential: Credential, cooldown_until: Optional[float] = None) -> "CredentialView":
        return cls(
            id=credential.id,
            key=SecurityManager.mask_secret(credential.key),
            status=credential.status,
            use_count=credential.use_count,
            last_used=credential.last_used,
            created_at=credential.created_at,
            cooldown_until=cooldown_until,
        )


class CredentialListResponse(BaseModel):
    keys: List[CredentialView]


class BatchAddSummary(BaseModel):
    total: int
    success: int
    failed: int


class BatchAddResponse(BaseModel):
    """Response schema for POST /api/keys/batch."""

    summary: BatchAddSummary
    added: List[str] = Field(default_factory=list, description="Masked keys that were added")
    failed: List[Dict[str, str]] = Field(default_factory=list, description="Masked keys that were rejected, with reasons")


class ExportKeysResponse(BaseModel):
    keys: List[str]


class ExportKeyResponse(BaseModel):
    key: str


class ProbeResponse(BaseModel):
    """Result of a credential or model health probe."""

    success: bool
    status: str
    error: Optional[str] = None


class SuccessResponse(BaseModel):
    success: bool = True


class CreateProxyKeyRequest(BaseModel):
    """Request schema for POST /api/proxy-keys."""

    name: Optional[str] = Field(default=None, max_length=100, description="Display name")


class ProxyKeyView(BaseModel):
    """Proxy access key with the key masked."""

    id: str
    key: str
    name: str
    use_count: int
    last_used: Optional[float] = None
    created_at: float

    @classmethod
    def from_proxy_key(cls, proxy_key: ProxyKey, reveal: bool = False) -> "ProxyKeyView":
        return cls(
            id=proxy_key.id,
            key=proxy_key.key if reveal else SecurityManager.mask_secret(proxy_key.key),
            name=proxy_key.name,
            use_count=proxy_key.use_count,
            last_used=proxy_key.last_used,
            created_at=proxy_key.created_at,
        )


class ProxyKeyListResponse(BaseModel):
    keys: List[ProxyKeyView]
    max_keys: int
    auth_enabled: bool


class ModelPoolRequest(BaseModel):
    """Request schema for PUT /api/models."""

    models: List[Any] = Field(..., description="Model names; blanks and duplicates are dropped")


class ModelPoolResponse(BaseModel):
    models: List[str]


class CatalogResponse(BaseModel):
    """Upstream model catalog."""

    source: str
    fetched_at: float
    ttl_s: float
    stale: bool
    last_error: Optional[str] = None
    models: List[str]


class ConfigPatchRequest(BaseModel):
    """Request schema for PATCH /api/config."""

    flush_interval_ms: float = Field(..., allow_inf_nan=False, description="Write-back flush interval in milliseconds")


class ConfigResponse(BaseModel):
    """Shared configuration plus the effective flush interval."""

    model_config = ConfigDict(protected_namespaces=())

    model_pool: List[str]
    current_model_index: int
    total_requests: int
    flush_interval_ms: int
    effective_flush_interval_ms: int
    min_flush_interval_ms: int
    schema_version: str


class KeyUsage(BaseModel):
    id: str
    masked_key: str
    use_count: int
    last_used: Optional[float] = None
    status: str
    cooldown_until: Optional[float] = None


class StatsResponse(BaseModel):
    """Response schema for GET /api/stats."""

    total_keys: int
    active_keys: int
    total_requests: int
    key_usage: List[KeyUsage]
