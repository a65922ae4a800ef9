from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.config_defaults import (
    DEFAULT_EMAIL_API_KEY,
    DEFAULT_EMAIL_API_URL,
    DEFAULT_EMAIL_FROM,
    DEFAULT_EMAIL_TIMEOUT_SECONDS,
    DEFAULT_ISSUANCE_BATCH_SIZE,
    DEFAULT_ISSUANCE_QUEUE_GROUP,
    DEFAULT_ISSUANCE_RECIPIENT_TIMEOUT_SECONDS,
    DEFAULT_NATS_CERT_DIR,
    DEFAULT_NATS_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_NATS_SERVERS,
    DEFAULT_NATS_TLS_ENABLED,
    DEFAULT_OBS_OTEL_ENABLED,
    DEFAULT_OBS_OTEL_OTLP_ENDPOINT,
    DEFAULT_OBS_OTEL_SAMPLER_RATIO,
    DEFAULT_OBS_OTEL_SERVICE_NAME,
    DEFAULT_OBS_OTEL_SERVICE_NAMESPACE,
    DEFAULT_OBS_OTEL_SERVICE_VERSION,
    DEFAULT_PLATFORM_NAME,
    DEFAULT_POSTGRES_DSN,
    DEFAULT_POSTGRES_MAX_SIZE,
    DEFAULT_POSTGRES_MIN_SIZE,
    default_config,
)
from core.config_loader import (
    apply_defaults,
    apply_env_overrides,
    apply_legacy_env_overrides,
    _load_raw_config,
)


class NatsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    servers: list[str] = Field(default_factory=lambda: list(DEFAULT_NATS_SERVERS))
    tls_enabled: bool = DEFAULT_NATS_TLS_ENABLED
    cert_dir: str = DEFAULT_NATS_CERT_DIR
    request_timeout_seconds: float = DEFAULT_NATS_REQUEST_TIMEOUT_SECONDS


class PostgresConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    dsn: str = DEFAULT_POSTGRES_DSN
    min_size: int = DEFAULT_POSTGRES_MIN_SIZE
    max_size: int = DEFAULT_POSTGRES_MAX_SIZE


class PlatformConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    name: str = DEFAULT_PLATFORM_NAME
    email_from_default: str = DEFAULT_EMAIL_FROM


class IssuanceConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    batch_size: int = Field(default=DEFAULT_ISSUANCE_BATCH_SIZE, ge=1)
    # <= 0 disables the per-recipient deadline
    recipient_timeout_seconds: Optional[float] = DEFAULT_ISSUANCE_RECIPIENT_TIMEOUT_SECONDS
    queue_group: str = DEFAULT_ISSUANCE_QUEUE_GROUP


class EmailConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    api_url: str = DEFAULT_EMAIL_API_URL
    api_key: str = DEFAULT_EMAIL_API_KEY
    timeout_seconds: float = DEFAULT_EMAIL_TIMEOUT_SECONDS


class ObservabilityOTelConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    enabled: bool = DEFAULT_OBS_OTEL_ENABLED
    service_namespace: str = DEFAULT_OBS_OTEL_SERVICE_NAMESPACE
    service_name: str = DEFAULT_OBS_OTEL_SERVICE_NAME
    service_version: str = DEFAULT_OBS_OTEL_SERVICE_VERSION
    otlp_endpoint: str = DEFAULT_OBS_OTEL_OTLP_ENDPOINT
    sampler_ratio: float = Field(default=DEFAULT_OBS_OTEL_SAMPLER_RATIO, ge=0.0, le=1.0)


class ObservabilityConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    otel: ObservabilityOTelConfig = Field(default_factory=ObservabilityOTelConfig)



class AppConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    nats: NatsConfig = Field(default_factory=NatsConfig)
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    platform: PlatformConfig = Field(default_factory=PlatformConfig)
    issuance: IssuanceConfig = Field(default_factory=IssuanceConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def load_app_config(path: Optional[Path] = None) -> AppConfig:
    raw = _load_raw_config(path=path)
    return AppConfig.model_validate(raw)


def normalize_config(config: Optional[AppConfig | Dict[str, Any]]) -> AppConfig:
    if config is None:
        return load_app_config()
    if isinstance(config, AppConfig):
        return config
    if isinstance(config, dict):
        raw = apply_legacy_env_overrides(dict(config))
        raw = apply_env_overrides(raw)
        raw = apply_defaults(raw, default_config())
        return AppConfig.model_validate(raw)
    raise TypeError("config must be AppConfig, dict, or None")


def config_to_dict(config: Optional[AppConfig | Dict[str, Any]]) -> Dict[str, Any]:
    return normalize_config(config).model_dump(mode="python")
