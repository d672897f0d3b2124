"""Settings loader for the pay-per-call gateway."""
from __future__ import annotations

import re
from pathlib import Path
from typing import Annotated, List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .registry import CONFLICT_POLICIES


class LedgerPaths(BaseModel):
    balances: Path = Field(default=Path("/app/data/balances.json"))
    journal: Optional[Path] = Field(default=Path("/app/data/ledger-journal.log"))


class RegistryPaths(BaseModel):
    registry: Path = Field(default=Path("/app/data/registry.json"))


class UsagePaths(BaseModel):
    events: Path = Field(default=Path("/app/data/usage.jsonl"))


class BootstrapRegistration(BaseModel):
    slug: str = Field(min_length=1, max_length=128)
    upstream_base_url: str = Field(min_length=1, max_length=2048)
    price_per_call: str = Field(min_length=1, max_length=64)
    owner_wallet: str = Field(min_length=1, max_length=128)
    listing_id: str = Field(min_length=1, max_length=128)

    @field_validator("price_per_call", mode="before")
    @classmethod
    def stringify_price(cls, value):  # type: ignore[override]
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class GatewaySettings(BaseSettings):
    public_base_url: str = Field(default="http://localhost:4021")
    wallet_header: str = Field(default="X-Wallet-Address")
    upstream_timeout_seconds: float = Field(default=30.0)
    slug_conflict_policy: str = Field(default="overwrite")

    ledger: LedgerPaths = Field(default_factory=LedgerPaths)
    registry_paths: RegistryPaths = Field(default_factory=RegistryPaths)
    usage_paths: UsagePaths = Field(default_factory=UsagePaths)
    audit_log_path: Optional[Path] = Field(default=Path("/app/data/audit/registry.log"))

    bootstrap_apis_path: Optional[Path] = Field(default=Path("/app/data/apis.json"))
    bootstrap_apis_inline: Optional[str] = Field(default=None)

    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=4021)
    api_root_path: str = Field(default="")
    api_admin_token: Optional[str] = Field(default=None)
    viewer_tokens: Annotated[List[str], NoDecode] = Field(default_factory=list)

    registration_rate_limit_per_minute: int = Field(default=30)
    registration_rate_limit_burst: int = Field(default=10)

    usage_default_limit: int = Field(default=100)
    usage_max_limit: int = Field(default=1000)

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @field_validator("public_base_url")
    @classmethod
    def validate_public_base_url(cls, value: str) -> str:
        candidate = value.strip()
        if not candidate.startswith(("http://", "https://")):
            raise ValueError("GATEWAY_PUBLIC_BASE_URL must be an http(s) URL")
        return candidate.rstrip("/")

    @field_validator("wallet_header")
    @classmethod
    def validate_wallet_header(cls, value: str) -> str:
        candidate = value.strip()
        if not re.match(r"^[A-Za-z0-9-]+$", candidate):
            raise ValueError("GATEWAY_WALLET_HEADER must be a valid header name")
        return candidate

    @field_validator("slug_conflict_policy")
    @classmethod
    def validate_conflict_policy(cls, value: str) -> str:
        candidate = value.strip().lower()
        if candidate not in CONFLICT_POLICIES:
            raise ValueError(
                "GATEWAY_SLUG_CONFLICT_POLICY must be one of " + ", ".join(sorted(CONFLICT_POLICIES))
            )
        return candidate

    @field_validator("upstream_timeout_seconds")
    @classmethod
    def validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator(
        "api_port",
        "registration_rate_limit_per_minute",
        "registration_rate_limit_burst",
        "usage_default_limit",
        "usage_max_limit",
    )
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("viewer_tokens", mode="before")
    @classmethod
    def parse_viewer_tokens(cls, value):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, str):
            parts = re.split(r"[\s,]+", value.strip())
            return [part for part in parts if part]
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        candidate = value.strip().upper()
        if candidate not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("GATEWAY_LOG_LEVEL must be a standard logging level")
        return candidate


settings = GatewaySettings()
