from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from halfkey.db.repositories import parse_whitelist
from halfkey.models.credentials import (
    APP_RECOGNITION_VERDICTS,
    PLAY_RECOGNIZED,
    Credential,
    DeviceCheckConfig,
    PlayIntegrityConfig,
)


class DeviceCheckSettings(BaseModel):
    key_id: str
    team_id: str
    private_key: str
    bypass_token: str = ""


class PlayIntegritySettings(BaseModel):
    package_name: str
    service_account: dict[str, Any]
    bypass_token: str = ""
    allowed_app_recognition_verdicts: list[str] = Field(default_factory=lambda: [PLAY_RECOGNIZED])

    @field_validator("service_account", mode="before")
    @classmethod
    def parse_service_account(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value

    @field_validator("allowed_app_recognition_verdicts")
    @classmethod
    def validate_verdicts(cls, value: list[str]) -> list[str]:
        unknown = set(value) - APP_RECOGNITION_VERDICTS
        if unknown:
            raise ValueError(f"unknown app recognition verdicts: {sorted(unknown)}")
        return value


class CredentialSettings(BaseModel):
    id: str
    server_share: str
    name: str | None = None
    owner_id: str | None = None
    whitelist: list[str] = Field(default_factory=list)
    rate_limit: int | None = None
    allows_web: bool = False
    device_check: DeviceCheckSettings | None = None
    play_integrity: PlayIntegritySettings | None = None

    def to_credential(self) -> Credential:
        device_check = None
        if self.device_check is not None:
            device_check = DeviceCheckConfig(
                key_id=self.device_check.key_id,
                team_id=self.device_check.team_id,
                private_key_pem=self.device_check.private_key,
                bypass_token=self.device_check.bypass_token,
            )
        play_integrity = None
        if self.play_integrity is not None:
            play_integrity = PlayIntegrityConfig(
                package_name=self.play_integrity.package_name,
                service_account=self.play_integrity.service_account,
                bypass_token=self.play_integrity.bypass_token,
                allowed_app_verdicts=frozenset(self.play_integrity.allowed_app_recognition_verdicts),
            )
        return Credential(
            id=self.id,
            name=self.name,
            owner_id=self.owner_id,
            server_share=self.server_share,
            whitelist=parse_whitelist(self.whitelist),
            rate_limit=self.rate_limit,
            allows_web=self.allows_web,
            device_check=device_check,
            play_integrity=play_integrity,
        )


class GeneralSettings(BaseModel):
    header_prefix: str | None = None
    database_url: str | None = None
    forward_timeout: float | None = None
    play_integrity_timeout: float | None = None
    device_check_timeout: float | None = None
    device_check_sandbox_fallback: bool | None = None
    rate_limit_window_seconds: int | None = None
    attestation_client_cache_size: int | None = None
    attestation_client_cache_ttl: int | None = None
    blacklisted_destinations: list[str] = Field(default_factory=list)
    usage_webhook_url: str | None = None


class AppConfig(BaseModel):
    general_settings: GeneralSettings = Field(default_factory=GeneralSettings)
    credentials: list[CredentialSettings] = Field(default_factory=list)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="HALFKEY_", extra="ignore")

    app_name: str = "HalfKey Gateway"
    app_env: str = "dev"
    version: str = "0.1.0"
    log_level: str = "INFO"
    config_path: str = "config.yaml"
    header_prefix: str = ""
    database_url: str | None = None
    database_host: str | None = None
    forward_timeout: float = 60.0
    play_integrity_timeout: float = 10.0
    device_check_timeout: float = 10.0
    device_check_sandbox_fallback: bool = True
    rate_limit_window_seconds: int = 300
    rate_limit_prune_interval: int = 600
    attestation_client_cache_size: int = 256
    attestation_client_cache_ttl: int = 3600
    blacklisted_destinations: list[str] = Field(default_factory=list)
    usage_webhook_url: str | None = None
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])


class GatewaySettings(BaseModel):
    """Settings after merging the YAML ``general_settings`` over the environment."""

    header_prefix: str
    database_url: str | None
    forward_timeout: float
    play_integrity_timeout: float
    device_check_timeout: float
    device_check_sandbox_fallback: bool
    rate_limit_window_seconds: int
    attestation_client_cache_size: int
    attestation_client_cache_ttl: int
    blacklisted_destinations: list[str]
    usage_webhook_url: str | None


def merge_settings(settings: Settings, cfg: AppConfig) -> GatewaySettings:
    general = cfg.general_settings
    blacklist = list(settings.blacklisted_destinations) + list(general.blacklisted_destinations)
    if settings.database_host:
        blacklist.append(settings.database_host)

    def pick(name: str) -> Any:
        value = getattr(general, name)
        return getattr(settings, name) if value is None else value

    return GatewaySettings(
        header_prefix=pick("header_prefix"),
        database_url=pick("database_url"),
        forward_timeout=pick("forward_timeout"),
        play_integrity_timeout=pick("play_integrity_timeout"),
        device_check_timeout=pick("device_check_timeout"),
        device_check_sandbox_fallback=pick("device_check_sandbox_fallback"),
        rate_limit_window_seconds=pick("rate_limit_window_seconds"),
        attestation_client_cache_size=pick("attestation_client_cache_size"),
        attestation_client_cache_ttl=pick("attestation_client_cache_ttl"),
        blacklisted_destinations=blacklist,
        usage_webhook_url=pick("usage_webhook_url"),
    )


def _resolve_env_token(value: Any) -> Any:
    if isinstance(value, str) and value.startswith("os.environ/"):
        env_name = value.split("/", 1)[1]
        return os.getenv(env_name)
    if isinstance(value, dict):
        return {k: _resolve_env_token(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_token(v) for v in value]
    return value


def load_yaml_config(path: str | Path) -> AppConfig:
    cfg_path = Path(path)
    if not cfg_path.exists():
        return AppConfig()

    data = yaml.safe_load(cfg_path.read_text()) or {}
    return AppConfig.model_validate(_resolve_env_token(data))


@lru_cache
def get_settings() -> Settings:
    return Settings()
