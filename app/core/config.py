"""
Application configuration models and helpers.

Centralizes settings management so the FastAPI app and in-process callers of
the token lifecycle manager share a consistent configuration surface.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

import os

from pydantic import AnyHttpUrl, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Matches the salt historically used for stored tokens; changing it makes
# every existing ciphertext undecryptable.
DEFAULT_KDF_SALT = "salt"


def _load_env_file(path: str = ".env") -> None:
    """Best-effort load key=value pairs from a .env file without extra deps."""
    env_path = Path(path)
    if not env_path.exists():
        return
    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()


class SecuritySettings(BaseSettings):
    """Key-derivation inputs for encrypting stored tokens."""

    model_config = SettingsConfigDict(populate_by_name=True)

    master_secret: SecretStr = Field(
        ...,
        validation_alias="TOKEN_MASTER_SECRET",
        description="Master secret the token encryption key is derived from.",
    )
    kdf_salt: str = Field(
        DEFAULT_KDF_SALT,
        validation_alias="TOKEN_KDF_SALT",
        description="Salt fed to scrypt alongside the master secret.",
    )
    kdf_cost: int = Field(
        2**14,
        validation_alias="TOKEN_KDF_N",
        description="scrypt CPU/memory cost parameter (power of two).",
    )

    @field_validator("master_secret")
    @classmethod
    def _require_secret(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("TOKEN_MASTER_SECRET must not be empty.")
        return value

    @field_validator("kdf_cost")
    @classmethod
    def _power_of_two(cls, value: int) -> int:
        if value < 2 or value & (value - 1):
            raise ValueError("TOKEN_KDF_N must be a power of two greater than 1.")
        return value


class TokenSettings(BaseSettings):
    """Lifecycle policy for stored provider tokens."""

    model_config = SettingsConfigDict(populate_by_name=True)

    renewal_enabled: bool = Field(
        False,
        validation_alias="TOKEN_RENEWAL_ENABLED",
        description="Renew expired tokens on read instead of marking them invalid.",
    )
    provider_timeout_seconds: float = Field(
        10.0,
        gt=0,
        validation_alias="TOKEN_PROVIDER_TIMEOUT_SECONDS",
    )
    expiry_leeway_seconds: int = Field(
        0,
        ge=0,
        validation_alias="TOKEN_EXPIRY_LEEWAY_SECONDS",
        description="Treat tokens expiring within this window as already expired.",
    )


class MetaSettings(BaseSettings):
    """Configuration for the Meta Graph API."""

    model_config = SettingsConfigDict(populate_by_name=True)

    app_id: Optional[str] = Field(None, validation_alias="META_APP_ID")
    app_secret: Optional[SecretStr] = Field(None, validation_alias="META_APP_SECRET")
    graph_base_url: AnyHttpUrl = Field(
        "https://graph.facebook.com", validation_alias="META_GRAPH_BASE_URL"
    )
    graph_api_version: str = Field("v18.0", validation_alias="META_GRAPH_API_VERSION")

    @property
    def app_access_token(self) -> Optional[str]:
        """App token used to introspect user tokens, when app credentials exist."""
        if not self.app_id or not self.app_secret:
            return None
        return f"{self.app_id}|{self.app_secret.get_secret_value()}"


class StorageSettings(BaseSettings):
    """Where token records are persisted."""

    model_config = SettingsConfigDict(populate_by_name=True)

    backend: Literal["memory", "sqlite", "dynamodb"] = Field(
        "sqlite", validation_alias="STORAGE_BACKEND"
    )
    db_path: str = Field("data/tokens.db", validation_alias="TOKEN_STORE_DB_PATH")
    dynamodb_table_name: Optional[str] = Field(None, validation_alias="DYNAMODB_TABLE_NAME")
    region_name: str = Field("us-east-1", validation_alias="AWS_REGION")


class AppSettings(BaseSettings):
    """Root settings object for the FastAPI application."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    environment: str = Field("development", validation_alias="APP_ENV")
    log_level: str = Field("INFO", validation_alias="APP_LOG_LEVEL")
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    tokens: TokenSettings = Field(default_factory=TokenSettings)
    meta: MetaSettings = Field(default_factory=MetaSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()  # type: ignore[call-arg]


__all__ = [
    "AppSettings",
    "DEFAULT_KDF_SALT",
    "MetaSettings",
    "SecuritySettings",
    "StorageSettings",
    "TokenSettings",
    "get_settings",
]
