"""Application settings and configuration.

This module defines all configuration options for the Nostr Stage service.
Settings are loaded from environment variables with sensible defaults and are
validated once, eagerly, when the module is imported.
"""

import base64
import binascii
import re
from enum import Enum
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


_HEX_KEY_PATTERN = re.compile(r"^(?:0x)?[0-9a-fA-F]{64}$")
ENCRYPTION_KEY_BYTES = 32


class AuthProvider(str, Enum):
    """Closed set of ways a user can prove or resume an identity."""

    NOSTR = "nostr"
    ANONYMOUS = "anonymous"
    RECONNECT = "reconnect"
    RECOVERY = "recovery"


def decode_encryption_key(value: str) -> bytes:
    """Decode an operator encryption key given as hex or base64.

    Raises:
        ValueError: If the value is neither encoding or does not decode to 32 bytes.
    """
    normalized = value.strip()
    attempts: list[bytes] = []
    if _HEX_KEY_PATTERN.match(normalized):
        hex_value = normalized[2:] if normalized.startswith("0x") else normalized
        attempts.append(bytes.fromhex(hex_value))
    try:
        attempts.append(base64.b64decode(normalized, validate=True))
    except (binascii.Error, ValueError):
        pass

    if not attempts:
        raise ValueError("PRIVKEY_ENCRYPTION_KEY is not valid hex or base64")
    for candidate in attempts:
        if len(candidate) == ENCRYPTION_KEY_BYTES:
            return candidate
    raise ValueError("PRIVKEY_ENCRYPTION_KEY must decode to exactly 32 bytes (256 bits)")


CsvList = Annotated[list[str], NoDecode]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Nostr Stage", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Security and authentication
    secret_key: str = Field(default="change-me", alias="SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(
        default=60 * 24 * 30,
        alias="ACCESS_TOKEN_EXPIRE_MINUTES",
    )
    privkey_encryption_key: str | None = Field(default=None, alias="PRIVKEY_ENCRYPTION_KEY")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")
    auth_providers: Annotated[list[AuthProvider], NoDecode] = Field(
        default=list(AuthProvider),
        alias="AUTH_PROVIDERS",
    )
    anonymous_username_prefix: str = Field(default="anon_", alias="ANONYMOUS_USERNAME_PREFIX")
    anonymous_username_length: int = Field(default=8, alias="ANONYMOUS_USERNAME_LENGTH")
    anonymous_avatar_base_url: str = Field(
        default="https://api.dicebear.com/7.x/shapes/svg?seed=",
        alias="ANONYMOUS_AVATAR_BASE_URL",
    )

    # Database configuration
    database_url: str = Field(default="sqlite:///./nostr_stage.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Redis configuration for rate limiting
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    rate_limit_require_shared_store: bool = Field(
        default=False,
        alias="RATE_LIMIT_REQUIRE_SHARED_STORE",
    )

    # Relay configuration
    relays_default: CsvList = Field(
        default=["wss://relay.damus.io", "wss://nos.lol", "wss://relay.primal.net"],
        alias="RELAYS_DEFAULT",
    )
    relays_content: CsvList = Field(default_factory=list, alias="RELAYS_CONTENT")
    relays_profile: CsvList = Field(default_factory=list, alias="RELAYS_PROFILE")
    relays_custom: CsvList = Field(default_factory=list, alias="RELAYS_CUSTOM")
    relay_ack_timeout_seconds: float = Field(default=10.0, alias="RELAY_ACK_TIMEOUT_SECONDS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @field_validator("relays_default", "relays_content", "relays_profile", "relays_custom",
                     mode="before")
    @classmethod
    def _split_relays(cls, value: object) -> object:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("auth_providers", mode="before")
    @classmethod
    def _split_providers(cls, value: object) -> object:
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        return value

    @field_validator("privkey_encryption_key")
    @classmethod
    def _validate_encryption_key(cls, value: str | None) -> str | None:
        """Reject a malformed operator key at startup rather than on first use."""
        if value is None or not value.strip():
            return None
        decode_encryption_key(value)
        return value.strip()

    @property
    def encryption_key_bytes(self) -> bytes | None:
        """Return the decoded operator key, or None when running unencrypted."""
        if not self.privkey_encryption_key:
            return None
        return decode_encryption_key(self.privkey_encryption_key)

    @property
    def relay_sets(self) -> dict[str, list[str]]:
        """Return configured relay sets keyed by name."""
        return {
            "default": list(self.relays_default),
            "content": list(self.relays_content),
            "profile": list(self.relays_profile),
        }

    def provider_enabled(self, provider: AuthProvider) -> bool:
        """Return True if the given authentication provider is enabled."""
        return provider in self.auth_providers


settings = Settings()
