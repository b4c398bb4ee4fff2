"""Configuration loader for the accounts backend."""
from __future__ import annotations

import logging
import os
import re
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from typing_extensions import Literal

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

LOGGER = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = REPO_ROOT / ".env"

# Environment variable -> (section path, caster)
ENV_OVERRIDES = {
    "ACCOUNTS_DATABASE_URL": (("auth", "database_url"), str),
    "ACCESS_TOKEN_SECRET": (("auth", "jwt", "access_token_secret"), str),
    "REFRESH_TOKEN_SECRET": (("auth", "jwt", "refresh_token_secret"), str),
    "ACCESS_TOKEN_EXPIRY_MINUTES": (("auth", "jwt", "access_token_expires_minutes"), int),
    "REFRESH_TOKEN_EXPIRY_MINUTES": (("auth", "jwt", "refresh_token_expires_minutes"), int),
}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


class _FrozenModel(BaseModel):
    """Base model enforcing immutability for config sections."""

    model_config = ConfigDict(frozen=True)


class ServiceConfig(_FrozenModel):
    """HTTP surface settings."""

    name: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    api_prefix: str = Field("/api/v1/users", min_length=1)
    allowed_origins: List[str] = Field(default_factory=list)
    json_body_limit_kb: int = Field(16, ge=1)

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        stripped = value.strip().rstrip("/")
        if not stripped.startswith("/"):
            stripped = f"/{stripped}"
        return stripped


class AuthJWTConfig(_FrozenModel):
    """JWT signing settings for access and refresh credentials."""

    access_token_secret: str = Field(..., min_length=32)
    refresh_token_secret: str = Field(..., min_length=32)
    algorithm: str = Field("HS256", min_length=1)
    access_token_expires_minutes: int = Field(..., ge=1)
    refresh_token_expires_minutes: int = Field(..., ge=1)

    @property
    def access_token_ttl(self) -> timedelta:
        """Return the configured access token lifetime."""

        return timedelta(minutes=self.access_token_expires_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        """Return the configured refresh token lifetime."""

        return timedelta(minutes=self.refresh_token_expires_minutes)


class AuthCookieConfig(_FrozenModel):
    """Flags applied to the credential cookies."""

    http_only: bool = True
    secure: bool = True
    same_site: Literal["lax", "strict", "none"] = "lax"


class AuthConfig(_FrozenModel):
    """Top-level authentication configuration."""

    database_url: str = Field(..., min_length=1)
    jwt: AuthJWTConfig
    cookies: AuthCookieConfig = Field(default_factory=AuthCookieConfig)
    refresh_requires_access_token: bool = True


class StorageConfig(_FrozenModel):
    """Object storage configuration for avatar images."""

    bucket: str = Field(..., min_length=1)
    region: str = Field(..., min_length=1)
    prefix: str = Field("avatars")
    public_endpoint: Optional[str] = Field(default=None, min_length=1)
    secure: bool = False
    temp_dir: Optional[str] = None
    max_avatar_bytes: int = Field(2 * 1024 * 1024, ge=1)
    allowed_content_types: List[str] = Field(
        default_factory=lambda: ["image/jpeg", "image/png", "image/gif", "image/webp"]
    )


class AppConfig(_FrozenModel):
    """Top-level application configuration composed from config.yaml."""

    service: ServiceConfig
    auth: AuthConfig
    storage: StorageConfig

    @staticmethod
    def default_path() -> Path:
        """Return the default location of the configuration file.

        Returns:
            Path: Absolute path to config.yaml at the repository root.
        """
        return REPO_ROOT / "config.yaml"


def _env_file_path() -> Optional[Path]:
    """Return the ``.env`` file to merge into the environment, if any."""

    configured = os.getenv("ACCOUNTS_ENV_FILE")
    candidate = Path(configured).expanduser() if configured else DEFAULT_ENV_FILE
    if candidate.is_file():
        return candidate
    if configured:
        LOGGER.warning("Environment file %s does not exist; skipping", candidate)
    return None


def _merge_env_file(path: Path) -> None:
    """Fill unset or blank environment variables from the ``.env`` file at ``path``."""

    try:
        values = dotenv_values(path, encoding="utf-8")
    except OSError:
        LOGGER.warning("Unable to read environment file at %s", path)
        return
    for key, value in values.items():
        if value is None or os.environ.get(key, "").strip():
            continue
        os.environ[key] = value


def _parse_origins(value: str) -> List[str]:
    """Parse a comma or whitespace separated list of CORS origins."""

    candidates = [item.strip() for item in re.split(r"[,\s]+", value) if item and item.strip()]
    unique: List[str] = []
    for candidate in candidates:
        if candidate not in unique:
            unique.append(candidate)
    return unique


def _set_nested(raw_content: Dict[str, Any], path: tuple, value: Any) -> None:
    section = raw_content
    for key in path[:-1]:
        section = section.setdefault(key, {})
    section[path[-1]] = value


def _apply_environment_overrides(raw_content: Dict[str, Any]) -> Dict[str, Any]:
    """Merge environment-based overrides into the raw configuration mapping.

    Args:
        raw_content: Parsed YAML configuration prior to Pydantic validation.

    Returns:
        Dict[str, Any]: Configuration mapping with environment overrides applied.

    Raises:
        ConfigError: If a numeric override cannot be parsed.
    """

    env_file_path = _env_file_path()
    if env_file_path is not None:
        _merge_env_file(env_file_path)

    for env_key, (path, caster) in ENV_OVERRIDES.items():
        raw = os.getenv(env_key)
        if raw is None or not raw.strip():
            continue
        try:
            value = caster(raw.strip())
        except ValueError as exc:
            LOGGER.error("Invalid value for %s", env_key)
            raise ConfigError(f"Invalid value for {env_key}") from exc
        _set_nested(raw_content, path, value)
        LOGGER.info("Configuration value %s overridden from environment", ".".join(path))

    origins_raw = os.getenv("CORS_ORIGIN")
    if origins_raw:
        origins = _parse_origins(origins_raw)
        if origins:
            _set_nested(raw_content, ("service", "allowed_origins"), origins)
            LOGGER.info("CORS origins overridden from environment (count=%d)", len(origins))
    return raw_content


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Read YAML content from disk.

    Args:
        path: Location of the YAML file.

    Returns:
        Dict[str, Any]: Parsed YAML content.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        LOGGER.error("Configuration file missing at %s", path)
        raise ConfigError("Configuration file not found") from exc
    except yaml.YAMLError as exc:
        LOGGER.error("Invalid YAML syntax in %s", path)
        raise ConfigError("Invalid YAML syntax") from exc
    if not isinstance(data, dict):
        LOGGER.error("Configuration root must be a mapping: %s", path)
        raise ConfigError("Configuration root must be a mapping")
    return data


@lru_cache(maxsize=1)
def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from YAML.

    Args:
        path: Optional override path to the YAML file.

    Returns:
        AppConfig: Parsed configuration object.

    Raises:
        ConfigError: If the configuration cannot be loaded or validated.
    """
    config_path = path or AppConfig.default_path()
    raw_content = _read_yaml(config_path)
    raw_content = _apply_environment_overrides(raw_content)
    try:
        return AppConfig(**raw_content)
    except ValidationError as exc:
        LOGGER.error("Invalid configuration values: %s", exc)
        raise ConfigError("Configuration validation failed") from exc


__all__ = [
    "AppConfig",
    "AuthConfig",
    "AuthCookieConfig",
    "AuthJWTConfig",
    "ConfigError",
    "ServiceConfig",
    "StorageConfig",
    "load_config",
]
