"""Configuration system for Gatehouse using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.gatehouse] section (project-level)
3. ./gatehouse.toml (project-level, explicit)
4. The file named by GATEHOUSE_CONFIG_FILE
5. Environment variables (highest priority)

Environment variables use GATEHOUSE_ prefix with nested delimiter __.
Example: GATEHOUSE_SESSION__SECRET, GATEHOUSE_COOKIES__USE_SECURE_COOKIES
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from .checks import DEFAULT_CHECK_MAX_AGE
from .cookies import create_cookies_options
from .exceptions import ConfigurationError
from .providers import (
    Endpoint,
    GitHubProvider,
    GoogleProvider,
    OAuthConfig,
    OAuthProvider,
    OIDCConfig,
    OIDCProvider,
)
from .session import DEFAULT_ACCESS_TOKEN_MAX_AGE, DEFAULT_REFRESH_TOKEN_MAX_AGE


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


if TYPE_CHECKING:
    from .cookies import CookiesOptions
    from .providers import Provider


logger = logging.getLogger("gatehouse.config")


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    # Project-level pyproject.toml [tool.gatehouse] (lowest file priority)
    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    gatehouse_toml = Path("gatehouse.toml")
    if gatehouse_toml.exists():
        files.append(gatehouse_toml)

    env_config = os.environ.get("GATEHOUSE_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", config_file, exc)
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("gatehouse", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class TomlSettingsSource(PydanticBaseSettingsSource):
    """Settings source reading the merged TOML configuration files."""

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        # Values are provided as a whole by __call__
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        return _load_toml_config()


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {"secret", "client_secret"}

_REDACTED = "********"


class CookieSettings(BaseSettings):
    """Cookie policy settings.

    Environment prefix: GATEHOUSE_COOKIES__
    Example: GATEHOUSE_COOKIES__USE_SECURE_COOKIES=true
    """

    model_config = SettingsConfigDict(
        env_prefix="GATEHOUSE_COOKIES__",
        extra="ignore",
    )

    use_secure_cookies: bool = Field(
        default=False,
        description="Set the Secure attribute and the __Secure- name prefix",
    )
    prefix: str = Field(default="gatehouse", min_length=1, description="Cookie name prefix")
    same_site: Literal["lax", "strict", "none"] = "lax"
    domain: str | None = None

    def to_options(self) -> CookiesOptions:
        """Build the cookie policy."""
        return create_cookies_options(
            use_secure_cookies=self.use_secure_cookies,
            prefix=self.prefix,
            same_site=self.same_site,
            domain=self.domain,
        )


class SessionSettings(BaseSettings):
    """Secret and lifetimes of session and check cookies.

    Environment prefix: GATEHOUSE_SESSION__
    Example: GATEHOUSE_SESSION__SECRET=change-me
    """

    model_config = SettingsConfigDict(
        env_prefix="GATEHOUSE_SESSION__",
        extra="ignore",
    )

    secret: str = Field(default="", description="Secret all Gatehouse cookies are bound to")
    access_token_max_age: int = Field(default=DEFAULT_ACCESS_TOKEN_MAX_AGE, ge=1)
    refresh_token_max_age: int = Field(default=DEFAULT_REFRESH_TOKEN_MAX_AGE, ge=1)
    check_max_age: int = Field(
        default=DEFAULT_CHECK_MAX_AGE,
        ge=1,
        description="Lifetime of state/PKCE/nonce cookies in seconds",
    )


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: GATEHOUSE_LOG__
    Example: GATEHOUSE_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="GATEHOUSE_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"


class ProviderSettings(BaseModel):
    """One configured login provider.

    TOML section: [[tool.gatehouse.providers]]
    """

    id: str = Field(min_length=1)
    kind: Literal["oauth2", "oidc", "github", "google"] = "oauth2"
    client_id: str = ""
    client_secret: str = ""
    issuer: str = ""
    authorization_url: str = ""
    token_url: str = ""
    userinfo_url: str = ""
    jwks_url: str = ""
    scopes: str = Field(default="", description="Space-separated scopes to request")
    checks: list[str] | None = Field(
        default=None,
        description="Enabled checks; the provider's default when unset",
    )

    @field_validator("checks", mode="before")
    @classmethod
    def _parse_checks(cls, v: Any) -> Any:
        """Accept a comma-separated string or a list."""
        if isinstance(v, str):
            return [c.strip() for c in v.split(",") if c.strip()]
        return v


class GatehouseSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: GATEHOUSE_

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.gatehouse] section
    3. ./gatehouse.toml (project-level)
    4. GATEHOUSE_CONFIG_FILE
    5. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="GATEHOUSE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    base_path: str = Field(default="/auth", description="Base path of the auth pages")
    error_page: str | None = Field(
        default=None,
        description="Redirect failed logins here with ?error=<code> instead of a JSON error",
    )
    cookies: CookieSettings = Field(default_factory=CookieSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    log: LogSettings = Field(default_factory=LogSettings)
    providers: list[ProviderSettings] = Field(default_factory=list)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # TOML files rank below environment variables
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlSettingsSource(settings_cls),
            file_secret_settings,
        )

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["Gatehouse Configuration", "=" * 60, ""]
        lines.append(f"  {'base_path':24} = {self.base_path}")
        lines.append(f"  {'error_page':24} = {self.error_page}")

        show_sections = [
            ("Cookies", "cookies"),
            ("Session", "session"),
            ("Logging", "log"),
        ]
        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, attr in show_sections},
        )
        for display_name, attr_name in show_sections:
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in all_data.get(attr_name, {}).items():
                lines.append(f"  {field_name:24} = {field_value}")
            section_cls = type(getattr(self, attr_name))
            lines.extend(
                f"  {rn:24} = {_REDACTED}"
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )

        for provider in self.providers:
            lines.append(f"\nProvider: {provider.id}")
            lines.append("-" * 40)
            for field_name, field_value in provider.model_dump(exclude=_SENSITIVE_FIELDS).items():
                lines.append(f"  {field_name:24} = {field_value}")
            lines.append(f"  {'client_secret':24} = {_REDACTED}")

        return "\n".join(lines)


def create_provider_from_settings(settings: ProviderSettings) -> Provider:
    """Instantiate a provider from its settings.

    Parameters
    ----------
    settings : ProviderSettings
        Provider section.

    Returns
    -------
    Provider
        A configured provider.

    Raises
    ------
    ConfigurationError
        If the client id is missing or the endpoints are incomplete.
    """
    if not settings.client_id:
        msg = f"Provider '{settings.id}' requires client_id"
        raise ConfigurationError(msg, provider=settings.id)

    options: dict[str, Any] = {"id": settings.id}
    if settings.checks is not None:
        options["checks"] = tuple(settings.checks)
    scopes = tuple(settings.scopes.split()) or None

    if settings.kind == "github":
        return GitHubProvider(settings.client_id, settings.client_secret, scopes, **options)
    if settings.kind == "google":
        return GoogleProvider(settings.client_id, settings.client_secret, scopes, **options)

    if scopes is not None:
        options["scopes"] = scopes
    common = {
        "client_id": settings.client_id,
        "client_secret": settings.client_secret,
        "issuer": settings.issuer,
        "authorization": Endpoint(url=settings.authorization_url),
        "token": Endpoint(url=settings.token_url),
        "userinfo": Endpoint(url=settings.userinfo_url),
        **options,
    }
    if settings.kind == "oidc":
        return OIDCProvider(OIDCConfig(jwks_url=settings.jwks_url, **common))
    return OAuthProvider(OAuthConfig(**common))


@lru_cache(maxsize=1)
def get_settings() -> GatehouseSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return GatehouseSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> GatehouseSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
