"""Configuration system for walletsession using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.walletsession] section (project-level)
3. ./walletsession.toml (project-level, explicit)
4. ~/.config/walletsession/config.toml (user-level, overrides project)
5. Environment variables (highest priority)

Environment variables use the WALLETSESSION_ prefix with nested delimiter __.
Example: WALLETSESSION_NETWORK__CHAIN_ID, WALLETSESSION_SOCIAL__CLIENT_ID
"""

from __future__ import annotations

import logging
import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, ClassVar, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomli as tomllib  # type: ignore[import-not-found]
    except ImportError:
        tomllib = None


logger = logging.getLogger("walletsession.config")


def _user_config_path() -> Path:
    """Location of the user-level configuration file."""
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", "~")) / "walletsession"
    else:
        base = Path("~/.config/walletsession")
    return (base / "config.toml").expanduser()


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    project_toml = Path("walletsession.toml")
    if project_toml.exists():
        files.append(project_toml)

    user_config = _user_config_path()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("WALLETSESSION_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    if tomllib is None:
        return {}

    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", config_file, exc)
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("walletsession", {})

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


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {
    "client_secret",
}

_REDACTED = "********"


class NetworkSettings(BaseSettings):
    """Chain the wallets must be connected to.

    Environment prefix: WALLETSESSION_NETWORK__
    Example: WALLETSESSION_NETWORK__CHAIN_ID=8453
    """

    model_config = SettingsConfigDict(
        env_prefix="WALLETSESSION_NETWORK__",
        extra="ignore",
    )

    chain_id: int = Field(default=8453, ge=1, description="EIP-155 chain identifier")
    chain_name: str = Field(default="Base", description="Human-readable chain name")
    rpc_url: str = Field(
        default="https://mainnet.base.org",
        description="Public JSON-RPC endpoint used for read calls",
    )


class SocialLoginSettings(BaseSettings):
    """Social-login embedded-wallet provider.

    Environment prefix: WALLETSESSION_SOCIAL__
    Example: WALLETSESSION_SOCIAL__CLIENT_ID=your-client-id

    TOML section: [tool.walletsession.social]
    """

    model_config = SettingsConfigDict(
        env_prefix="WALLETSESSION_SOCIAL__",
        extra="ignore",
    )

    client_id: str = Field(default="", description="Client ID issued by the identity service")
    client_secret: str = Field(
        default="",
        description="Client secret (empty for public clients with PKCE)",
    )
    authorize_url: str = Field(default="", description="Authorization endpoint URL")
    token_url: str = Field(default="", description="Token exchange endpoint URL")
    wallet_url: str = Field(
        default="",
        description="Embedded wallet API base URL (address lookup and signing)",
    )
    scopes: str = Field(
        default="openid email profile",
        description="Space-separated scopes to request",
    )
    redirect_uri: str = Field(
        default="",
        description=(
            "Redirect URI for full-page redirect logins. Empty uses an "
            "ephemeral localhost callback server (popup-style login)."
        ),
    )
    auth_timeout_seconds: float = Field(
        default=120.0,
        ge=5.0,
        description="Maximum seconds to wait for the login callback",
    )


class DeepLinkSettings(BaseSettings):
    """Deep-link (mobile redirect) wallet provider.

    Environment prefix: WALLETSESSION_DEEP_LINK__
    """

    model_config = SettingsConfigDict(
        env_prefix="WALLETSESSION_DEEP_LINK__",
        extra="ignore",
    )

    wallet_link: str = Field(
        default="",
        description="Universal/deep link base of the wallet app (e.g. https://metamask.app.link/wc)",
    )
    pairing_uri: str = Field(default="", description="Pairing URI handed to the wallet app")
    connect_timeout_seconds: float = Field(default=60.0, ge=1.0)
    poll_interval_seconds: float = Field(default=1.0, gt=0.0)


class BackendSettings(BaseSettings):
    """Backend session endpoints.

    Environment prefix: WALLETSESSION_BACKEND__
    Example: WALLETSESSION_BACKEND__BASE_URL=https://app.example.com/api
    """

    model_config = SettingsConfigDict(
        env_prefix="WALLETSESSION_BACKEND__",
        extra="ignore",
    )

    base_url: str = Field(default="http://localhost:8080", description="Backend base URL")
    login_path: str = "/auth/login"
    logout_path: str = "/auth/logout"
    identity_path: str = "/auth/identity"
    timeout_seconds: float = Field(default=30.0, gt=0.0)


class StorageSettings(BaseSettings):
    """Credential persistence.

    Environment prefix: WALLETSESSION_STORAGE__
    """

    model_config = SettingsConfigDict(
        env_prefix="WALLETSESSION_STORAGE__",
        extra="ignore",
    )

    durable_backend: Literal["file", "keyring", "memory"] = Field(
        default="file",
        description="Durable storage scope backend: file, keyring, or memory",
    )
    file_path: str = Field(
        default="~/.config/walletsession/storage.json",
        description="JSON file used by the file backend",
    )
    keyring_service: str = Field(default="walletsession", description="Keyring service name")
    token_key: str = Field(default="auth_token", description="Key the credential is stored under")


class RedirectSettings(BaseSettings):
    """Redirect reconciliation.

    Environment prefix: WALLETSESSION_REDIRECT__
    Example: WALLETSESSION_REDIRECT__MARKERS=code,state
    """

    model_config = SettingsConfigDict(
        env_prefix="WALLETSESSION_REDIRECT__",
        extra="ignore",
    )

    markers: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["code", "state"],
        description="Query parameters whose presence marks a redirect completion",
    )
    retry_delays: Annotated[list[float], NoDecode] = Field(
        default_factory=lambda: [0.0, 0.5, 1.5],
        description="Delays (seconds) between provider connection checks",
    )
    scope: str = Field(default="default", description="Redirect attempt scope (one per tab)")

    @field_validator("markers", mode="before")
    @classmethod
    def _parse_markers(cls, v: Any) -> list[str]:
        """Accept a comma-separated string (from env var) or a list."""
        if isinstance(v, str):
            v = [p.strip() for p in v.split(",") if p.strip()]
        if not isinstance(v, list) or len(v) != 2:
            msg = "redirect markers must name exactly two query parameters"
            raise ValueError(msg)
        return v

    @field_validator("retry_delays", mode="before")
    @classmethod
    def _parse_retry_delays(cls, v: Any) -> list[float]:
        """Accept a comma-separated string (from env var) or a list."""
        if isinstance(v, str):
            v = [float(p) for p in v.split(",") if p.strip()]
        if not isinstance(v, list) or not v:
            msg = "retry_delays must be a non-empty list"
            raise ValueError(msg)
        if any(float(d) < 0 for d in v):
            msg = "retry_delays must not be negative"
            raise ValueError(msg)
        return [float(d) for d in v]


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: WALLETSESSION_LOG__
    Example: WALLETSESSION_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="WALLETSESSION_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class WalletSessionSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: WALLETSESSION__

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.walletsession] section
    3. ./walletsession.toml (project-level)
    4. ~/.config/walletsession/config.toml (user-level, overrides project)
    5. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="WALLETSESSION__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    network: NetworkSettings = Field(default_factory=NetworkSettings)
    social: SocialLoginSettings = Field(default_factory=SocialLoginSettings)
    deep_link: DeepLinkSettings = Field(default_factory=DeepLinkSettings)
    backend: BackendSettings = Field(default_factory=BackendSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    redirect: RedirectSettings = Field(default_factory=RedirectSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    schema_version: str = Field(
        default="1",
        min_length=1,
        description="Version tag for cached provider-derived resources",
    )
    context: Literal["host_embedded", "injected_wallet", "mobile_browser", "standard"] | None = (
        Field(
            default=None,
            description="Force the execution context instead of detecting it",
        )
    )

    _SECTIONS: ClassVar[tuple[tuple[str, str, str], ...]] = (
        ("Network", "NETWORK", "network"),
        ("Social Login", "SOCIAL", "social"),
        ("Deep Link Wallet", "DEEP_LINK", "deep_link"),
        ("Backend", "BACKEND", "backend"),
        ("Storage", "STORAGE", "storage"),
        ("Redirect", "REDIRECT", "redirect"),
        ("Logging", "LOG", "log"),
    )

    def __init__(self, **data: Any) -> None:
        toml_config = _load_toml_config()
        super().__init__(**_deep_merge(toml_config, data))

    def _section_data(self) -> dict[str, Any]:
        """Dump all sections with sensitive fields excluded."""
        return self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, _, attr in self._SECTIONS},
        )

    def _redacted_fields(self, attr_name: str) -> list[str]:
        """Sensitive field names defined on a section's model class."""
        section_cls = type(getattr(self, attr_name))
        return sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())

    def to_toml(self) -> str:
        """Export settings as TOML string."""
        lines = ["# walletsession configuration", "# Generated by: walletsession config --toml", ""]
        lines.append(f'schema_version = "{self.schema_version}"')
        if self.context is not None:
            lines.append(f'context = "{self.context}"')
        lines.append("")

        all_data = self._section_data()
        for _, _, attr_name in self._SECTIONS:
            lines.append(f"[{attr_name}]")
            for field_name, field_value in all_data[attr_name].items():
                lines.append(f"{field_name} = {_toml_value(field_value)}")
            lines.extend(f'{rn} = "{_REDACTED}"' for rn in self._redacted_fields(attr_name))
            lines.append("")

        return "\n".join(lines)

    def to_env(self) -> str:
        """Export settings as shell environment variables."""
        lines = [
            "# walletsession environment variables",
            "# Generated by: walletsession config --env",
            "",
            f'export WALLETSESSION__SCHEMA_VERSION="{self.schema_version}"',
        ]

        all_data = self._section_data()
        for _, env_prefix, attr_name in self._SECTIONS:
            for field_name, field_value in all_data[attr_name].items():
                env_name = f"WALLETSESSION_{env_prefix}__{field_name.upper()}"
                if isinstance(field_value, list):
                    value_str = ",".join(str(v) for v in field_value)
                elif isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                else:
                    value_str = str(field_value)
                lines.append(f'export {env_name}="{value_str}"')
            for redacted_name in self._redacted_fields(attr_name):
                env_name = f"WALLETSESSION_{env_prefix}__{redacted_name.upper()}"
                lines.append(f'export {env_name}="{_REDACTED}"')

        return "\n".join(lines)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["walletsession configuration", "=" * 60, ""]
        lines.append(f"  {'schema_version':20} = {self.schema_version}")
        lines.append(f"  {'context':20} = {self.context or '(detected)'}")

        all_data = self._section_data()
        for display_name, _, attr_name in self._SECTIONS:
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in all_data[attr_name].items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:20} = {value_str}")
            lines.extend(f"  {rn:20} = {_REDACTED}" for rn in self._redacted_fields(attr_name))

        return "\n".join(lines)


def _toml_value(value: Any) -> str:
    """Render a scalar or list as a TOML value."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(v) for v in value) + "]"
    if isinstance(value, str):
        return f'"{value}"'
    return str(value)


@lru_cache(maxsize=1)
def get_settings() -> WalletSessionSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return WalletSessionSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> WalletSessionSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
