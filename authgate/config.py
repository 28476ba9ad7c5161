"""Configuration system for authgate using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.authgate] section (project-level)
3. ./authgate.toml (project-level, explicit)
4. The file named by AUTHGATE_CONFIG_FILE
5. Environment variables (highest priority)

Environment variables use the AUTHGATE_ prefix with nested delimiter __.
Example: AUTHGATE_SESSION__TTL, AUTHGATE_GITHUB__CLIENT_ID

The settings models only hold plain values. Runtime collaborators
(error handler, token extractors, skip predicates, clock) are combined
with them once, at construction, in :class:`GateConfig`.
"""

from __future__ import annotations

import logging
import os
import secrets
import sys
import time

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, NoDecode, PydanticBaseSettingsSource, SettingsConfigDict

from .exceptions import ConfigurationError
from .extractors import TokenExtractor, from_cookie, from_header
from .http import ErrorHandler, default_error_handler


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


if TYPE_CHECKING:
    from starlette.requests import Request


logger = logging.getLogger("authgate.config")


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    authgate_toml = Path("authgate.toml")
    if authgate_toml.exists():
        files.append(authgate_toml)

    env_config = os.environ.get("AUTHGATE_CONFIG_FILE")
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
            data = data.get("tool", {}).get("authgate", {})

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


class _TomlSettingsSource(PydanticBaseSettingsSource):
    """Settings source reading the merged TOML configuration files."""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        # Values are provided as a whole by __call__.
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        return _load_toml_config()


def _split_list(v: Any) -> list[str]:
    """Parse comma-separated strings from env vars."""
    if isinstance(v, str):
        return [s.strip() for s in v.split(",") if s.strip()]
    return list(v or [])


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {
    "client_secret",
    "secret_key",
    "redis_url",
}

_REDACTED = "********"


class SessionSettings(BaseSettings):
    """Session and session cookie settings.

    Environment prefix: AUTHGATE_SESSION__
    Example: AUTHGATE_SESSION__TTL=3600
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTHGATE_SESSION__",
        extra="ignore",
    )

    cookie_name: str = Field(
        default="authgate_session",
        min_length=1,
        description="Name of the cookie carrying the session token",
    )
    ttl: int = Field(
        default=7 * 3600,
        ge=60,
        description="Sliding session lifetime in seconds",
    )
    cookie_secure: bool = Field(
        default=False,
        description="Set the Secure attribute on the session cookie",
    )
    cookie_samesite: Literal["lax", "strict", "none"] = Field(
        default="lax",
        description="SameSite attribute of the session cookie",
    )
    cookie_path: str = Field(default="/", description="Path attribute of the session cookie")
    cookie_domain: str = Field(
        default="",
        description="Domain attribute of the session cookie (empty for host-only)",
    )
    adapter_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound in seconds for every storage adapter call",
    )

    @model_validator(mode="after")
    def _samesite_none_requires_secure(self) -> SessionSettings:
        """Browsers drop SameSite=None cookies that are not Secure."""
        if self.cookie_samesite == "none" and not self.cookie_secure:
            msg = "cookie_samesite='none' requires cookie_secure=True"
            raise ValueError(msg)
        return self


class CsrfSettings(BaseSettings):
    """CSRF guard settings.

    Environment prefix: AUTHGATE_CSRF__
    Example: AUTHGATE_CSRF__HEADER_NAME=X-XSRF-Token
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTHGATE_CSRF__",
        extra="ignore",
    )

    header_name: str = Field(
        default="X-Csrf-Token",
        min_length=1,
        description="Request header carrying the CSRF token",
    )
    ttl: int = Field(
        default=30 * 60,
        ge=10,
        description="CSRF token lifetime in seconds",
    )
    ignored_methods: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["GET", "HEAD", "OPTIONS", "TRACE"],
        description="HTTP methods exempt from CSRF validation",
    )

    @field_validator("ignored_methods", mode="before")
    @classmethod
    def parse_methods(cls, v: Any) -> list[str]:
        """Parse comma-separated methods and normalise their case."""
        return [m.upper() for m in _split_list(v)]


class RouteSettings(BaseSettings):
    """Paths of the handshake routes.

    The session middleware never guards these prefixes, and soft
    failures redirect to ``login_url``.

    Environment prefix: AUTHGATE_ROUTES__
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTHGATE_ROUTES__",
        extra="ignore",
    )

    login_url: str = "/login"
    logout_url: str = "/logout"
    callback_url: str = "/auth"
    session_url: str = "/session"
    success_url: str = "/"

    @field_validator("login_url", "logout_url", "callback_url", "session_url", "success_url")
    @classmethod
    def _absolute_path(cls, v: str) -> str:
        if not v.startswith("/"):
            msg = f"route paths must start with '/': {v!r}"
            raise ValueError(msg)
        return v.rstrip("/") or "/"


class StorageSettings(BaseSettings):
    """Storage adapter settings.

    Environment prefix: AUTHGATE_STORAGE__
    Example: AUTHGATE_STORAGE__BACKEND=redis
    Example: AUTHGATE_STORAGE__REDIS_URL=redis://redis:6379/0
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTHGATE_STORAGE__",
        extra="ignore",
    )

    backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="'memory' (single process) or 'redis' (shared between workers)",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    redis_prefix: str = Field(
        default="authgate",
        description="Key prefix for all Redis keys (namespace isolation)",
    )


class GitHubSettings(BaseSettings):
    """GitHub provider settings.

    Environment prefix: AUTHGATE_GITHUB__
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTHGATE_GITHUB__",
        extra="ignore",
    )

    client_id: str = ""
    client_secret: str = ""
    callback_url: str = Field(
        default="http://localhost:3000/auth/github/callback",
        description="Redirect URI registered with the GitHub OAuth app",
    )
    scopes: str = Field(default="", description="Extra space-separated scopes")
    allowed_orgs: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Only members of these organizations may sign in (empty allows all)",
    )

    @field_validator("allowed_orgs", mode="before")
    @classmethod
    def parse_orgs(cls, v: Any) -> list[str]:
        """Parse comma-separated strings from env vars."""
        return _split_list(v)


class EntraIDSettings(BaseSettings):
    """Microsoft EntraID provider settings.

    Environment prefix: AUTHGATE_ENTRAID__
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTHGATE_ENTRAID__",
        extra="ignore",
    )

    client_id: str = ""
    client_secret: str = ""
    callback_url: str = "http://localhost:3000/auth/entraid/callback"
    tenant: str = Field(
        default="common",
        description="Tenant id or one of common, organizations, consumers",
    )
    scopes: str = Field(default="", description="Extra space-separated scopes")


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: AUTHGATE_LOG__
    Example: AUTHGATE_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTHGATE_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(asctime)s %(name)s - %(levelname)s - %(message)s"


class AuthGateSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: AUTHGATE_

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.authgate] section
    3. ./authgate.toml
    4. AUTHGATE_CONFIG_FILE
    5. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTHGATE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    secret_key: str = Field(
        default_factory=lambda: secrets.token_hex(32),
        description=(
            "Key used to derive PKCE verifiers from the handshake state. "
            "Must be shared by every worker behind the same callback URL."
        ),
    )
    session: SessionSettings = Field(default_factory=SessionSettings)
    csrf: CsrfSettings = Field(default_factory=CsrfSettings)
    routes: RouteSettings = Field(default_factory=RouteSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    log: LogSettings = Field(default_factory=LogSettings)
    github: GitHubSettings | None = Field(
        default=None,
        description="GitHub provider settings (None to disable)",
    )
    entraid: EntraIDSettings | None = Field(
        default=None,
        description="EntraID provider settings (None to disable)",
    )

    def __init__(self, **data: Any) -> None:
        toml_config = _load_toml_config()

        # Enable a provider section when its client id is present in the
        # environment, so env-var based configuration works out of the box.
        for name, section_cls in (("github", GitHubSettings), ("entraid", EntraIDSettings)):
            if (
                data.get(name) is None
                and toml_config.get(name) is None
                and os.environ.get(f"AUTHGATE_{name.upper()}__CLIENT_ID")
            ):
                data[name] = section_cls()

        super().__init__(**data)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Place the TOML files below the environment."""
        return (init_settings, env_settings, dotenv_settings, file_secret_settings, _TomlSettingsSource(settings_cls))

    def __repr_args__(self) -> Any:
        for name, value in super().__repr_args__():
            yield name, (_REDACTED if name in _SENSITIVE_FIELDS else value)

    def to_env(self) -> str:
        """Export settings as shell environment variables, secrets redacted."""
        lines = ["# authgate environment variables", ""]
        lines.append(f'export AUTHGATE_SECRET_KEY="{_REDACTED}"')

        sections = ["session", "csrf", "routes", "storage", "log"]
        if self.github is not None:
            sections.append("github")
        if self.entraid is not None:
            sections.append("entraid")

        for section_name in sections:
            section = getattr(self, section_name)
            for field_name, value in section.model_dump().items():
                env_name = f"AUTHGATE_{section_name.upper()}__{field_name.upper()}"
                if field_name in _SENSITIVE_FIELDS:
                    rendered = _REDACTED
                elif isinstance(value, list):
                    rendered = ",".join(value)
                elif isinstance(value, bool):
                    rendered = "true" if value else "false"
                else:
                    rendered = str(value)
                lines.append(f'export {env_name}="{rendered}"')
            lines.append("")

        return "\n".join(lines)


SkipPredicate = Callable[["Request"], bool]
TokenGenerator = Callable[[], str]


def generate_token() -> str:
    """Generate an opaque, unguessable token."""
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class GateConfig:
    """Validated runtime configuration, built once per gate.

    Attributes
    ----------
    session : SessionSettings
        Session lifetime and cookie attributes.
    csrf : CsrfSettings
        CSRF header, lifetime and ignored methods.
    routes : RouteSettings
        Handshake route prefixes.
    secret_key : str
        Key for deriving PKCE verifiers.
    error_handler : ErrorHandler
        The single seam from internal error to HTTP response.
    session_extractor : TokenExtractor
        Pulls the session token from a request.
    csrf_extractor : TokenExtractor
        Pulls the submitted CSRF token from a request.
    skip : SkipPredicate or None
        Extra predicate to bypass the session middleware.
    csrf_skip : SkipPredicate or None
        Extra predicate to bypass the CSRF guard.
    token_generator : TokenGenerator
        Source of fresh CSRF token values.
    clock : Callable[[], float]
        Current time in epoch seconds.
    """

    session: SessionSettings = field(default_factory=SessionSettings)
    csrf: CsrfSettings = field(default_factory=CsrfSettings)
    routes: RouteSettings = field(default_factory=RouteSettings)
    secret_key: str = field(default_factory=lambda: secrets.token_hex(32))
    error_handler: ErrorHandler = default_error_handler
    session_extractor: TokenExtractor | None = None
    csrf_extractor: TokenExtractor | None = None
    skip: SkipPredicate | None = None
    csrf_skip: SkipPredicate | None = None
    token_generator: TokenGenerator = generate_token
    clock: Callable[[], float] = time.time

    def __post_init__(self) -> None:
        """Fill in derived defaults and validate the combination."""
        if self.session_extractor is None:
            object.__setattr__(self, "session_extractor", from_cookie(self.session.cookie_name))
        if self.csrf_extractor is None:
            object.__setattr__(self, "csrf_extractor", from_header(self.csrf.header_name))

        if self.csrf.ttl > self.session.ttl:
            msg = (
                f"CSRF token lifetime ({self.csrf.ttl}s) must not exceed "
                f"the session lifetime ({self.session.ttl}s)"
            )
            raise ConfigurationError(msg)
        if len(self.secret_key) < 16:
            msg = "secret_key must be at least 16 characters"
            raise ConfigurationError(msg)
        if not callable(self.error_handler):
            msg = "error_handler must be callable"
            raise ConfigurationError(msg)

    @property
    def skip_prefixes(self) -> tuple[str, ...]:
        """Path prefixes the session middleware never guards."""
        return (self.routes.login_url, self.routes.logout_url, self.routes.callback_url)

    def now(self) -> float:
        """Current time according to the configured clock."""
        return self.clock()

    @classmethod
    def from_settings(cls, settings: AuthGateSettings | None = None, **overrides: Any) -> GateConfig:
        """Build the runtime configuration from settings.

        Parameters
        ----------
        settings : AuthGateSettings, optional
            Loaded settings; defaults are loaded from files and the
            environment when omitted.
        **overrides : Any
            Runtime collaborators (``error_handler``, ``skip``, ...).

        Returns
        -------
        GateConfig
            The validated configuration.
        """
        settings = settings or AuthGateSettings()
        return cls(
            session=settings.session,
            csrf=settings.csrf,
            routes=settings.routes,
            secret_key=settings.secret_key,
            **overrides,
        )


__all__ = [
    "AuthGateSettings",
    "CsrfSettings",
    "EntraIDSettings",
    "GateConfig",
    "GitHubSettings",
    "LogSettings",
    "RouteSettings",
    "SessionSettings",
    "SkipPredicate",
    "StorageSettings",
    "TokenGenerator",
    "generate_token",
]
