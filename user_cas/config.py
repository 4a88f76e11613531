"""Configuration loader for CAS settings stored in a flat YAML file."""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
import yaml

from .exceptions import ConfigurationError

logger = structlog.get_logger()

DEFAULT_SETTINGS_PATH = "/etc/user_cas/settings.yaml"


class ProtocolVersion(Enum):
    """CAS protocol versions understood by the ticket validator."""

    V1 = "1.0"
    V2 = "2.0"
    V3 = "3.0"
    SAML_1_1 = "S1"


class PrincipalCase(Enum):
    """How the CAS principal is turned into a local uid."""

    PRESERVE = "preserve"
    LOWER = "lower"


@dataclass(frozen=True)
class CasConfig:
    """Immutable snapshot of the CAS connection and provisioning settings."""

    server_host: str
    server_port: int = 443
    server_path: str = "/cas"
    protocol_version: ProtocolVersion = ProtocolVersion.V2
    force_login: bool = False
    force_login_exceptions: tuple[str, ...] = ()
    disable_logout: bool = False
    logout_allowed_servers: tuple[str, ...] = ()
    login_url_override: str | None = None
    logout_url_override: str | None = None
    service_url: str | None = None
    protected_paths: tuple[str, ...] = ()
    ca_cert_path: str | None = None
    verify_tls: bool = True
    timeout_seconds: float = 5.0
    autocreate: bool = True
    update_user_data: bool = True
    principal_case: PrincipalCase = PrincipalCase.PRESERVE
    email_attribute: str = "email"
    display_name_attribute: str = "displayName"
    group_attribute: str = "groups"
    quota_attribute: str = "quota"
    default_group: str | None = None
    access_allow_groups: tuple[str, ...] = ()
    group_quotas: dict[str, str] = field(default_factory=dict, hash=False)
    log_level: str = "INFO"

    @property
    def server_url(self) -> str:
        """Base URL of the CAS server, e.g. https://cas.example.com/cas."""
        path = self.server_path.rstrip("/")
        if path and not path.startswith("/"):
            path = "/" + path
        if self.server_port == 443:
            return f"https://{self.server_host}{path}"
        return f"https://{self.server_host}:{self.server_port}{path}"

    def validate(self) -> None:
        """Check cross-field consistency.

        Raises:
            ConfigurationError: If the settings cannot work together
        """
        if not self.server_host:
            raise ConfigurationError("cas_server_hostname is required")
        if not 0 < self.server_port < 65536:
            raise ConfigurationError(
                f"cas_server_port out of range: {self.server_port}"
            )
        if self.timeout_seconds <= 0:
            raise ConfigurationError("cas_timeout must be greater than zero")
        if self.force_login and self.disable_logout:
            # Forced login re-authenticates on the next request, so a
            # suppressed logout would never be observable.
            raise ConfigurationError(
                "cas_force_login and cas_disable_logout cannot both be enabled"
            )
        if self.force_login_exceptions and not self.force_login:
            logger.warning(
                "Force login exceptions configured without force login",
                exceptions=list(self.force_login_exceptions),
            )
        if self.logout_allowed_servers and self.disable_logout:
            logger.warning(
                "Logout servers configured while logout is disabled; "
                "single logout requests will be ignored",
            )


def split_list(value: Any) -> tuple[str, ...]:
    """Turn a comma separated string (or YAML list) into a tuple of items."""
    if value is None:
        return ()
    if isinstance(value, (list, tuple, set)):
        items = [str(item) for item in value]
    else:
        items = str(value).split(",")
    return tuple(item.strip() for item in items if item.strip())


def parse_bool(value: Any) -> bool:
    """Interpret checkbox style values ("1", "on", "true", True)."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_group_quotas(value: Any) -> dict[str, str]:
    """Parse "group:quota" pairs into a mapping."""
    if isinstance(value, dict):
        return {str(k).strip(): str(v).strip() for k, v in value.items()}

    quotas: dict[str, str] = {}
    for item in split_list(value):
        group, sep, quota = item.rpartition(":")
        if not sep or not group.strip() or not quota.strip():
            raise ConfigurationError(f"Invalid group quota entry: {item!r}")
        quotas[group.strip()] = quota.strip()
    return quotas


def _optional(value: Any) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def build_config(settings: dict[str, Any]) -> CasConfig:
    """Build a validated CasConfig from flat ``cas_*`` settings.

    Raises:
        ConfigurationError: If a value is missing, malformed or inconsistent
    """
    try:
        protocol_version = ProtocolVersion(
            str(settings.get("cas_protocol_version", "2.0"))
        )
    except ValueError as e:
        raise ConfigurationError(
            f"Unknown cas_protocol_version: {settings.get('cas_protocol_version')}"
        ) from e

    try:
        principal_case = PrincipalCase(
            str(settings.get("cas_principal_case", "preserve")).lower()
        )
    except ValueError as e:
        raise ConfigurationError(
            f"Unknown cas_principal_case: {settings.get('cas_principal_case')}"
        ) from e

    try:
        server_port = int(settings.get("cas_server_port") or 443)
        timeout_seconds = float(settings.get("cas_timeout") or 5.0)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid numeric setting: {e}") from e

    config = CasConfig(
        server_host=str(settings.get("cas_server_hostname") or "").strip(),
        server_port=server_port,
        server_path=str(settings.get("cas_server_path") or "/cas"),
        protocol_version=protocol_version,
        force_login=parse_bool(settings.get("cas_force_login")),
        force_login_exceptions=split_list(settings.get("cas_force_login_exceptions")),
        disable_logout=parse_bool(settings.get("cas_disable_logout")),
        logout_allowed_servers=split_list(settings.get("cas_handlelogout_servers")),
        login_url_override=_optional(settings.get("cas_login_url")),
        logout_url_override=_optional(settings.get("cas_logout_url")),
        service_url=_optional(settings.get("cas_service_url")),
        protected_paths=split_list(settings.get("cas_protected_paths")),
        ca_cert_path=_optional(settings.get("cas_cert_path")),
        verify_tls=parse_bool(settings.get("cas_cert_verify", True)),
        timeout_seconds=timeout_seconds,
        autocreate=parse_bool(settings.get("cas_autocreate", True)),
        update_user_data=parse_bool(settings.get("cas_update_user_data", True)),
        principal_case=principal_case,
        email_attribute=_optional(settings.get("cas_email_mapping")) or "email",
        display_name_attribute=_optional(settings.get("cas_displayName_mapping"))
        or "displayName",
        group_attribute=_optional(settings.get("cas_group_mapping")) or "groups",
        quota_attribute=_optional(settings.get("cas_quota_mapping")) or "quota",
        default_group=_optional(settings.get("cas_default_group")),
        access_allow_groups=split_list(settings.get("cas_access_allow_groups")),
        group_quotas=parse_group_quotas(settings.get("cas_access_group_quotas")),
        log_level=str(settings.get("cas_log_level") or "INFO").upper(),
    )
    config.validate()
    return config


class ConfigLoader:
    """Loads the flat CAS settings file and resolves it into a CasConfig."""

    def __init__(self, settings_file: str = DEFAULT_SETTINGS_PATH):
        self.settings_file = Path(settings_file)
        self._config: CasConfig | None = None

    def load_settings(self) -> dict[str, Any]:
        """Load the raw key-value settings from the YAML file."""
        if not self.settings_file.exists():
            logger.warning("Settings file does not exist", file=str(self.settings_file))
            return {}

        try:
            with open(self.settings_file) as f:
                content = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to read settings file {self.settings_file}: {e}"
            ) from e

        if content is None:
            return {}
        if not isinstance(content, dict):
            raise ConfigurationError(
                f"Settings file {self.settings_file} must contain a mapping"
            )
        return content

    def load(self) -> CasConfig:
        """Load and validate the CAS configuration (cached after first use)."""
        if self._config is None:
            self._config = build_config(self.load_settings())
            logger.info(
                "CAS configuration loaded",
                server_url=self._config.server_url,
                protocol_version=self._config.protocol_version.value,
                force_login=self._config.force_login,
                disable_logout=self._config.disable_logout,
            )
        return self._config

    def reload(self) -> CasConfig:
        """Drop the cached snapshot and load the settings again."""
        self._config = None
        return self.load()


def get_config_loader() -> ConfigLoader:
    """Get configured config loader instance."""
    settings_file = os.getenv("USER_CAS_SETTINGS_PATH", DEFAULT_SETTINGS_PATH)
    return ConfigLoader(settings_file)
