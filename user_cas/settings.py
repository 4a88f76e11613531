"""Persistence of the flat CAS settings store and the administrative save action."""

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml

from .config import build_config
from .exceptions import ConfigurationError

logger = structlog.get_logger()

# Checkbox style keys: a key missing from a submitted form means "off".
BOOLEAN_KEYS = frozenset(
    {
        "cas_force_login",
        "cas_disable_logout",
        "cas_cert_verify",
        "cas_autocreate",
        "cas_update_user_data",
    }
)

TEXT_KEYS = frozenset(
    {
        "cas_server_hostname",
        "cas_server_port",
        "cas_server_path",
        "cas_protocol_version",
        "cas_force_login_exceptions",
        "cas_handlelogout_servers",
        "cas_login_url",
        "cas_logout_url",
        "cas_service_url",
        "cas_protected_paths",
        "cas_cert_path",
        "cas_timeout",
        "cas_principal_case",
        "cas_email_mapping",
        "cas_displayName_mapping",
        "cas_group_mapping",
        "cas_quota_mapping",
        "cas_default_group",
        "cas_access_allow_groups",
        "cas_access_group_quotas",
        "cas_log_level",
    }
)

RECOGNIZED_KEYS = BOOLEAN_KEYS | TEXT_KEYS


class SettingsStore:
    """Flat key-value settings kept in a YAML file."""

    def __init__(self, settings_file: str | Path):
        self.settings_file = Path(settings_file)

    def read(self) -> dict[str, Any]:
        if not self.settings_file.exists():
            return {}
        with open(self.settings_file) as f:
            content = yaml.safe_load(f)
        return dict(content or {})

    def write(self, settings: Mapping[str, Any]) -> None:
        self.settings_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self.settings_file.with_suffix(self.settings_file.suffix + ".tmp")
        with open(tmp_file, "w") as f:
            yaml.safe_dump(dict(settings), f, default_flow_style=False, sort_keys=True)
        tmp_file.replace(self.settings_file)


def save_settings(store: SettingsStore, form: Mapping[str, Any]) -> dict[str, str]:
    """Apply a submitted settings form to the store.

    Unknown keys are ignored. The merged settings are validated before they are
    written, so an inconsistent submission leaves the store untouched.

    Args:
        store: Settings store to update
        form: Form-encoded payload as a mapping

    Returns:
        Response body with ``status`` and ``message``
    """
    try:
        current = store.read()
    except (OSError, yaml.YAMLError) as e:
        logger.error("Failed to read settings", file=str(store.settings_file), error=str(e))
        return {"status": "error", "message": "Your CAS settings could not be read."}

    updated = dict(current)
    for key in TEXT_KEYS:
        if key in form:
            updated[key] = str(form[key]).strip()
    for key in BOOLEAN_KEYS:
        updated[key] = "1" if form.get(key) not in (None, "", "0", "off", "false") else "0"

    ignored = sorted(set(form) - RECOGNIZED_KEYS)
    if ignored:
        logger.debug("Ignoring unknown settings keys", keys=ignored)

    try:
        build_config(updated)
    except ConfigurationError as e:
        logger.warning("Rejected CAS settings", error=str(e))
        return {"status": "error", "message": f"Your CAS settings are invalid: {e}"}

    try:
        store.write(updated)
    except OSError as e:
        logger.error("Failed to write settings", file=str(store.settings_file), error=str(e))
        return {"status": "error", "message": "Your CAS settings could not be saved."}

    logger.info("CAS settings saved", keys=sorted(k for k in form if k in RECOGNIZED_KEYS))
    return {"status": "success", "message": "Your CAS settings have been updated."}
