"""Resolution of the host adapter that the server and the CLI provision into."""

import os
from typing import Any, Protocol

import structlog
from uvicorn.importer import ImportFromStringError, import_from_string

from ..exceptions import ConfigurationError
from .backends import BaseBackend, select_backend
from .host import HostAccounts, HostGroupManager, HostInfo, HostUserConfig, HostUserManager
from .memory import InMemoryHost

logger = structlog.get_logger()

HOST_ENV_VAR = "USER_CAS_HOST"
MEMORY_HOST = "memory"


class HostServices(Protocol):
    """Bundle of host services a provisioning backend is built from.

    Legacy hosts must also provide ``config`` and ``accounts``. Adapters that
    keep users only for the lifetime of the process set ``persistent`` to
    False.
    """

    info: HostInfo
    users: HostUserManager
    groups: HostGroupManager
    config: HostUserConfig | None
    accounts: HostAccounts | None
    persistent: bool


def memory_host() -> InMemoryHost:
    """In-memory host named by USER_CAS_HOST_NAME and USER_CAS_HOST_VERSION."""
    raw_version = os.getenv("USER_CAS_HOST_VERSION", "28.0.0")
    try:
        version = tuple(int(p) for p in raw_version.split("."))
    except ValueError as e:
        raise ConfigurationError(f"Invalid USER_CAS_HOST_VERSION: {raw_version!r}") from e
    return InMemoryHost(name=os.getenv("USER_CAS_HOST_NAME", "Nextcloud"), version=version)


def load_host(spec: str | None = None) -> HostServices:
    """Resolve the host adapter.

    Args:
        spec: ``memory``, or a ``module:attribute`` import path naming the
            host services object or a zero-argument factory returning it.
            Defaults to the USER_CAS_HOST environment variable.

    Raises:
        ConfigurationError: If no adapter is configured or it cannot be loaded
    """
    spec = (spec if spec is not None else os.getenv(HOST_ENV_VAR, "")).strip()
    if not spec:
        raise ConfigurationError(
            f"No host adapter configured: set {HOST_ENV_VAR} to a 'module:attribute' "
            f"import path, or to '{MEMORY_HOST}' for a non-persistent development host"
        )

    if spec == MEMORY_HOST:
        logger.warning("Using the in-memory host, provisioned users are not persisted")
        return memory_host()

    try:
        target: Any = import_from_string(spec)
    except (ImportFromStringError, ImportError) as e:
        raise ConfigurationError(f"Cannot load host adapter {spec!r}: {e}") from e

    if callable(target):
        try:
            target = target()
        except Exception as e:
            raise ConfigurationError(f"Host adapter {spec!r} failed to start: {e}") from e

    logger.info("Loaded host adapter", adapter=spec)
    return target  # type: ignore[no-any-return]


def is_persistent(host: HostServices) -> bool:
    return bool(getattr(host, "persistent", True))


def build_backend(host: HostServices) -> BaseBackend:
    """Provisioning backend matching the host generation."""
    return select_backend(
        host.info,
        host.users,
        host.groups,
        getattr(host, "config", None),
        getattr(host, "accounts", None),
    )
