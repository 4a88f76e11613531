"""Capability interfaces of the host application consumed by provisioning."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import structlog

logger = structlog.get_logger()

# Backend identifiers the legacy host stamps on users it creates itself
HOST_DATABASE_BACKENDS = frozenset({"Database", "HostDatabase"})


class HostVariant(Enum):
    """Host API generations with different user-management calls."""

    LEGACY = "legacy"
    CURRENT = "current"


@dataclass(frozen=True)
class HostInfo:
    """Product name and version reported by the host application."""

    name: str
    version: tuple[int, ...]

    @property
    def major_version(self) -> int:
        return self.version[0] if self.version else 0


def detect_host_variant(info: HostInfo) -> HostVariant:
    """Pick the host API generation (once, at startup).

    Hosts whose product name contains "next" from major version 14 on expose
    the current API; everything else is treated as legacy.
    """
    if "next" in info.name.lower() and info.major_version >= 14:
        variant = HostVariant.CURRENT
    else:
        variant = HostVariant.LEGACY
    logger.info(
        "Detected host API generation",
        host=info.name,
        version=".".join(str(v) for v in info.version),
        variant=variant.value,
    )
    return variant


class HostUser(Protocol):
    """A user object handed out by the host user manager."""

    @property
    def uid(self) -> str: ...

    @property
    def display_name(self) -> str: ...

    @property
    def quota(self) -> int | str: ...

    @property
    def enabled(self) -> bool: ...

    @property
    def backend_class_name(self) -> str: ...

    def set_display_name(self, display_name: str) -> None: ...

    def set_quota(self, quota: int | str) -> None: ...

    def set_enabled(self, enabled: bool) -> None: ...


class CurrentHostUser(HostUser, Protocol):
    """Current host users manage their own email address."""

    @property
    def email(self) -> str | None: ...

    def set_email(self, email: str) -> None: ...


class HostUserManager(Protocol):
    """Lookup and creation of host users."""

    def user_exists(self, uid: str) -> bool: ...

    def get(self, uid: str) -> HostUser | None: ...

    def create_user(self, uid: str, backend_class_name: str) -> HostUser | None:
        """Create the user atomically; return None if the uid is taken."""
        ...

    def delete_user(self, uid: str) -> bool: ...


class HostGroup(Protocol):
    @property
    def gid(self) -> str: ...

    def in_group(self, user: HostUser) -> bool: ...

    def add_user(self, user: HostUser) -> None: ...


class HostGroupManager(Protocol):
    def get(self, gid: str) -> HostGroup | None: ...

    def create_group(self, gid: str) -> HostGroup:
        """Create the group, or return the existing one."""
        ...

    def get_user_group_ids(self, user: HostUser) -> list[str]: ...


class HostUserConfig(Protocol):
    """Per-user key-value preferences (legacy hosts keep email here)."""

    def get_user_value(self, uid: str, app: str, key: str, default: Any = None) -> Any: ...

    def set_user_value(self, uid: str, app: str, key: str, value: Any) -> None: ...


class HostAccounts(Protocol):
    """Legacy accounts table recording which backend owns a user."""

    def set_backend(self, uid: str, backend_class_name: str) -> bool: ...
