"""In-memory host application used for development and tests.

Implements both host API generations: the legacy flavor ignores the backend
requested at creation time and stamps its own database backend on new users,
the current flavor records the requested backend.
"""

import threading
from typing import Any

import structlog

from .host import HostInfo, HostVariant, detect_host_variant

logger = structlog.get_logger()

LEGACY_DATABASE_BACKEND = "Database"


class InMemoryUserConfig:
    """Per-user preferences keyed by (uid, app, key)."""

    def __init__(self) -> None:
        self._values: dict[tuple[str, str, str], Any] = {}
        self._lock = threading.Lock()

    def get_user_value(self, uid: str, app: str, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get((uid, app, key), default)

    def set_user_value(self, uid: str, app: str, key: str, value: Any) -> None:
        with self._lock:
            self._values[(uid, app, key)] = value

    def delete_user_values(self, uid: str) -> None:
        with self._lock:
            for entry in [k for k in self._values if k[0] == uid]:
                del self._values[entry]


class InMemoryAccounts:
    """uid -> owning backend, compared case-insensitively like the legacy table."""

    def __init__(self) -> None:
        self._backends: dict[str, str] = {}
        self._lock = threading.Lock()

    def get_backend(self, uid: str) -> str | None:
        with self._lock:
            return self._backends.get(uid.lower())

    def set_backend(self, uid: str, backend_class_name: str) -> bool:
        with self._lock:
            if uid.lower() not in self._backends:
                return False
            self._backends[uid.lower()] = backend_class_name
            return True

    def insert(self, uid: str, backend_class_name: str) -> None:
        with self._lock:
            self._backends[uid.lower()] = backend_class_name

    def delete(self, uid: str) -> None:
        with self._lock:
            self._backends.pop(uid.lower(), None)


class InMemoryUser:
    """Host user; email is stored in the per-user config like the real host."""

    def __init__(self, uid: str, config: InMemoryUserConfig, accounts: InMemoryAccounts):
        self._uid = uid
        self._config = config
        self._accounts = accounts
        self._display_name = uid
        self._quota: int | str = "default"
        self._enabled = True

    @property
    def uid(self) -> str:
        return self._uid

    @property
    def display_name(self) -> str:
        return self._display_name

    @property
    def email(self) -> str | None:
        return self._config.get_user_value(self._uid, "settings", "email")

    @property
    def quota(self) -> int | str:
        return self._quota

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def backend_class_name(self) -> str:
        return self._accounts.get_backend(self._uid) or LEGACY_DATABASE_BACKEND

    def set_display_name(self, display_name: str) -> None:
        self._display_name = display_name

    def set_email(self, email: str) -> None:
        self._config.set_user_value(self._uid, "settings", "email", email)

    def set_quota(self, quota: int | str) -> None:
        self._quota = quota

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled


class InMemoryUserManager:
    def __init__(
        self,
        config: InMemoryUserConfig,
        accounts: InMemoryAccounts,
        groups: "InMemoryGroupManager",
        honors_backend: bool,
    ):
        self._config = config
        self._accounts = accounts
        self._groups = groups
        self._honors_backend = honors_backend
        self._users: dict[str, InMemoryUser] = {}
        self._lock = threading.Lock()

    def user_exists(self, uid: str) -> bool:
        with self._lock:
            return uid in self._users

    def get(self, uid: str) -> InMemoryUser | None:
        with self._lock:
            return self._users.get(uid)

    def create_user(self, uid: str, backend_class_name: str) -> InMemoryUser | None:
        with self._lock:
            if uid in self._users:
                return None
            user = InMemoryUser(uid, self._config, self._accounts)
            self._users[uid] = user
            self._accounts.insert(
                uid,
                backend_class_name if self._honors_backend else LEGACY_DATABASE_BACKEND,
            )
            logger.debug("Host user created", uid=uid, backend=self._accounts.get_backend(uid))
            return user

    def delete_user(self, uid: str) -> bool:
        with self._lock:
            if self._users.pop(uid, None) is None:
                return False
        self._groups.remove_member_everywhere(uid)
        self._accounts.delete(uid)
        self._config.delete_user_values(uid)
        logger.debug("Host user deleted", uid=uid)
        return True

    def list_uids(self) -> list[str]:
        with self._lock:
            return sorted(self._users)


class InMemoryGroup:
    def __init__(self, gid: str):
        self._gid = gid
        self._members: set[str] = set()
        self._lock = threading.Lock()

    @property
    def gid(self) -> str:
        return self._gid

    @property
    def members(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._members)

    def in_group(self, user: InMemoryUser) -> bool:
        with self._lock:
            return user.uid in self._members

    def add_user(self, user: InMemoryUser) -> None:
        with self._lock:
            self._members.add(user.uid)

    def remove_user(self, uid: str) -> None:
        with self._lock:
            self._members.discard(uid)


class InMemoryGroupManager:
    def __init__(self) -> None:
        self._groups: dict[str, InMemoryGroup] = {}
        self._lock = threading.Lock()

    def get(self, gid: str) -> InMemoryGroup | None:
        with self._lock:
            return self._groups.get(gid)

    def create_group(self, gid: str) -> InMemoryGroup:
        with self._lock:
            if gid not in self._groups:
                self._groups[gid] = InMemoryGroup(gid)
            return self._groups[gid]

    def get_user_group_ids(self, user: InMemoryUser) -> list[str]:
        with self._lock:
            groups = list(self._groups.values())
        return sorted(group.gid for group in groups if group.in_group(user))

    def remove_member_everywhere(self, uid: str) -> None:
        with self._lock:
            groups = list(self._groups.values())
        for group in groups:
            group.remove_user(uid)


class InMemoryHost:
    """Bundle of in-memory host services for one product/version."""

    persistent = False

    def __init__(self, name: str = "Nextcloud", version: tuple[int, ...] = (28, 0, 0)):
        self.info = HostInfo(name=name, version=version)
        self.variant = detect_host_variant(self.info)
        self.config = InMemoryUserConfig()
        self.accounts = InMemoryAccounts()
        self.groups = InMemoryGroupManager()
        self.users = InMemoryUserManager(
            self.config,
            self.accounts,
            self.groups,
            honors_backend=self.variant is HostVariant.CURRENT,
        )
