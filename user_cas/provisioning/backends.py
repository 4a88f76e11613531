"""User provisioning backends for the supported host API generations."""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Protocol

import structlog

from ..auth.models import Identity, LocalUserRecord
from ..exceptions import (
    AccessDeniedError,
    ConfigurationError,
    ProvisioningError,
    UserExistsError,
)
from .host import (
    HOST_DATABASE_BACKENDS,
    HostAccounts,
    HostGroupManager,
    HostInfo,
    HostUser,
    HostUserConfig,
    HostUserManager,
    HostVariant,
    detect_host_variant,
)
from .quota import normalize_quota

logger = structlog.get_logger()


class UidLockArena:
    """Per-uid locks, created on demand and dropped when no longer held.

    Writers for the same uid are serialized; different uids never contend.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, uid: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(uid, (threading.Lock(), 0))
            self._locks[uid] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                lock, users = self._locks[uid]
                if users <= 1:
                    del self._locks[uid]
                else:
                    self._locks[uid] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class UserProvisioningBackend(Protocol):
    """Capability set shared by all provisioning backends."""

    variant: HostVariant

    def exists(self, uid: str) -> bool: ...

    def get_user(self, uid: str) -> LocalUserRecord | None: ...

    def create_user(self, uid: str) -> LocalUserRecord: ...

    def apply_identity(
        self, uid: str, identity: Identity, changes: list[str] | None = None
    ) -> LocalUserRecord: ...

    def provision(
        self,
        identity: Identity,
        create: bool = True,
        exclusive: bool = False,
        changes: list[str] | None = None,
    ) -> LocalUserRecord: ...


class BaseBackend:
    """Provisioning logic shared by both host generations.

    Subclasses only decide how an email address is stored and what happens to
    a freshly created host user.
    """

    variant: HostVariant

    def __init__(
        self,
        users: HostUserManager,
        groups: HostGroupManager,
        arena: UidLockArena | None = None,
    ):
        self.users = users
        self.groups = groups
        self.arena = arena or UidLockArena()

    @property
    def backend_class_name(self) -> str:
        return f"user_cas.{type(self).__name__}"

    def exists(self, uid: str) -> bool:
        """Whether the host knows ``uid``.

        Raises:
            ProvisioningError: If the host lookup fails
        """
        try:
            return self.users.user_exists(uid)
        except Exception as e:
            raise ProvisioningError(f'Failed to look up "{uid}": {e}') from e

    def get_user(self, uid: str) -> LocalUserRecord | None:
        user = self._lookup(uid)
        if user is None:
            return None
        return self._read(user)

    def create_user(self, uid: str) -> LocalUserRecord:
        """Create a local user owned by this backend.

        Raises:
            UserExistsError: If the uid is taken (including by a concurrent call)
            ProvisioningError: If the host refuses to create the user
        """
        with self.arena.hold(uid):
            user = self._create_locked(uid)
            return self._read(user)

    def apply_identity(
        self, uid: str, identity: Identity, changes: list[str] | None = None
    ) -> LocalUserRecord:
        """Apply the attributes carried by ``identity`` to an existing user.

        Applying the same identity twice yields the same state as applying it
        once.

        Raises:
            ProvisioningError: If the user is missing or the host rejects a value
        """
        with self.arena.hold(uid):
            user = self._lookup(uid)
            if user is None:
                raise ProvisioningError(f'The user "{uid}" does not exist')
            try:
                self._apply_locked(user, identity, changes if changes is not None else [])
            except ProvisioningError:
                raise
            except Exception as e:
                raise ProvisioningError(f'Failed to update "{uid}": {e}') from e
            return self._read(user)

    def provision(
        self,
        identity: Identity,
        create: bool = True,
        exclusive: bool = False,
        changes: list[str] | None = None,
    ) -> LocalUserRecord:
        """Create the user if absent, then apply the identity, as one step.

        A user created here is deleted again if applying the identity fails,
        so a failed attempt leaves no half-initialized record behind.

        Args:
            identity: Identity to provision
            create: Whether an unknown uid may be created
            exclusive: Fail with UserExistsError if the uid already exists
            changes: Optional list collecting human-readable change lines

        Raises:
            UserExistsError: If ``exclusive`` and the user exists
            AccessDeniedError: If the user is unknown and ``create`` is false
            ProvisioningError: If the host fails
        """
        uid = identity.uid
        changes = changes if changes is not None else []

        with self.arena.hold(uid):
            user = self._lookup(uid)
            created = False

            if user is not None and exclusive:
                raise UserExistsError(uid)

            if user is None:
                if not create:
                    raise AccessDeniedError(
                        f'The user "{uid}" does not exist and automatic creation is disabled'
                    )
                user = self._create_locked(uid)
                created = True
                changes.append(f'The user "{uid}" was created successfully')

            try:
                self._apply_locked(user, identity, changes)
                record = self._record(user)
            except Exception as e:
                if created:
                    self._rollback(uid)
                if isinstance(e, ProvisioningError):
                    raise
                raise ProvisioningError(f'Failed to provision "{uid}": {e}') from e

        logger.info(
            "User provisioned",
            uid=uid,
            created=created,
            groups=sorted(record.groups),
            backend=record.backend_class_name,
        )
        return record

    def _lookup(self, uid: str) -> HostUser | None:
        try:
            return self.users.get(uid)
        except Exception as e:
            raise ProvisioningError(f'Failed to look up "{uid}": {e}') from e

    def _create_locked(self, uid: str) -> HostUser:
        if self.exists(uid):
            raise UserExistsError(uid)

        try:
            user = self.users.create_user(uid, self.backend_class_name)
        except Exception as e:
            raise ProvisioningError(f'Failed to create "{uid}": {e}') from e
        if user is None:
            raise UserExistsError(uid)

        try:
            self._after_create(user)
        except Exception as e:
            self._rollback(uid)
            raise ProvisioningError(f'Failed to register "{uid}" with the CAS backend: {e}') from e

        logger.info("User created", uid=uid, backend=self.backend_class_name)
        return user

    def _apply_locked(self, user: HostUser, identity: Identity, changes: list[str]) -> None:
        if identity.display_name and identity.display_name != user.display_name:
            user.set_display_name(identity.display_name)
            changes.append(f'Display name set to "{identity.display_name}"')

        if identity.email and identity.email != self._get_email(user):
            self._set_email(user, identity.email)
            changes.append(f'Email address set to "{identity.email}"')

        for gid in identity.groups:
            group = self.groups.get(gid)
            if group is None:
                group = self.groups.create_group(gid)
                changes.append(f'Created group "{group.gid}"')
            if not group.in_group(user):
                group.add_user(user)
                changes.append(f'User "{user.uid}" added to group "{group.gid}"')

        if identity.quota is not None:
            try:
                quota = normalize_quota(identity.quota)
            except ValueError as e:
                raise ProvisioningError(str(e)) from e
            if quota != user.quota:
                user.set_quota(quota)
                changes.append(f'Quota set to "{quota}"')

        if identity.enabled is not None and identity.enabled != user.enabled:
            user.set_enabled(identity.enabled)
            changes.append(
                'Enabled set to "{}"'.format("enabled" if identity.enabled else "not enabled")
            )

    def _rollback(self, uid: str) -> None:
        logger.warning("Rolling back partially provisioned user", uid=uid)
        try:
            self.users.delete_user(uid)
        except Exception as e:
            logger.error("Rollback of user failed", uid=uid, error=str(e))

    def _read(self, user: HostUser) -> LocalUserRecord:
        try:
            return self._record(user)
        except Exception as e:
            raise ProvisioningError(f'Failed to read "{user.uid}": {e}') from e

    def _record(self, user: HostUser) -> LocalUserRecord:
        return LocalUserRecord(
            uid=user.uid,
            display_name=user.display_name,
            email=self._get_email(user),
            groups=frozenset(self.groups.get_user_group_ids(user)),
            quota=user.quota,
            enabled=user.enabled,
            backend_class_name=user.backend_class_name,
        )

    def _after_create(self, user: HostUser) -> None:
        pass

    def _get_email(self, user: HostUser) -> str | None:
        raise NotImplementedError

    def _set_email(self, user: HostUser, email: str) -> None:
        raise NotImplementedError


class CurrentBackend(BaseBackend):
    """Backend for current hosts: users carry their email and backend."""

    variant = HostVariant.CURRENT

    def _get_email(self, user: HostUser) -> str | None:
        return user.email  # type: ignore[attr-defined, no-any-return]

    def _set_email(self, user: HostUser, email: str) -> None:
        user.set_email(email)  # type: ignore[attr-defined]


class LegacyBackend(BaseBackend):
    """Backend for legacy hosts.

    Legacy hosts keep the email address in the per-user settings and create
    new users in their own database backend, so the accounts table has to be
    pointed at this backend after creation. Lookups of existing users do not
    go through this fix-up.
    """

    variant = HostVariant.LEGACY

    def __init__(
        self,
        users: HostUserManager,
        groups: HostGroupManager,
        user_config: HostUserConfig,
        accounts: HostAccounts,
        arena: UidLockArena | None = None,
    ):
        super().__init__(users, groups, arena)
        self.user_config = user_config
        self.accounts = accounts

    def _after_create(self, user: HostUser) -> None:
        if user.backend_class_name in HOST_DATABASE_BACKENDS:
            self.accounts.set_backend(user.uid, self.backend_class_name)
            logger.info("New user added to CAS backend", uid=user.uid)

    def _get_email(self, user: HostUser) -> str | None:
        return self.user_config.get_user_value(user.uid, "settings", "email")  # type: ignore[no-any-return]

    def _set_email(self, user: HostUser, email: str) -> None:
        self.user_config.set_user_value(user.uid, "settings", "email", email)


def select_backend(
    info: HostInfo,
    users: HostUserManager,
    groups: HostGroupManager,
    user_config: HostUserConfig | None = None,
    accounts: HostAccounts | None = None,
) -> BaseBackend:
    """Instantiate the backend matching the host generation.

    Raises:
        ConfigurationError: If a legacy host lacks the services the legacy
            backend needs
    """
    if detect_host_variant(info) is HostVariant.CURRENT:
        return CurrentBackend(users, groups)

    if user_config is None or accounts is None:
        raise ConfigurationError(
            "Legacy hosts require the per-user config store and the accounts table"
        )
    return LegacyBackend(users, groups, user_config, accounts)
