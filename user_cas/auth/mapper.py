"""Mapping of validated CAS identities onto local user attributes."""

import structlog

from ..config import CasConfig, PrincipalCase
from ..provisioning.quota import UNLIMITED, normalize_quota
from .models import Identity, ValidationSuccess

logger = structlog.get_logger()

MAX_GROUP_NAME_LENGTH = 64


def normalize_uid(principal: str, config: CasConfig) -> str:
    """Derive the local uid from a CAS principal.

    Every code path that turns a principal into a uid must go through here so
    that backend lookups stay case-consistent.
    """
    uid = principal.strip()
    if config.principal_case is PrincipalCase.LOWER:
        uid = uid.lower()
    return uid


def _first(value: str | list[str] | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, list):
        value = next((v for v in value if v and v.strip()), "")
    value = value.strip()
    return value or None


def _group_names(value: str | list[str] | None) -> tuple[str, ...]:
    if value is None:
        return ()
    values = value if isinstance(value, list) else [value]

    groups: list[str] = []
    for raw in values:
        name = raw.strip()
        if not name:
            continue
        if len(name) > MAX_GROUP_NAME_LENGTH:
            logger.warning(
                "Truncating CAS group name", group=name, max_length=MAX_GROUP_NAME_LENGTH
            )
            name = name[:MAX_GROUP_NAME_LENGTH]
        if name not in groups:
            groups.append(name)
    return tuple(groups)


class AttributeMapper:
    """Extracts a canonical Identity from a ValidationSuccess."""

    def __init__(self, config: CasConfig):
        self.config = config

    def map(self, result: ValidationSuccess) -> Identity:
        uid = normalize_uid(result.principal, self.config)

        if not self.config.update_user_data:
            groups = (self.config.default_group,) if self.config.default_group else ()
            return Identity(uid=uid, groups=groups)

        attributes = result.attributes
        groups = _group_names(attributes.get(self.config.group_attribute))
        if not groups and self.config.default_group:
            groups = (self.config.default_group,)

        quota: str | int | None = _first(attributes.get(self.config.quota_attribute))
        if quota is None:
            quota = self._group_quota(groups)

        identity = Identity(
            uid=uid,
            display_name=_first(attributes.get(self.config.display_name_attribute)),
            email=_first(attributes.get(self.config.email_attribute)),
            groups=groups,
            quota=quota,
        )

        logger.debug(
            "Mapped CAS attributes",
            uid=uid,
            has_display_name=identity.display_name is not None,
            has_email=identity.email is not None,
            groups=list(groups),
            quota=identity.quota,
        )
        return identity

    def _group_quota(self, groups: tuple[str, ...]) -> str | int | None:
        """Largest quota granted by group membership, "none" being unlimited."""
        best: int | None = None
        for group in groups:
            configured = self.config.group_quotas.get(group)
            if configured is None:
                continue
            try:
                quota = normalize_quota(configured)
            except ValueError:
                logger.warning("Ignoring invalid group quota", group=group, quota=configured)
                continue
            if quota == UNLIMITED:
                return UNLIMITED
            if isinstance(quota, int) and (best is None or quota > best):
                best = quota
        return best

    def is_access_allowed(self, identity: Identity) -> bool:
        """Whether the identity belongs to one of the allowed groups (if any)."""
        if not self.config.access_allow_groups:
            return True
        return any(group in self.config.access_allow_groups for group in identity.groups)
