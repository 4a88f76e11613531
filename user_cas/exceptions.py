"""Exception taxonomy for CAS authentication and provisioning."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .auth.models import ValidationFailure


class UserCasError(Exception):
    """Base exception for user_cas errors."""

    pass


class ConfigurationError(UserCasError):
    """Missing or inconsistent CAS settings."""

    pass


class TransportError(UserCasError):
    """The CAS server could not be reached or answered with an HTTP error."""

    pass


class ProtocolError(UserCasError):
    """The CAS server answered with a payload that could not be parsed."""

    pass


class ValidationError(UserCasError):
    """Ticket validation did not succeed; carries the failure result."""

    def __init__(self, failure: "ValidationFailure"):
        super().__init__(f"{failure.code.value}: {failure.detail}")
        self.failure = failure


class ProvisioningError(UserCasError):
    """The local user record could not be created or updated."""

    pass


class UserExistsError(ProvisioningError):
    """A user with the requested uid already exists."""

    def __init__(self, uid: str):
        super().__init__(f'The user "{uid}" already exists')
        self.uid = uid


class AccessDeniedError(ProvisioningError):
    """The authenticated identity is not allowed to use this application."""

    pass
