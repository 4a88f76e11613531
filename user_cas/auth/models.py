"""Authentication models and types."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol


class FailureCode(Enum):
    """Error codes reported by the CAS server (plus INTERNAL_ERROR)."""

    INVALID_TICKET = "INVALID_TICKET"
    INVALID_SERVICE = "INVALID_SERVICE"
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_PROXY_CALLBACK = "INVALID_PROXY_CALLBACK"
    UNAUTHORIZED_SERVICE_PROXY = "UNAUTHORIZED_SERVICE_PROXY"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AuthState(Enum):
    """States of a single authentication attempt."""

    ANONYMOUS = "anonymous"
    AWAITING_TICKET = "awaiting_ticket"
    VALIDATING = "validating"
    PROVISIONING = "provisioning"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"
    LOGGED_OUT = "logged_out"


@dataclass(frozen=True)
class TicketValidationRequest:
    """A ticket together with the service URL it is being redeemed for."""

    ticket: str
    service: str
    expected_service: str | None = None


@dataclass(frozen=True)
class ValidationSuccess:
    """The CAS server vouched for the principal."""

    principal: str
    attributes: dict[str, str | list[str]] = field(default_factory=dict, hash=False)
    proxy_granting_ticket: str | None = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class ValidationFailure:
    """The ticket could not be validated."""

    code: FailureCode
    detail: str = ""

    @property
    def ok(self) -> bool:
        return False

    @property
    def is_internal(self) -> bool:
        """Transport or protocol trouble rather than an explicit rejection."""
        return self.code is FailureCode.INTERNAL_ERROR


TicketValidationResult = ValidationSuccess | ValidationFailure


@dataclass(frozen=True)
class Identity:
    """Canonical identity extracted from a successful validation.

    ``None`` means "not provided by CAS": provisioning leaves the local value
    untouched.
    """

    uid: str
    display_name: str | None = None
    email: str | None = None
    groups: tuple[str, ...] = ()
    quota: str | int | None = None
    enabled: bool | None = None


@dataclass(frozen=True)
class LocalUserRecord:
    """Snapshot of a provisioned local user."""

    uid: str
    display_name: str
    email: str | None
    groups: frozenset[str]
    quota: int | str
    enabled: bool
    backend_class_name: str


@dataclass(frozen=True)
class AuthenticationSession:
    """A local session bound to a CAS login."""

    uid: str
    ticket: str | None
    established_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "ticket": self.ticket,
            "established_at": self.established_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuthenticationSession":
        return cls(
            uid=data["uid"],
            ticket=data.get("ticket"),
            established_at=datetime.fromisoformat(data["established_at"]),
        )


class TicketValidator(Protocol):
    """Protocol for ticket validators."""

    async def validate(self, request: TicketValidationRequest) -> TicketValidationResult:
        """Redeem a ticket and report the outcome; never raises."""
        ...
