from .models import (
    AuthenticationSession,
    AuthState,
    FailureCode,
    Identity,
    LocalUserRecord,
    TicketValidationRequest,
    TicketValidationResult,
    ValidationFailure,
    ValidationSuccess,
)

__all__ = [
    "AuthState",
    "AuthenticationSession",
    "FailureCode",
    "Identity",
    "LocalUserRecord",
    "TicketValidationRequest",
    "TicketValidationResult",
    "ValidationFailure",
    "ValidationSuccess",
]
