"""Unit tests for authentication models."""

from datetime import UTC, datetime

from user_cas.auth.models import (
    AuthenticationSession,
    FailureCode,
    ValidationFailure,
    ValidationSuccess,
)


class TestValidationResult:
    """Test validation result types."""

    def test_success(self) -> None:
        result = ValidationSuccess(principal="alice")

        assert result.ok is True
        assert result.attributes == {}
        assert result.proxy_granting_ticket is None

    def test_failure(self) -> None:
        result = ValidationFailure(FailureCode.INVALID_TICKET, "expired")

        assert result.ok is False
        assert result.is_internal is False
        assert ValidationFailure(FailureCode.INTERNAL_ERROR).is_internal is True


class TestAuthenticationSession:
    """Test AuthenticationSession serialization."""

    def test_round_trip_through_session_storage(self) -> None:
        session = AuthenticationSession(
            uid="alice",
            ticket="ST-123",
            established_at=datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
        )

        data = session.to_dict()

        assert data == {
            "uid": "alice",
            "ticket": "ST-123",
            "established_at": "2024-05-01T12:00:00+00:00",
        }
        assert AuthenticationSession.from_dict(data) == session

    def test_established_at_defaults_to_now(self) -> None:
        before = datetime.now(UTC)
        session = AuthenticationSession(uid="alice", ticket=None)
        assert before <= session.established_at <= datetime.now(UTC)
