"""Unit tests for the session registry."""

import threading

from user_cas.auth.models import AuthenticationSession
from user_cas.auth.sessions import SessionRegistry


class TestSessionRegistry:
    """Test SessionRegistry."""

    def setup_method(self) -> None:
        self.registry = SessionRegistry()

    def test_register_and_revoke(self) -> None:
        session = AuthenticationSession(uid="alice", ticket="ST-123")
        self.registry.register(session)

        assert self.registry.active_count() == 1
        assert self.registry.is_revoked("ST-123") is False

        assert self.registry.revoke("ST-123") == session
        assert self.registry.is_revoked("ST-123") is True
        assert self.registry.active_count() == 0

    def test_revoke_unknown_ticket(self) -> None:
        # Logout may arrive before the session is registered by another worker
        assert self.registry.revoke("ST-unknown") is None
        assert self.registry.is_revoked("ST-unknown") is True

    def test_session_without_ticket_is_not_tracked(self) -> None:
        self.registry.register(AuthenticationSession(uid="alice", ticket=None))

        assert self.registry.active_count() == 0
        assert self.registry.is_revoked(None) is False

    def test_forget(self) -> None:
        self.registry.register(AuthenticationSession(uid="alice", ticket="ST-1"))
        self.registry.forget("ST-1")

        assert self.registry.active_count() == 0
        assert self.registry.is_revoked("ST-1") is False

    def test_maxsize_bounds_memory(self) -> None:
        registry = SessionRegistry(maxsize=2)
        for i in range(5):
            registry.register(AuthenticationSession(uid=f"u{i}", ticket=f"ST-{i}"))

        assert registry.active_count() == 2

    def test_concurrent_registration(self) -> None:
        def worker(n: int) -> None:
            for i in range(50):
                self.registry.register(
                    AuthenticationSession(uid=f"u{n}", ticket=f"ST-{n}-{i}")
                )

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert self.registry.active_count() == 400
