"""Tests for the CAS authentication middleware."""

from unittest.mock import AsyncMock, Mock

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from user_cas.auth.middleware import CasAuthenticationMiddleware, outcome_response
from user_cas.auth.models import AuthenticationSession
from user_cas.auth.orchestrator import Acknowledged, Denied, Proceed, Redirect


def build_app(orchestrator: Mock) -> Starlette:
    async def health(request: Request) -> PlainTextResponse:
        return PlainTextResponse("OK")

    async def whoami(request: Request) -> JSONResponse:
        user = request.state.user
        return JSONResponse({"uid": user.uid if user else None})

    async def echo_form(request: Request) -> JSONResponse:
        form = await request.form()
        return JSONResponse(dict(form))

    async def logout(request: Request) -> PlainTextResponse:
        return PlainTextResponse("logout route")

    return Starlette(
        routes=[
            Route("/health", health),
            Route("/whoami", whoami),
            Route("/form", echo_form, methods=["POST"]),
            Route("/logout", logout),
        ],
        middleware=[
            Middleware(SessionMiddleware, secret_key="test-secret"),
            Middleware(CasAuthenticationMiddleware, get_orchestrator=lambda: orchestrator),
        ],
    )


class TestCasAuthenticationMiddleware:
    """Test the CAS authentication middleware."""

    def setup_method(self) -> None:
        self.orchestrator = Mock()
        self.orchestrator.handle = AsyncMock(return_value=Proceed(None))
        self.orchestrator.single_logout = AsyncMock(return_value=Acknowledged(revoked=True))
        self.client = TestClient(build_app(self.orchestrator))

    def test_health_bypasses_authentication(self) -> None:
        response = self.client.get("/health")

        assert response.status_code == 200
        assert response.text == "OK"
        self.orchestrator.handle.assert_not_called()

    def test_anonymous_request_proceeds(self) -> None:
        response = self.client.get("/whoami")

        assert response.json() == {"uid": None}
        ctx = self.orchestrator.handle.call_args.args[0]
        assert ctx.path == "/whoami"
        assert self.orchestrator.handle.call_args.kwargs == {"login_required": False}

    def test_authenticated_user_on_request_state(self) -> None:
        self.orchestrator.handle.return_value = Proceed(
            AuthenticationSession(uid="alice", ticket="ST-1")
        )

        response = self.client.get("/whoami")

        assert response.json() == {"uid": "alice"}

    def test_redirect_outcome(self) -> None:
        self.orchestrator.handle.return_value = Redirect("https://cas.example.com/cas/login")

        response = self.client.get("/whoami", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "https://cas.example.com/cas/login"

    def test_denied_outcome(self) -> None:
        self.orchestrator.handle.return_value = Denied(403, "Authentication failed")

        response = self.client.get("/whoami")

        assert response.status_code == 403
        assert response.json() == {"error": "Authentication failed"}

    def test_login_path_requires_login(self) -> None:
        self.client.get("/login")
        assert self.orchestrator.handle.call_args.kwargs == {"login_required": True}

    def test_logout_path_is_left_to_the_route(self) -> None:
        response = self.client.get("/logout")

        assert response.text == "logout route"
        self.orchestrator.handle.assert_not_called()

    def test_single_logout_on_any_path(self) -> None:
        response = self.client.post(
            "/whoami", data={"logoutRequest": "<samlp:LogoutRequest/>"}
        )

        assert response.status_code == 200
        assert response.text == "OK"
        ctx, payload = self.orchestrator.single_logout.call_args.args
        assert payload == "<samlp:LogoutRequest/>"
        assert ctx.client_host == "testclient"
        self.orchestrator.handle.assert_not_called()

    def test_rejected_single_logout(self) -> None:
        self.orchestrator.single_logout.return_value = Denied(403, "Logout origin not allowed")

        response = self.client.post("/form", data={"logoutRequest": "x"})

        assert response.status_code == 403
        assert response.json() == {"error": "Logout origin not allowed"}

    def test_other_forms_reach_the_route(self) -> None:
        response = self.client.post("/form", data={"name": "value"})

        assert response.json() == {"name": "value"}
        self.orchestrator.single_logout.assert_not_called()


def test_outcome_response_for_proceed() -> None:
    assert outcome_response(Proceed(None)) is None
