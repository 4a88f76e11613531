"""CAS authentication middleware for Starlette applications."""

from collections.abc import Callable
from typing import Any

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response

from .orchestrator import (
    Acknowledged,
    AuthenticationOrchestrator,
    Denied,
    Outcome,
    Proceed,
    Redirect,
    RequestContext,
)

logger = structlog.get_logger()

UNPROTECTED_PATHS = frozenset({"/health"})

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        url=str(request.url),
        path=request.url.path,
        method=request.method,
        query=dict(request.query_params),
        client_host=request.client.host if request.client else None,
    )


def outcome_response(outcome: Outcome) -> Response | None:
    """Response for a terminal outcome; None when the request may proceed."""
    if isinstance(outcome, Redirect):
        return RedirectResponse(outcome.location, status_code=302)
    if isinstance(outcome, Denied):
        return JSONResponse(status_code=outcome.status_code, content={"error": outcome.message})
    if isinstance(outcome, Acknowledged):
        return PlainTextResponse("OK")
    return None


class CasAuthenticationMiddleware(BaseHTTPMiddleware):
    """Runs the CAS state machine in front of every request.

    Must be installed inside Starlette's SessionMiddleware. The orchestrator
    is fetched per request so that a settings reload takes effect on the next
    request while a running request keeps its snapshot.
    """

    def __init__(
        self,
        app: Any,
        get_orchestrator: Callable[[], AuthenticationOrchestrator],
        login_path: str = "/login",
        logout_path: str = "/logout",
    ):
        super().__init__(app)
        self.get_orchestrator = get_orchestrator
        self.login_path = login_path
        self.logout_path = logout_path

    async def dispatch(self, request: Request, call_next: Any) -> Any:
        if request.url.path in UNPROTECTED_PATHS:
            return await call_next(request)

        orchestrator = self.get_orchestrator()
        ctx = request_context(request)

        if request.method == "POST" and request.headers.get("content-type", "").startswith(
            FORM_CONTENT_TYPE
        ):
            # Buffer the body first so the endpoint can still read it
            await request.body()
            form = await request.form()
            logout_request = form.get("logoutRequest")
            if isinstance(logout_request, str):
                outcome = await orchestrator.single_logout(ctx, logout_request)
                return outcome_response(outcome)

        if request.url.path == self.logout_path:
            # The logout endpoint decides for itself
            return await call_next(request)

        outcome = await orchestrator.handle(
            ctx, request.session, login_required=request.url.path == self.login_path
        )

        response = outcome_response(outcome)
        if response is not None:
            if isinstance(outcome, Denied):
                logger.warning(
                    "Authentication failed",
                    path=request.url.path,
                    status=outcome.status_code,
                    reason=outcome.message,
                )
            return response

        user = outcome.session if isinstance(outcome, Proceed) else None
        request.state.user = user
        if user is not None:
            logger.debug(
                "Authenticated request", user=user.uid, path=request.url.path
            )
        return await call_next(request)
