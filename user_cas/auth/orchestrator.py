"""Authentication state machine: login redirect, validation, provisioning, logout."""

import socket
from collections.abc import Awaitable, Callable, Mapping, MutableMapping
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog
from starlette.concurrency import run_in_threadpool

from ..config import CasConfig
from ..exceptions import (
    AccessDeniedError,
    ProtocolError,
    ProvisioningError,
    ValidationError,
)
from ..logging import ticket_fingerprint
from ..provisioning.backends import UserProvisioningBackend
from .client import CasClient, parse_logout_request
from .mapper import AttributeMapper
from .models import (
    AuthenticationSession,
    AuthState,
    TicketValidationRequest,
    ValidationSuccess,
)
from .sessions import SessionRegistry

logger = structlog.get_logger()

SESSION_STATE_KEY = "cas_state"
SESSION_SERVICE_KEY = "cas_service"
SESSION_AUTH_KEY = "cas_session"


@dataclass(frozen=True)
class RequestContext:
    """The parts of an inbound request the orchestrator looks at."""

    url: str
    path: str
    method: str = "GET"
    query: Mapping[str, str] = field(default_factory=dict)
    client_host: str | None = None


@dataclass(frozen=True)
class Proceed:
    """Let the request through, with the authenticated session if any."""

    session: AuthenticationSession | None = None


@dataclass(frozen=True)
class Redirect:
    location: str


@dataclass(frozen=True)
class Denied:
    """Terminal failure for this request."""

    status_code: int
    message: str
    state: AuthState = AuthState.FAILED


@dataclass(frozen=True)
class Acknowledged:
    """A single logout notification was applied."""

    revoked: bool


Outcome = Proceed | Redirect | Denied | Acknowledged


def strip_ticket(url: str) -> str:
    """Remove the ``ticket`` query parameter from a URL."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "ticket"]
    return urlunsplit(parts._replace(query=urlencode(query)))


def path_matches(path: str, pattern: str) -> bool:
    """Glob match, or ``pattern`` naming ``path`` or one of its parent paths."""
    if fnmatch(path, pattern):
        return True
    prefix = pattern.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


def resolve_hostname(address: str) -> str | None:
    """Reverse-resolve an address; None if it has no name."""
    try:
        return socket.gethostbyaddr(address)[0]
    except OSError:
        return None


class AuthenticationOrchestrator:
    """Coordinates one authentication attempt per request.

    The orchestrator is the only component deciding what an end user sees:
    validation details are logged, never returned.
    """

    def __init__(
        self,
        config: CasConfig,
        client: CasClient,
        mapper: AttributeMapper,
        backend: UserProvisioningBackend,
        registry: SessionRegistry,
        run_sync: Callable[..., Awaitable[Any]] = run_in_threadpool,
        hostname_resolver: Callable[[str], str | None] | None = resolve_hostname,
    ):
        self.config = config
        self.client = client
        self.mapper = mapper
        self.backend = backend
        self.registry = registry
        self.run_sync = run_sync
        self.hostname_resolver = hostname_resolver

    # Session helpers

    @staticmethod
    def state(session: Mapping[str, Any]) -> AuthState:
        try:
            return AuthState(session.get(SESSION_STATE_KEY, AuthState.ANONYMOUS.value))
        except ValueError:
            return AuthState.ANONYMOUS

    def current_session(
        self, session: MutableMapping[str, Any]
    ) -> AuthenticationSession | None:
        """The authenticated session, unless it was ended by single logout."""
        data = session.get(SESSION_AUTH_KEY)
        if not data:
            return None

        try:
            auth = AuthenticationSession.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding unreadable CAS session data")
            self._clear(session, AuthState.ANONYMOUS)
            return None

        if self.registry.is_revoked(auth.ticket):
            logger.info("Session ended by single logout", uid=auth.uid)
            self._clear(session, AuthState.LOGGED_OUT)
            return None
        return auth

    @staticmethod
    def _clear(session: MutableMapping[str, Any], state: AuthState) -> None:
        session.pop(SESSION_AUTH_KEY, None)
        session.pop(SESSION_SERVICE_KEY, None)
        session[SESSION_STATE_KEY] = state.value

    # Policy

    def callback_url(self, ctx: RequestContext) -> str:
        """Service URL that tickets for this request are bound to."""
        if self.config.service_url:
            return self.config.service_url
        return strip_ticket(ctx.url)

    def is_force_login_exception(self, path: str) -> bool:
        return any(path_matches(path, p) for p in self.config.force_login_exceptions)

    def requires_login(self, path: str) -> bool:
        if any(path_matches(path, p) for p in self.config.protected_paths):
            return True
        return self.config.force_login and not self.is_force_login_exception(path)

    # Transitions

    async def handle(
        self,
        ctx: RequestContext,
        session: MutableMapping[str, Any],
        login_required: bool = False,
    ) -> Outcome:
        """Run the state machine for one request."""
        current = self.current_session(session)
        if current is not None:
            return Proceed(current)

        needs_login = login_required or self.requires_login(ctx.path)
        ticket = ctx.query.get("ticket")

        if ticket and (needs_login or self.state(session) is AuthState.AWAITING_TICKET):
            return await self.authenticate(ctx, ticket, session)

        if needs_login:
            return self.start_login(ctx, session)

        return Proceed(None)

    def start_login(self, ctx: RequestContext, session: MutableMapping[str, Any]) -> Redirect:
        service = self.callback_url(ctx)
        session[SESSION_STATE_KEY] = AuthState.AWAITING_TICKET.value
        session[SESSION_SERVICE_KEY] = service
        logger.info("Redirecting to CAS login", path=ctx.path, service=service)
        return Redirect(self.client.login_url(service))

    async def authenticate(
        self, ctx: RequestContext, ticket: str, session: MutableMapping[str, Any]
    ) -> Outcome:
        """Validate ``ticket``, provision the user and establish the session."""
        service = self.callback_url(ctx)
        expected_service = session.pop(SESSION_SERVICE_KEY, None)
        session[SESSION_STATE_KEY] = AuthState.VALIDATING.value

        try:
            success = await self._validate(
                TicketValidationRequest(
                    ticket=ticket, service=service, expected_service=expected_service
                )
            )
            session[SESSION_STATE_KEY] = AuthState.PROVISIONING.value
            identity = self.mapper.map(success)
            if not self.mapper.is_access_allowed(identity):
                raise AccessDeniedError(f'"{identity.uid}" is not in an allowed group')
            record = await self.run_sync(
                self.backend.provision, identity, create=self.config.autocreate
            )
        except ValidationError as e:
            failure = e.failure
            if failure.is_internal:
                return self._fail(session, 503, "Authentication service unavailable")
            return self._fail(session, 403, "Authentication failed")
        except AccessDeniedError as e:
            logger.warning("CAS user denied access", error=str(e))
            return self._fail(session, 403, "Access denied")
        except ProvisioningError as e:
            logger.error("User provisioning failed", error=str(e), error_type=type(e).__name__)
            return self._fail(session, 500, "User provisioning failed")

        auth = AuthenticationSession(uid=record.uid, ticket=ticket)
        session[SESSION_AUTH_KEY] = auth.to_dict()
        session[SESSION_STATE_KEY] = AuthState.AUTHENTICATED.value
        self.registry.register(auth)

        logger.info(
            "User authenticated",
            uid=record.uid,
            ticket=ticket_fingerprint(ticket),
        )
        return Redirect(service)

    async def _validate(self, request: TicketValidationRequest) -> ValidationSuccess:
        result = await self.client.validate(request)
        if not isinstance(result, ValidationSuccess):
            raise ValidationError(result)
        return result

    def _fail(self, session: MutableMapping[str, Any], status_code: int, message: str) -> Denied:
        self._clear(session, AuthState.FAILED)
        return Denied(status_code=status_code, message=message)

    def logout(self, ctx: RequestContext, session: MutableMapping[str, Any]) -> Outcome:
        """Log the user out locally and at the CAS server, unless disabled."""
        current = self.current_session(session)

        if self.config.disable_logout:
            logger.info(
                "Logout suppressed by configuration",
                uid=current.uid if current else None,
            )
            return Proceed(current)

        if current is not None and current.ticket:
            self.registry.forget(current.ticket)
        self._clear(session, AuthState.LOGGED_OUT)

        service = ctx.query.get("service") or self.config.service_url
        if not service:
            parts = urlsplit(ctx.url)
            service = urlunsplit((parts.scheme, parts.netloc, "/", "", ""))

        logger.info("Redirecting to CAS logout", uid=current.uid if current else None)
        return Redirect(self.client.logout_url(service))

    async def is_logout_origin_allowed(self, client_host: str | None) -> bool:
        """Whether ``client_host`` may send single logout notifications."""
        if not client_host or not self.config.logout_allowed_servers:
            return False

        candidates = [client_host.lower()]
        if self.hostname_resolver is not None:
            name = await self.run_sync(self.hostname_resolver, client_host)
            if name:
                candidates.append(name.lower())

        return any(
            fnmatch(candidate, pattern.lower())
            for candidate in candidates
            for pattern in self.config.logout_allowed_servers
        )

    async def single_logout(self, ctx: RequestContext, logout_request: str) -> Outcome:
        """Apply a server-initiated logout notification.

        Notifications from origins outside ``logout_allowed_servers`` are
        rejected without touching any session.
        """
        if self.config.disable_logout:
            logger.info("Ignoring single logout request, logout is disabled")
            return Denied(403, "Single logout is disabled", AuthState.AUTHENTICATED)

        if not await self.is_logout_origin_allowed(ctx.client_host):
            logger.warning("Rejected single logout request", client_host=ctx.client_host)
            return Denied(403, "Logout origin not allowed", AuthState.AUTHENTICATED)

        try:
            ticket = parse_logout_request(logout_request)
        except ProtocolError as e:
            logger.warning("Malformed single logout request", error=str(e))
            return Denied(400, "Malformed logout request", AuthState.AUTHENTICATED)

        revoked = self.registry.revoke(ticket)
        return Acknowledged(revoked=revoked is not None)
