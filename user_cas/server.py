#!/usr/bin/env python3
"""ASGI application wiring CAS authentication in front of a host application."""

import os
import secrets
import sys
import threading
from typing import Any

import httpx
import structlog
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse
from starlette.routing import Route

from .auth.client import CasClient
from .auth.mapper import AttributeMapper
from .auth.middleware import CasAuthenticationMiddleware, outcome_response, request_context
from .auth.orchestrator import AuthenticationOrchestrator, Proceed
from .auth.sessions import SessionRegistry
from .config import ConfigLoader, get_config_loader
from .exceptions import ConfigurationError, ProvisioningError
from .logging import configure_logging, get_uvicorn_log_config
from .provisioning.backends import BaseBackend
from .provisioning.loader import build_backend, load_host
from .settings import SettingsStore, save_settings

logger = structlog.get_logger()


class CasRuntime:
    """Long-lived services plus the current configuration snapshot.

    The backend and session registry live as long as the process; the client,
    mapper and orchestrator are rebuilt whenever the settings are reloaded.
    """

    def __init__(
        self,
        loader: ConfigLoader,
        backend: BaseBackend,
        registry: SessionRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        hostname_resolver: Any = None,
    ):
        self.loader = loader
        self.backend = backend
        self.registry = registry or SessionRegistry()
        self.transport = transport
        self.hostname_resolver = hostname_resolver
        self._lock = threading.Lock()
        self._orchestrator = self._build(loader.load())

    def _build(self, config: Any) -> AuthenticationOrchestrator:
        kwargs: dict[str, Any] = {}
        if self.hostname_resolver is not None:
            kwargs["hostname_resolver"] = self.hostname_resolver
        return AuthenticationOrchestrator(
            config=config,
            client=CasClient(config, transport=self.transport),
            mapper=AttributeMapper(config),
            backend=self.backend,
            registry=self.registry,
            **kwargs,
        )

    @property
    def orchestrator(self) -> AuthenticationOrchestrator:
        with self._lock:
            return self._orchestrator

    def reload(self) -> None:
        """Load the settings again; fails without replacing the current snapshot."""
        orchestrator = self._build(self.loader.reload())
        with self._lock:
            self._orchestrator = orchestrator
        logger.info("CAS configuration reloaded")


def create_app(
    runtime: CasRuntime,
    settings_store: SettingsStore,
    session_secret: str | None = None,
    admin_group: str = "admin",
    https_only: bool = False,
) -> Starlette:
    """Build the Starlette application."""

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "healthy"})

    async def index(request: Request) -> JSONResponse:
        user = getattr(request.state, "user", None)
        if user is None:
            return JSONResponse({"authenticated": False})
        return JSONResponse({"authenticated": True, "uid": user.uid})

    async def login(request: Request) -> RedirectResponse:
        target = request.query_params.get("redirect_url", "/")
        if not target.startswith("/") or target.startswith("//"):
            target = "/"
        return RedirectResponse(target, status_code=302)

    async def logout(request: Request) -> Any:
        outcome = runtime.orchestrator.logout(request_context(request), request.session)
        if isinstance(outcome, Proceed):
            return JSONResponse(
                {
                    "authenticated": outcome.session is not None,
                    "uid": outcome.session.uid if outcome.session else None,
                    "message": "Logout is disabled",
                }
            )
        return outcome_response(outcome)

    async def settings_save(request: Request) -> JSONResponse:
        user = getattr(request.state, "user", None)
        try:
            record = runtime.backend.get_user(user.uid) if user else None
        except ProvisioningError as e:
            logger.error("Admin lookup failed", error=str(e))
            return JSONResponse(
                {"status": "error", "message": "User lookup failed"}, status_code=500
            )
        if record is None or admin_group not in record.groups:
            return JSONResponse({"status": "error", "message": "Forbidden"}, status_code=403)

        form = await request.form()
        result = save_settings(
            settings_store, {k: v for k, v in form.items() if isinstance(v, str)}
        )
        if result["status"] != "success":
            return JSONResponse(result, status_code=400)

        try:
            runtime.reload()
        except ConfigurationError as e:
            logger.error("Saved settings could not be loaded", error=str(e))
            return JSONResponse({"status": "error", "message": str(e)}, status_code=400)
        return JSONResponse(result)

    routes = [
        Route("/health", health),
        Route("/", index),
        Route("/login", login),
        Route("/logout", logout, methods=["GET", "POST"]),
        Route("/settings/save", settings_save, methods=["POST"]),
    ]

    middleware = [
        Middleware(
            SessionMiddleware,
            secret_key=session_secret or secrets.token_urlsafe(32),
            same_site="lax",
            https_only=https_only,
        ),
        Middleware(
            CasAuthenticationMiddleware,
            get_orchestrator=lambda: runtime.orchestrator,
        ),
    ]

    return Starlette(routes=routes, middleware=middleware)


def build_default_app() -> Starlette:
    """Application configured from the environment.

    Raises:
        ConfigurationError: If the host adapter or the CAS settings are unusable
    """
    backend = build_backend(load_host())
    loader = get_config_loader()
    runtime = CasRuntime(loader, backend)

    secret = os.getenv("SESSION_SECRET")
    if not secret:
        logger.warning("SESSION_SECRET not set, sessions will not survive a restart")

    https_only = os.getenv("SESSION_HTTPS_ONLY", "false").lower() in ("1", "true", "yes", "on")
    return create_app(
        runtime,
        SettingsStore(loader.settings_file),
        session_secret=secret,
        https_only=https_only,
    )


def main() -> None:
    """Main entry point for the server."""
    import uvicorn

    configure_logging()

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    timeout_graceful_shutdown = int(os.getenv("SHUTDOWN_TIMEOUT_SECONDS", "8"))

    try:
        app = build_default_app()
    except ConfigurationError as e:
        logger.error("Invalid CAS configuration", error=str(e))
        sys.exit(1)

    try:
        uvicorn.run(
            app,
            host=host,
            port=port,
            timeout_graceful_shutdown=timeout_graceful_shutdown,
            log_level="info",
            log_config=get_uvicorn_log_config(),
        )
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")


if __name__ == "__main__":
    main()
