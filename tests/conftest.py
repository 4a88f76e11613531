"""Shared fixtures: a fixture CAS server and ready-made configurations."""

import re
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qs, urlsplit
from xml.sax.saxutils import escape

import httpx
import pytest

from user_cas.auth.client import CasClient
from user_cas.auth.mapper import AttributeMapper
from user_cas.auth.orchestrator import AuthenticationOrchestrator
from user_cas.auth.sessions import SessionRegistry
from user_cas.config import CasConfig, ProtocolVersion
from user_cas.provisioning.backends import CurrentBackend
from user_cas.provisioning.memory import InMemoryHost

CAS_HOST = "cas.example.com"
SERVICE_URL = "https://app.example.com/protected"


class FakeCasServer:
    """CAS server double that issues single-use tickets bound to a service."""

    def __init__(self) -> None:
        self.tickets: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self._counter = 0
        self.fail_with: Callable[[httpx.Request], httpx.Response] | None = None

    def issue(
        self,
        principal: str,
        service: str = SERVICE_URL,
        attributes: dict[str, str | list[str]] | None = None,
        ticket: str | None = None,
    ) -> str:
        self._counter += 1
        ticket = ticket or f"ST-{self._counter}-fixture"
        self.tickets[ticket] = {
            "principal": principal,
            "service": service,
            "attributes": attributes or {},
            "used": False,
        }
        return ticket

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def _redeem(self, ticket: str, service: str) -> tuple[str | None, dict[str, Any] | None]:
        entry = self.tickets.get(ticket)
        if entry is None or entry["used"]:
            return "INVALID_TICKET", None
        entry["used"] = True
        if entry["service"] != service:
            return "INVALID_SERVICE", None
        return None, entry

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return self.fail_with(request)

        url = urlsplit(str(request.url))
        params = {k: v[0] for k, v in parse_qs(url.query).items()}

        if url.path.endswith("/samlValidate"):
            match = re.search(r"AssertionArtifact>([^<]+)<", request.content.decode())
            ticket = match.group(1) if match else ""
            return self._saml_response(ticket, params.get("TARGET", ""))

        ticket = params.get("ticket", "")
        service = params.get("service", "")

        if url.path.endswith("/validate"):
            error, entry = self._redeem(ticket, service)
            if error:
                return httpx.Response(200, text="no\n\n")
            return httpx.Response(200, text=f"yes\n{entry['principal']}\n")

        if url.path.endswith("/serviceValidate"):
            return self._xml_response(ticket, service)

        return httpx.Response(404, text="Not Found")

    def _xml_response(self, ticket: str, service: str) -> httpx.Response:
        error, entry = self._redeem(ticket, service)
        if error:
            body = (
                '<cas:serviceResponse xmlns:cas="http://www.yale.edu/tp/cas">'
                f'<cas:authenticationFailure code="{error}">'
                f"Ticket {escape(ticket)} not recognized"
                "</cas:authenticationFailure></cas:serviceResponse>"
            )
            return httpx.Response(200, text=body)

        attributes = ""
        for name, value in entry["attributes"].items():
            for item in value if isinstance(value, list) else [value]:
                attributes += f"<cas:{name}>{escape(item)}</cas:{name}>"
        body = (
            '<cas:serviceResponse xmlns:cas="http://www.yale.edu/tp/cas">'
            "<cas:authenticationSuccess>"
            f"<cas:user>{escape(entry['principal'])}</cas:user>"
            f"<cas:attributes>{attributes}</cas:attributes>"
            "</cas:authenticationSuccess></cas:serviceResponse>"
        )
        return httpx.Response(200, text=body)

    def _saml_response(self, ticket: str, service: str) -> httpx.Response:
        error, entry = self._redeem(ticket, service)
        status = "samlp:Success" if not error else "samlp:RequestDenied"
        assertion = ""
        if entry:
            attributes = "".join(
                f'<saml:Attribute AttributeName="{name}" '
                'AttributeNamespace="http://www.ja-sig.org/products/cas/">'
                + "".join(
                    f"<saml:AttributeValue>{escape(v)}</saml:AttributeValue>"
                    for v in (value if isinstance(value, list) else [value])
                )
                + "</saml:Attribute>"
                for name, value in entry["attributes"].items()
            )
            subject = (
                "<saml:Subject><saml:NameIdentifier>"
                f"{escape(entry['principal'])}"
                "</saml:NameIdentifier></saml:Subject>"
            )
            assertion = (
                '<saml:Assertion xmlns:saml="urn:oasis:names:tc:SAML:1.0:assertion" '
                'MajorVersion="1" MinorVersion="1">'
                f"<saml:AttributeStatement>{subject}{attributes}</saml:AttributeStatement>"
                '<saml:AuthenticationStatement AuthenticationMethod="urn:oasis:names:tc:SAML:1.0:am:password">'
                f"{subject}</saml:AuthenticationStatement>"
                "</saml:Assertion>"
            )
        body = (
            '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/">'
            "<SOAP-ENV:Header/><SOAP-ENV:Body>"
            '<samlp:Response xmlns:samlp="urn:oasis:names:tc:SAML:1.0:protocol" '
            'MajorVersion="1" MinorVersion="1">'
            f'<samlp:Status><samlp:StatusCode Value="{status}"/></samlp:Status>'
            f"{assertion}</samlp:Response></SOAP-ENV:Body></SOAP-ENV:Envelope>"
        )
        return httpx.Response(200, text=body)


def logout_request_xml(ticket: str) -> str:
    """Single logout notification as posted by the CAS server."""
    return (
        '<samlp:LogoutRequest xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol" '
        'xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion" ID="LR-1" Version="2.0" '
        'IssueInstant="2024-01-01T00:00:00Z">'
        "<saml:NameID>@NOT_USED@</saml:NameID>"
        f"<samlp:SessionIndex>{escape(ticket)}</samlp:SessionIndex>"
        "</samlp:LogoutRequest>"
    )


async def run_inline(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Stand-in for the thread pool: run a sync callable in the event loop."""
    return func(*args, **kwargs)


@pytest.fixture
def cas_server() -> FakeCasServer:
    return FakeCasServer()


@pytest.fixture
def cas_config() -> CasConfig:
    return CasConfig(server_host=CAS_HOST, protocol_version=ProtocolVersion.V2)


@pytest.fixture
def host() -> InMemoryHost:
    return InMemoryHost(name="Nextcloud", version=(28, 0, 0))


@pytest.fixture
def make_orchestrator(
    cas_server: FakeCasServer, host: InMemoryHost
) -> Callable[..., AuthenticationOrchestrator]:
    """Factory building an orchestrator wired to the fixture server and host."""

    def factory(config: CasConfig, **kwargs: Any) -> AuthenticationOrchestrator:
        return AuthenticationOrchestrator(
            config=config,
            client=CasClient(config, transport=cas_server.transport),
            mapper=AttributeMapper(config),
            backend=kwargs.pop("backend", CurrentBackend(host.users, host.groups)),
            registry=kwargs.pop("registry", SessionRegistry()),
            run_sync=run_inline,
            hostname_resolver=kwargs.pop("hostname_resolver", None),
        )

    return factory
