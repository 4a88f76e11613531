"""CAS protocol client: redirect URLs and ticket validation."""

import ssl
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from functools import wraps
from typing import Any
from urllib.parse import urlencode
from xml.parsers.expat import ExpatError

import httpx
import structlog
import xmltodict
from cachetools import TTLCache

from ..config import CasConfig, ProtocolVersion
from ..exceptions import ProtocolError, TransportError
from ..logging import ticket_fingerprint
from .models import (
    FailureCode,
    TicketValidationRequest,
    TicketValidationResult,
    ValidationFailure,
    ValidationSuccess,
)

logger = structlog.get_logger()

CAS_NAMESPACE = "http://www.yale.edu/tp/cas"
SOAP_NAMESPACE = "http://schemas.xmlsoap.org/soap/envelope/"
SAMLP_NAMESPACE = "urn:oasis:names:tc:SAML:1.0:protocol"
SAML_NAMESPACE = "urn:oasis:names:tc:SAML:1.0:assertion"
SAML2_PROTOCOL_NAMESPACE = "urn:oasis:names:tc:SAML:2.0:protocol"

VALIDATION_PATHS = {
    ProtocolVersion.V1: "/validate",
    ProtocolVersion.V2: "/serviceValidate",
    ProtocolVersion.V3: "/p3/serviceValidate",
    ProtocolVersion.SAML_1_1: "/samlValidate",
}

# CAS 3.0 renamed one failure code
_FAILURE_CODE_ALIASES = {"INVALID_TICKET_SPEC": FailureCode.INVALID_TICKET}

# Children of authenticationSuccess that are not user attributes
_SUCCESS_RESERVED = {"user", "attributes", "proxyGrantingTicket", "proxies", "attribute"}


def _with_query(url: str, params: dict[str, str]) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


def _text(node: Any) -> str:
    """Text content of an xmltodict node."""
    if node is None:
        return ""
    if isinstance(node, dict):
        return str(node.get("#text", "")).strip()
    return str(node).strip()


def _as_list(node: Any) -> list[Any]:
    if node is None:
        return []
    if isinstance(node, list):
        return node
    return [node]


def _add_attribute(
    attributes: dict[str, str | list[str]], name: str, values: list[str]
) -> None:
    if not name:
        return
    existing = attributes.get(name)
    if existing is not None:
        merged = existing if isinstance(existing, list) else [existing]
        values = merged + values
    attributes[name] = values[0] if len(values) == 1 else values


def parse_v1_response(body: str) -> TicketValidationResult:
    """Parse a CAS 1.0 ``/validate`` response (``yes\\n<user>\\n`` or ``no\\n``).

    Raises:
        ProtocolError: If the body is not a CAS 1.0 response
    """
    lines = body.replace("\r\n", "\n").split("\n")
    verdict = lines[0].strip() if lines else ""

    if verdict == "no":
        return ValidationFailure(FailureCode.INVALID_TICKET, "Ticket rejected by CAS server")
    if verdict == "yes":
        principal = lines[1].strip() if len(lines) > 1 else ""
        if not principal:
            raise ProtocolError("CAS 1.0 success response without a username")
        return ValidationSuccess(principal=principal)

    raise ProtocolError(f"Unexpected CAS 1.0 response: {body[:50]!r}")


def parse_v2_response(body: str) -> TicketValidationResult:
    """Parse a CAS 2.0/3.0 ``serviceResponse`` XML document.

    Attributes are read from ``cas:attributes`` (3.0 and Jasig style), from
    ``cas:attribute name=... value=...`` elements (RubyCAS style) and from any
    other child of ``authenticationSuccess``.

    Raises:
        ProtocolError: If the document is malformed or has no known envelope
    """
    try:
        document = xmltodict.parse(
            body,
            process_namespaces=True,
            namespaces={CAS_NAMESPACE: None},
        )
    except (ExpatError, ValueError) as e:
        raise ProtocolError(f"Malformed CAS response: {e}") from e

    response = (document or {}).get("serviceResponse")
    if not isinstance(response, dict):
        raise ProtocolError("CAS response has no serviceResponse element")

    if "authenticationFailure" in response:
        failure = response["authenticationFailure"]
        raw_code = failure.get("@code", "") if isinstance(failure, dict) else ""
        detail = _text(failure)
        if raw_code in _FAILURE_CODE_ALIASES:
            code = _FAILURE_CODE_ALIASES[raw_code]
        else:
            try:
                code = FailureCode(raw_code)
            except ValueError:
                code = FailureCode.INTERNAL_ERROR
                detail = f"{raw_code or 'UNKNOWN'}: {detail}"
        return ValidationFailure(code, detail)

    success = response.get("authenticationSuccess")
    if not isinstance(success, dict):
        raise ProtocolError("CAS response has neither success nor failure element")

    principal = _text(success.get("user"))
    if not principal:
        raise ProtocolError("CAS success response without a user")

    attributes: dict[str, str | list[str]] = {}

    nested = success.get("attributes")
    if isinstance(nested, dict):
        for name, value in nested.items():
            if name.startswith("@") or name.startswith("#"):
                continue
            _add_attribute(attributes, name, [_text(v) for v in _as_list(value)])

    for item in _as_list(success.get("attribute")):
        if isinstance(item, dict):
            _add_attribute(attributes, item.get("@name", ""), [str(item.get("@value", ""))])

    for name, value in success.items():
        if name in _SUCCESS_RESERVED or name.startswith("@") or name.startswith("#"):
            continue
        _add_attribute(attributes, name, [_text(v) for v in _as_list(value)])

    pgt = _text(success.get("proxyGrantingTicket")) or None

    return ValidationSuccess(
        principal=principal, attributes=attributes, proxy_granting_ticket=pgt
    )


def parse_saml_response(body: str) -> TicketValidationResult:
    """Parse a SAML 1.1 ``samlValidate`` SOAP response.

    Raises:
        ProtocolError: If the envelope or assertion cannot be found
    """
    try:
        document = xmltodict.parse(
            body,
            process_namespaces=True,
            namespaces={
                SOAP_NAMESPACE: "soap",
                SAMLP_NAMESPACE: "samlp",
                SAML_NAMESPACE: "saml",
            },
        )
    except (ExpatError, ValueError) as e:
        raise ProtocolError(f"Malformed SAML response: {e}") from e

    try:
        response = document["soap:Envelope"]["soap:Body"]["samlp:Response"]
        status = response["samlp:Status"]
        status_code = status["samlp:StatusCode"]["@Value"]
    except (KeyError, TypeError) as e:
        raise ProtocolError(f"SAML response is missing {e}") from e

    if not status_code.endswith("Success"):
        message = _text(status.get("samlp:StatusMessage"))
        return ValidationFailure(
            FailureCode.INVALID_TICKET, f"{status_code}: {message}".rstrip(": ")
        )

    assertion = response.get("saml:Assertion")
    if not isinstance(assertion, dict):
        raise ProtocolError("SAML success response without an assertion")

    principal = ""
    for statement_name in ("saml:AuthenticationStatement", "saml:AttributeStatement"):
        for statement in _as_list(assertion.get(statement_name)):
            subject = statement.get("saml:Subject") if isinstance(statement, dict) else None
            if isinstance(subject, dict):
                principal = _text(subject.get("saml:NameIdentifier"))
            if principal:
                break
        if principal:
            break
    if not principal:
        raise ProtocolError("SAML assertion without a NameIdentifier")

    attributes: dict[str, str | list[str]] = {}
    for statement in _as_list(assertion.get("saml:AttributeStatement")):
        if not isinstance(statement, dict):
            continue
        for attribute in _as_list(statement.get("saml:Attribute")):
            if not isinstance(attribute, dict):
                continue
            _add_attribute(
                attributes,
                attribute.get("@AttributeName", ""),
                [_text(v) for v in _as_list(attribute.get("saml:AttributeValue"))],
            )

    return ValidationSuccess(principal=principal, attributes=attributes)


def parse_logout_request(body: str) -> str:
    """Extract the ticket (SessionIndex) from a single logout notification.

    Raises:
        ProtocolError: If the payload is not a LogoutRequest with a SessionIndex
    """
    try:
        document = xmltodict.parse(
            body,
            process_namespaces=True,
            namespaces={SAML2_PROTOCOL_NAMESPACE: "samlp"},
        )
    except (ExpatError, ValueError) as e:
        raise ProtocolError(f"Malformed logout request: {e}") from e

    request = (document or {}).get("samlp:LogoutRequest")
    if not isinstance(request, dict):
        raise ProtocolError("Payload is not a LogoutRequest")

    ticket = _text(request.get("samlp:SessionIndex"))
    if not ticket:
        raise ProtocolError("LogoutRequest without a SessionIndex")
    return ticket


def build_saml_request(ticket: str) -> str:
    """SOAP envelope carrying a SAML 1.1 request for ``ticket``."""
    return xmltodict.unparse(
        {
            "SOAP-ENV:Envelope": {
                "@xmlns:SOAP-ENV": SOAP_NAMESPACE,
                "SOAP-ENV:Header": None,
                "SOAP-ENV:Body": {
                    "samlp:Request": {
                        "@xmlns:samlp": SAMLP_NAMESPACE,
                        "@MajorVersion": "1",
                        "@MinorVersion": "1",
                        "@RequestID": f"_{uuid.uuid4().hex}",
                        "@IssueInstant": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
                        "samlp:AssertionArtifact": ticket,
                    }
                },
            }
        },
        full_document=False,
    )


def cas_request_logger(func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator to log ticket validation round trips."""

    @wraps(func)
    async def wrapper(
        self: "CasClient", request: TicketValidationRequest
    ) -> TicketValidationResult:
        fingerprint = ticket_fingerprint(request.ticket)
        logger.info(
            "CAS ticket validation started",
            ticket=fingerprint,
            service=request.service,
            protocol_version=self.config.protocol_version.value,
        )

        start_time = time.time()
        result: TicketValidationResult = await func(self, request)
        duration_ms = round((time.time() - start_time) * 1000, 2)

        if isinstance(result, ValidationSuccess):
            logger.info(
                "CAS ticket validation succeeded",
                ticket=fingerprint,
                principal=result.principal,
                attribute_names=sorted(result.attributes),
                duration_ms=duration_ms,
            )
        else:
            logger.warning(
                "CAS ticket validation failed",
                ticket=fingerprint,
                code=result.code.value,
                detail=result.detail,
                duration_ms=duration_ms,
            )
        return result

    return wrapper


class CasClient:
    """CAS protocol client.

    Builds login/logout redirect URLs and redeems service tickets against the
    validation endpoint matching the configured protocol version. Each
    ``validate`` call makes at most one HTTP request and never retries: CAS
    tickets are single use, so a ticket this client has already submitted is
    rejected locally.
    """

    def __init__(
        self,
        config: CasConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        consumed_ticket_ttl: int = 3600,
        consumed_ticket_maxsize: int = 10000,
    ):
        """Initialize the CAS client.

        Args:
            config: CAS settings snapshot
            transport: Optional httpx transport (used to plug in a fixture server)
            consumed_ticket_ttl: Seconds a submitted ticket is remembered
            consumed_ticket_maxsize: Upper bound of remembered tickets
        """
        self.config = config
        self.transport = transport
        self._consumed: TTLCache[str, bool] = TTLCache(
            maxsize=consumed_ticket_maxsize, ttl=consumed_ticket_ttl
        )

    @property
    def timeout(self) -> float:
        return self.config.timeout_seconds

    def login_url(self, service: str) -> str:
        base = self.config.login_url_override or f"{self.config.server_url}/login"
        return _with_query(base, {"service": service})

    def logout_url(self, service: str | None = None) -> str:
        base = self.config.logout_url_override or f"{self.config.server_url}/logout"
        if service:
            return _with_query(base, {"service": service})
        return base

    def validation_url(self, service: str, ticket: str) -> str:
        """Validation endpoint URL for the configured protocol version."""
        base = self.config.server_url + VALIDATION_PATHS[self.config.protocol_version]
        if self.config.protocol_version is ProtocolVersion.SAML_1_1:
            # The ticket travels in the SOAP body
            return _with_query(base, {"TARGET": service})
        return _with_query(base, {"service": service, "ticket": ticket})

    def _get_ssl_verify_config(self) -> ssl.SSLContext | bool:
        """Custom CA bundle if configured, else the verify flag."""
        if self.config.ca_cert_path:
            return ssl.create_default_context(cafile=self.config.ca_cert_path)
        if not self.config.verify_tls:
            logger.warning(
                "CAS server certificate verification disabled - this is insecure"
            )
        return self.config.verify_tls

    @cas_request_logger
    async def validate(self, request: TicketValidationRequest) -> TicketValidationResult:
        """Redeem a service ticket.

        Args:
            request: Ticket and the service URL it is redeemed for

        Returns:
            ValidationSuccess, or ValidationFailure with the protocol code
            (INTERNAL_ERROR for transport and parsing problems)
        """
        if not request.ticket:
            return ValidationFailure(FailureCode.INVALID_REQUEST, "No ticket supplied")
        if not request.service:
            return ValidationFailure(FailureCode.INVALID_REQUEST, "No service supplied")

        if (
            request.expected_service is not None
            and request.service != request.expected_service
        ):
            return ValidationFailure(
                FailureCode.INVALID_SERVICE,
                f"Service {request.service!r} does not match the service the "
                f"ticket was requested for",
            )

        if request.ticket in self._consumed:
            return ValidationFailure(
                FailureCode.INVALID_TICKET, "Ticket has already been submitted"
            )
        self._consumed[request.ticket] = True

        try:
            body = await self._fetch(request)
            return self.parse_response(body)
        except TransportError as e:
            return ValidationFailure(FailureCode.INTERNAL_ERROR, f"Transport error: {e}")
        except ProtocolError as e:
            return ValidationFailure(FailureCode.INTERNAL_ERROR, f"Protocol error: {e}")

    def parse_response(self, body: str) -> TicketValidationResult:
        """Parse a validation response for the configured protocol version."""
        version = self.config.protocol_version
        if version is ProtocolVersion.V1:
            return parse_v1_response(body)
        if version is ProtocolVersion.SAML_1_1:
            return parse_saml_response(body)
        return parse_v2_response(body)

    async def _fetch(self, request: TicketValidationRequest) -> str:
        """Perform the single HTTP round trip to the validation endpoint.

        Raises:
            TransportError: On timeouts, connection/TLS failures and non-2xx answers
        """
        url = self.validation_url(request.service, request.ticket)
        is_saml = self.config.protocol_version is ProtocolVersion.SAML_1_1

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                verify=self._get_ssl_verify_config(),
                transport=self.transport,
            ) as client:
                if is_saml:
                    response = await client.post(
                        url,
                        content=build_saml_request(request.ticket),
                        headers={
                            "Content-Type": "text/xml; charset=utf-8",
                            "SOAPAction": "http://www.oasis-open.org/committees/security",
                        },
                    )
                else:
                    response = await client.get(url)
        except httpx.TimeoutException as e:
            raise TransportError(f"CAS server timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e
        except (ssl.SSLError, OSError) as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise TransportError(f"CAS server answered HTTP {response.status_code}")

        return response.text
