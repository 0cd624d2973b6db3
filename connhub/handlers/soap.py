"""SOAP handler: WSDL discovery plus envelope dispatch over httpx."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping

import httpx

from ..config import SoapConfig
from ..errors import ConnectionManagerError, ErrorKind
from .auth import build_auth
from .base import ConnectionHandler
from .documents import element_to_value, local_name, parse_xml_element
from .http import build_client

LOG = logging.getLogger(__name__)

WSDL_NS = "http://schemas.xmlsoap.org/wsdl/"
SOAP11_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP12_ENV_NS = "http://www.w3.org/2003/05/soap-envelope"
WSSE_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd"
PASSWORD_TEXT = (
    "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-username-token-profile-1.0#PasswordText"
)

ET.register_namespace("soap", SOAP11_ENV_NS)
ET.register_namespace("soap12", SOAP12_ENV_NS)
ET.register_namespace("wsse", WSSE_NS)


@dataclass(frozen=True, slots=True)
class SoapPort:
    name: str
    address: str | None
    methods: tuple[str, ...]
    actions: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ServiceDescription:
    """Parsed WSDL: ``{service: {port: SoapPort}}`` in document order."""

    target_namespace: str
    services: Mapping[str, Mapping[str, SoapPort]]

    def index(self) -> dict[str, dict[str, list[str]]]:
        return {
            service: {port: list(spec.methods) for port, spec in ports.items()}
            for service, ports in self.services.items()
        }


@dataclass(frozen=True, slots=True)
class SoapResult:
    data: Any
    raw: Any
    headers: Mapping[str, str]
    xml: str


def _unprefixed(qname: str | None) -> str:
    return (qname or "").rsplit(":", 1)[-1]


def parse_wsdl(text: str) -> ServiceDescription:
    root = parse_xml_element(text)
    if local_name(root.tag) != "definitions":
        raise ConnectionManagerError(ErrorKind.PARSE_ERROR, "document is not a WSDL definitions element")

    port_types: dict[str, tuple[str, ...]] = {}
    for port_type in root.findall(f"{{{WSDL_NS}}}portType"):
        operations = tuple(op.get("name", "") for op in port_type.findall(f"{{{WSDL_NS}}}operation"))
        port_types[port_type.get("name", "")] = operations

    bindings: dict[str, tuple[str, dict[str, str]]] = {}
    for binding in root.findall(f"{{{WSDL_NS}}}binding"):
        actions: dict[str, str] = {}
        for operation in binding.findall(f"{{{WSDL_NS}}}operation"):
            for child in operation:
                if local_name(child.tag) == "operation" and child.get("soapAction") is not None:
                    actions[operation.get("name", "")] = child.get("soapAction", "")
            actions.setdefault(operation.get("name", ""), "")
        bindings[binding.get("name", "")] = (_unprefixed(binding.get("type")), actions)

    services: dict[str, dict[str, SoapPort]] = {}
    for service in root.findall(f"{{{WSDL_NS}}}service"):
        ports: dict[str, SoapPort] = {}
        for port in service.findall(f"{{{WSDL_NS}}}port"):
            type_name, actions = bindings.get(_unprefixed(port.get("binding")), ("", {}))
            address = next(
                (child.get("location") for child in port if local_name(child.tag) == "address"),
                None,
            )
            methods = port_types.get(type_name) or tuple(actions)
            ports[port.get("name", "")] = SoapPort(
                name=port.get("name", ""),
                address=address,
                methods=methods,
                actions=actions,
            )
        services[service.get("name", "")] = ports
    if not services:
        raise ConnectionManagerError(ErrorKind.PARSE_ERROR, "WSDL declares no services")
    return ServiceDescription(target_namespace=root.get("targetNamespace", ""), services=services)


def _append_value(parent: ET.Element, value: Any) -> None:
    if isinstance(value, Mapping):
        for key, item in value.items():
            items = item if isinstance(item, (list, tuple)) else [item]
            for entry in items:
                _append_value(ET.SubElement(parent, str(key)), entry)
    elif isinstance(value, bool):
        parent.text = "true" if value else "false"
    elif value is not None:
        parent.text = str(value)


def build_envelope(
    method: str,
    args: Mapping[str, Any] | None,
    *,
    namespace: str = "",
    soap12: bool = False,
    security: ET.Element | None = None,
) -> bytes:
    env_ns = SOAP12_ENV_NS if soap12 else SOAP11_ENV_NS
    envelope = ET.Element(f"{{{env_ns}}}Envelope")
    if security is not None:
        ET.SubElement(envelope, f"{{{env_ns}}}Header").append(security)
    body = ET.SubElement(envelope, f"{{{env_ns}}}Body")
    call = ET.SubElement(body, f"{{{namespace}}}{method}" if namespace else method)
    _append_value(call, args or {})
    return ET.tostring(envelope, encoding="utf-8", xml_declaration=True)


def username_token(username: str, password: str) -> ET.Element:
    security = ET.Element(f"{{{WSSE_NS}}}Security")
    token = ET.SubElement(security, f"{{{WSSE_NS}}}UsernameToken")
    ET.SubElement(token, f"{{{WSSE_NS}}}Username").text = username
    ET.SubElement(token, f"{{{WSSE_NS}}}Password", Type=PASSWORD_TEXT).text = password
    return security


def _fault_message(fault: ET.Element) -> str:
    for element in fault.iter():
        if local_name(element.tag) in {"faultstring", "Text"} and element.text:
            return element.text.strip()
    return "SOAP fault"


class SoapHandler(ConnectionHandler):
    """Calls operations discovered from the service's WSDL."""

    kind: ClassVar[str] = "soap"
    config_model = SoapConfig

    def __init__(
        self,
        config: SoapConfig | Mapping[str, Any],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._description: ServiceDescription | None = None

    def describe(self) -> dict[str, dict[str, list[str]]]:
        return self._description.index() if self._description else {}

    async def _open(self) -> None:
        config: SoapConfig = self.config
        if self._client is None:
            auth = config.auth
            cert: str | tuple[str, str] | None = None
            if auth is not None and auth.type == "clientCert" and auth.cert_file:
                cert = (auth.cert_file, auth.key_file) if auth.key_file else auth.cert_file
            self._client = build_client(
                headers=config.headers,
                timeout_ms=config.timeout_ms,
                auth=build_auth(auth, clock=self._clock),
                verify=config.verify_tls,
                cert=cert,
                transport=self._transport,
            )
        response = await self._client.get(config.wsdl_url)
        response.raise_for_status()
        self._description = parse_wsdl(response.text)
        LOG.info(
            "Loaded WSDL",
            extra={"wsdl_url": config.wsdl_url, "services": list(self._description.services)},
        )

    async def _close(self) -> None:
        client, self._client = self._client, None
        self._description = None
        if client is not None:
            await client.aclose()

    async def _probe(self) -> Mapping[str, Any]:
        assert self._client is not None
        response = await self._client.get(self.config.wsdl_url)
        response.raise_for_status()
        return {"services": self.describe()}

    async def _execute(self, request: Mapping[str, Any]) -> SoapResult:
        method = str(request.get("method") or "")
        if not method:
            raise ConnectionManagerError(ErrorKind.INVALID_CONFIG, "SOAP query requires 'method'")
        port = self._resolve_port(request.get("service"), request.get("port"))
        if method not in port.methods:
            raise ConnectionManagerError(
                ErrorKind.UNKNOWN_OPERATION, f"port '{port.name}' has no operation '{method}'"
            )
        cache_key = request.get("cacheKey", request.get("cache_key"))
        return await self._cached(
            cache_key,
            lambda: self._call(port, method, request.get("args"), request.get("headers")),
        )

    def _describe(self) -> Mapping[str, Any]:
        return {
            "wsdl_url": self.config.wsdl_url,
            "soap12": self.config.soap12,
            "services": self.describe(),
        }

    def secrets(self) -> tuple[str, ...]:
        return self.config.auth.secrets() if self.config.auth else ()

    def _resolve_port(self, service: str | None, port: str | None) -> SoapPort:
        if self._description is None:
            raise ConnectionManagerError(ErrorKind.NOT_CONNECTED, "service description is not loaded")
        services = self._description.services
        if service is None:
            if len(services) > 1:
                raise ConnectionManagerError(
                    ErrorKind.AMBIGUOUS_ENDPOINT,
                    f"WSDL declares {len(services)} services; pass 'service' to choose one",
                )
            service = next(iter(services))
        ports = services.get(service)
        if ports is None:
            raise ConnectionManagerError(ErrorKind.UNKNOWN_OPERATION, f"unknown service '{service}'")
        if not ports:
            raise ConnectionManagerError(ErrorKind.UNKNOWN_OPERATION, f"service '{service}' declares no ports")
        if port is None:
            return next(iter(ports.values()))
        if port not in ports:
            raise ConnectionManagerError(ErrorKind.UNKNOWN_OPERATION, f"unknown port '{port}' on '{service}'")
        return ports[port]

    async def _call(
        self,
        port: SoapPort,
        method: str,
        args: Mapping[str, Any] | None,
        extra_headers: Mapping[str, str] | None,
    ) -> SoapResult:
        assert self._client is not None and self._description is not None
        config: SoapConfig = self.config
        security = None
        if config.auth is not None and config.auth.type == "wss":
            security = username_token(config.auth.username or "", config.auth.password or "")
        envelope = build_envelope(
            method,
            args,
            namespace=self._description.target_namespace,
            soap12=config.soap12,
            security=security,
        )
        action = port.actions.get(method, "")
        if config.soap12:
            headers = {"Content-Type": f'application/soap+xml; charset=utf-8; action="{action}"'}
        else:
            headers = {"Content-Type": "text/xml; charset=utf-8", "SOAPAction": f'"{action}"'}
        headers.update(extra_headers or {})
        address = config.endpoint or port.address or config.wsdl_url.split("?", 1)[0]
        response = await self._client.post(address, content=envelope, headers=headers)
        return self._parse_response(response)

    def _parse_response(self, response: httpx.Response) -> SoapResult:
        text = response.text
        try:
            root = parse_xml_element(text)
        except ConnectionManagerError:
            if response.status_code >= 400:
                response.raise_for_status()
            raise
        body = next((child for child in root if local_name(child.tag) == "Body"), None)
        if body is None:
            raise ConnectionManagerError(ErrorKind.PARSE_ERROR, "SOAP response has no Body")
        payload = list(body)
        if payload and local_name(payload[0].tag) == "Fault":
            raise ConnectionManagerError(ErrorKind.BACKEND_ERROR, _fault_message(payload[0]))
        if response.status_code >= 400:
            response.raise_for_status()
        return SoapResult(
            data=element_to_value(payload[0]) if payload else None,
            raw=element_to_value(body),
            headers=dict(response.headers),
            xml=text,
        )


__all__ = [
    "ServiceDescription",
    "SoapHandler",
    "SoapPort",
    "SoapResult",
    "build_envelope",
    "parse_wsdl",
]
