"""Tests for the SOAP handler."""

from __future__ import annotations

import xml.etree.ElementTree as ET

import httpx
import pytest

from connhub.errors import ConnectionManagerError, ErrorKind
from connhub.handlers.soap import (
    SOAP11_ENV_NS,
    SOAP12_ENV_NS,
    WSSE_NS,
    SoapHandler,
    SoapResult,
    build_envelope,
    parse_wsdl,
)

WSDL_URL = "https://soap.example.com/weather?wsdl"
TARGET_NS = "http://example.com/weather"

WEATHER_WSDL = f"""<?xml version="1.0"?>
<definitions xmlns="http://schemas.xmlsoap.org/wsdl/"
             xmlns:soap="http://schemas.xmlsoap.org/wsdl/soap/"
             xmlns:tns="{TARGET_NS}"
             targetNamespace="{TARGET_NS}">
  <portType name="WeatherPortType">
    <operation name="GetForecast"/>
    <operation name="GetStations"/>
  </portType>
  <binding name="WeatherBinding" type="tns:WeatherPortType">
    <soap:binding transport="http://schemas.xmlsoap.org/soap/http"/>
    <operation name="GetForecast">
      <soap:operation soapAction="{TARGET_NS}/GetForecast"/>
    </operation>
    <operation name="GetStations">
      <soap:operation soapAction="{TARGET_NS}/GetStations"/>
    </operation>
  </binding>
  <service name="WeatherService">
    <port name="WeatherPort" binding="tns:WeatherBinding">
      <soap:address location="https://soap.example.com/weather"/>
    </port>
  </service>
</definitions>
"""

TWO_SERVICE_WSDL = WEATHER_WSDL.replace(
    "</definitions>",
    """  <service name="BackupService">
    <port name="BackupPort" binding="tns:WeatherBinding">
      <soap:address location="https://backup.example.com/weather"/>
    </port>
  </service>
</definitions>""",
)

FORECAST_RESPONSE = f"""<?xml version="1.0"?>
<soap:Envelope xmlns:soap="{SOAP11_ENV_NS}">
  <soap:Body>
    <GetForecastResponse xmlns="{TARGET_NS}">
      <city>Oslo</city>
      <day><name>mon</name><high>4</high></day>
      <day><name>tue</name><high>6</high></day>
    </GetForecastResponse>
  </soap:Body>
</soap:Envelope>
"""

FAULT_RESPONSE = f"""<?xml version="1.0"?>
<soap:Envelope xmlns:soap="{SOAP11_ENV_NS}">
  <soap:Body>
    <soap:Fault>
      <faultcode>soap:Client</faultcode>
      <faultstring>Unknown city</faultstring>
    </soap:Fault>
  </soap:Body>
</soap:Envelope>
"""


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _SoapServer:
    def __init__(self, wsdl: str = WEATHER_WSDL, reply: str = FORECAST_RESPONSE, status: int = 200) -> None:
        self.wsdl = wsdl
        self.reply = reply
        self.status = status
        self.calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, text=self.wsdl)
        self.calls.append(request)
        return httpx.Response(self.status, text=self.reply, headers={"Content-Type": "text/xml"})


async def _connected(server: _SoapServer, **config: object) -> SoapHandler:
    handler = SoapHandler({"wsdlUrl": WSDL_URL, **config}, transport=httpx.MockTransport(server))
    await handler.connect()
    return handler


def test_parse_wsdl_builds_service_index() -> None:
    description = parse_wsdl(WEATHER_WSDL)

    assert description.target_namespace == TARGET_NS
    assert description.index() == {"WeatherService": {"WeatherPort": ["GetForecast", "GetStations"]}}
    port = description.services["WeatherService"]["WeatherPort"]
    assert port.address == "https://soap.example.com/weather"
    assert port.actions["GetForecast"] == f"{TARGET_NS}/GetForecast"


def test_parse_wsdl_rejects_other_documents() -> None:
    with pytest.raises(ConnectionManagerError) as excinfo:
        parse_wsdl("<html><body>login</body></html>")

    assert excinfo.value.kind is ErrorKind.PARSE_ERROR


def test_build_envelope_nests_arguments() -> None:
    envelope = ET.fromstring(build_envelope("GetForecast", {"city": "Oslo", "days": [1, 2], "metric": True}, namespace=TARGET_NS))

    body = envelope.find(f"{{{SOAP11_ENV_NS}}}Body")
    assert body is not None
    call = body.find(f"{{{TARGET_NS}}}GetForecast")
    assert call is not None
    assert call.findtext("city") == "Oslo"
    assert [day.text for day in call.findall("days")] == ["1", "2"]
    assert call.findtext("metric") == "true"


@pytest.mark.anyio
async def test_call_posts_soap11_envelope_and_parses_response() -> None:
    server = _SoapServer()
    handler = await _connected(server)

    result = await handler.query({"method": "GetForecast", "args": {"city": "Oslo"}})

    assert isinstance(result, SoapResult)
    assert result.data["city"] == "Oslo"
    assert [day["high"] for day in result.data["day"]] == ["4", "6"]
    assert "GetForecastResponse" in result.raw
    assert result.xml == FORECAST_RESPONSE
    request = server.calls[0]
    assert str(request.url) == "https://soap.example.com/weather"
    assert request.headers["Content-Type"].startswith("text/xml")
    assert request.headers["SOAPAction"] == f'"{TARGET_NS}/GetForecast"'


@pytest.mark.anyio
async def test_soap12_uses_action_parameter_and_envelope_namespace() -> None:
    server = _SoapServer()
    handler = await _connected(server, soap12=True)

    await handler.query({"method": "GetStations"})

    request = server.calls[0]
    assert request.headers["Content-Type"].startswith("application/soap+xml")
    assert f'action="{TARGET_NS}/GetStations"' in request.headers["Content-Type"]
    assert "SOAPAction" not in request.headers
    assert ET.fromstring(request.content).tag == f"{{{SOAP12_ENV_NS}}}Envelope"


@pytest.mark.anyio
async def test_endpoint_override() -> None:
    server = _SoapServer()
    handler = await _connected(server, endpoint="https://internal.example.com/weather")

    await handler.query({"method": "GetForecast", "args": {"city": "Oslo"}})

    assert server.calls[0].url.host == "internal.example.com"


@pytest.mark.anyio
async def test_fault_raises_backend_error() -> None:
    server = _SoapServer(reply=FAULT_RESPONSE, status=500)
    handler = await _connected(server)

    with pytest.raises(ConnectionManagerError) as excinfo:
        await handler.query({"method": "GetForecast", "args": {"city": "Atlantis"}})

    assert excinfo.value.kind is ErrorKind.BACKEND_ERROR
    assert "Unknown city" in excinfo.value.message


@pytest.mark.anyio
async def test_unknown_method_service_and_port() -> None:
    handler = await _connected(_SoapServer())

    for request in (
        {"method": "DeleteCity"},
        {"method": "GetForecast", "service": "Nope"},
        {"method": "GetForecast", "port": "Nope"},
    ):
        with pytest.raises(ConnectionManagerError) as excinfo:
            await handler.query(request)
        assert excinfo.value.kind is ErrorKind.UNKNOWN_OPERATION


@pytest.mark.anyio
async def test_multiple_services_require_selection() -> None:
    server = _SoapServer(wsdl=TWO_SERVICE_WSDL)
    handler = await _connected(server)

    with pytest.raises(ConnectionManagerError) as excinfo:
        await handler.query({"method": "GetForecast"})
    await handler.query({"method": "GetForecast", "service": "BackupService"})

    assert excinfo.value.kind is ErrorKind.AMBIGUOUS_ENDPOINT
    assert server.calls[-1].url.host == "backup.example.com"
    assert set(handler.describe()) == {"WeatherService", "BackupService"}


@pytest.mark.anyio
async def test_wss_username_token_header() -> None:
    server = _SoapServer()
    handler = await _connected(server, auth={"type": "wss", "username": "svc", "password": "pw"})

    await handler.query({"method": "GetForecast"})

    envelope = ET.fromstring(server.calls[0].content)
    token = envelope.find(f"{{{SOAP11_ENV_NS}}}Header/{{{WSSE_NS}}}Security/{{{WSSE_NS}}}UsernameToken")
    assert token is not None
    assert token.findtext(f"{{{WSSE_NS}}}Username") == "svc"
    assert "Authorization" not in server.calls[0].headers


@pytest.mark.anyio
async def test_basic_auth_applies_to_soap_calls() -> None:
    server = _SoapServer()
    handler = await _connected(server, auth={"type": "basic", "username": "svc", "password": "pw"})

    await handler.query({"method": "GetForecast"})

    assert server.calls[0].headers["Authorization"].startswith("Basic ")


@pytest.mark.anyio
async def test_cache_key_skips_second_call() -> None:
    server = _SoapServer()
    handler = await _connected(server)

    first = await handler.query({"method": "GetForecast", "cacheKey": "oslo"})
    second = await handler.query({"method": "GetForecast", "cacheKey": "oslo"})

    assert first is second
    assert len(server.calls) == 1


@pytest.mark.anyio
async def test_malformed_wsdl_is_a_parse_error() -> None:
    server = _SoapServer(wsdl="<definitions")

    with pytest.raises(ConnectionManagerError) as excinfo:
        await _connected(server)

    assert excinfo.value.kind is ErrorKind.PARSE_ERROR


@pytest.mark.anyio
async def test_unreachable_wsdl_fails_connect() -> None:
    def _down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    handler = SoapHandler({"wsdlUrl": WSDL_URL}, transport=httpx.MockTransport(_down))

    with pytest.raises(ConnectionManagerError) as excinfo:
        await handler.connect()

    assert excinfo.value.kind is ErrorKind.CONNECT_FAILED


@pytest.mark.anyio
async def test_info_includes_service_index() -> None:
    handler = await _connected(_SoapServer())

    info = handler.info()

    assert info["services"] == {"WeatherService": {"WeatherPort": ["GetForecast", "GetStations"]}}
    assert (await handler.test()).success
