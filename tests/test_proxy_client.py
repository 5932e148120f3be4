import asyncio
import json

import httpx
import pytest
import respx
from httpx import Response

from chronos_ai.errors import DecodeError, InvalidInput, ProxyError
from chronos_ai.proxy_client import (
    AIProxyClient,
    ServerlessTransport,
    ServerTransport,
    match_client,
    resolve_transport,
)
from chronos_ai.schemas import Client, WorkRecord

BASE = "http://chronos.test"
SERVERLESS_BASE = "https://chronos.netlify.app"


def run(coro):
    return asyncio.run(coro)


async def call(transport, method, *args):
    async with AIProxyClient(transport) as proxy:
        return await getattr(proxy, method)(*args)


# --- transport resolution ---

@pytest.mark.parametrize("base_url, deployment, expected", [
    ("http://localhost:3001", None, ServerTransport),
    ("https://chronos.netlify.app", None, ServerlessTransport),
    ("https://my-site.netlify.com", "auto", ServerlessTransport),
    ("https://chronos.example.app", None, ServerlessTransport),
    ("https://chronos.netlify.app", "server", ServerTransport),
    ("http://localhost:3001", "serverless", ServerlessTransport),
])
def test_resolve_transport(base_url, deployment, expected):
    assert type(resolve_transport(base_url, deployment)) is expected


def test_resolve_transport_rejects_unknown_mode():
    with pytest.raises(ValueError):
        resolve_transport(BASE, "lambda")


def test_from_env(monkeypatch):
    monkeypatch.setenv("CHRONOS_API_BASE_URL", SERVERLESS_BASE)
    monkeypatch.delenv("CHRONOS_DEPLOYMENT", raising=False)
    proxy = AIProxyClient.from_env()
    try:
        assert isinstance(proxy.transport, ServerlessTransport)
    finally:
        run(proxy.aclose())


# --- request shapes ---

@respx.mock
def test_server_transport_posts_to_action_path():
    route = respx.post(f"{BASE}/api/ai/smart-command").mock(
        return_value=Response(200, json={"type": "work", "durationMinutes": 120, "message": "Logged"})
    )
    result = run(call(ServerTransport(BASE), "parse_smart_command", "Log 2 hours", [Client(name="Acme")]))

    assert result.type == "work"
    assert result.duration_minutes == 120
    assert json.loads(route.calls.last.request.content) == {"command": "Log 2 hours", "clients": [{"name": "Acme"}]}


@respx.mock
def test_serverless_transport_wraps_action():
    route = respx.post(f"{SERVERLESS_BASE}/.netlify/functions/ai").mock(
        return_value=Response(200, json={"forecast": "Good month."})
    )
    forecast = run(call(ServerlessTransport(SERVERLESS_BASE), "get_strategic_forecast", [], [], {"name": "Acme"}))

    assert forecast == "Good month."
    body = json.loads(route.calls.last.request.content)
    assert body["action"] == "forecast"
    assert body["payload"]["client"] == {"name": "Acme"}


@respx.mock
def test_forecast_sends_only_recent_records():
    route = respx.post(f"{BASE}/api/ai/forecast").mock(return_value=Response(200, json={"forecast": "ok"}))
    records = [WorkRecord(id=f"r{i}") for i in range(25)]
    run(call(ServerTransport(BASE), "get_strategic_forecast", records, None, Client(name="Acme")))

    sent_ids = [record["id"] for record in json.loads(route.calls.last.request.content)["records"]]
    assert sent_ids == [f"r{i}" for i in range(5, 25)]


def test_forecast_requires_client():
    with pytest.raises(InvalidInput):
        run(call(ServerTransport(BASE), "get_strategic_forecast", [], [], None))


def test_blank_command_fails_without_network():
    with respx.mock(assert_all_called=False) as mock:
        with pytest.raises(InvalidInput):
            run(call(ServerTransport(BASE), "parse_smart_command", "  "))
        assert not mock.calls


# --- failures ---

@pytest.mark.parametrize("status, body, message", [
    (400, {"error": "Command is required"}, "Command is required"),
    (500, {"error": "Failed to process command", "message": "timeout"}, "timeout"),
    (502, None, "API error: 502"),
])
@respx.mock
def test_non_2xx_raises_decode_error(status, body, message):
    response = Response(status, json=body) if body is not None else Response(status, text="Bad Gateway")
    respx.post(f"{BASE}/api/ai/smart-command").mock(return_value=response)

    with pytest.raises(DecodeError) as excinfo:
        run(call(ServerTransport(BASE), "parse_smart_command", "log 1h"))
    assert excinfo.value.message == message
    assert excinfo.value.status_code == status


@respx.mock
def test_network_error_is_not_retried():
    route = respx.post(f"{BASE}/api/ai/forecast").mock(side_effect=httpx.ConnectError("refused"))
    with pytest.raises(ProxyError):
        run(call(ServerTransport(BASE), "get_strategic_forecast", [], [], {"name": "Acme"}))
    assert route.call_count == 1


@respx.mock
def test_client_health_clamps_scores():
    respx.post(f"{BASE}/api/ai/client-health").mock(return_value=Response(200, json=[
        {"clientId": "c1", "name": "Acme", "profitability": 130, "stability": -5, "growth": 50,
         "recommendation": "Trim scope"},
    ]))
    results = run(call(ServerTransport(BASE), "analyze_client_health", [], [], [Client(id="c1", name="Acme")]))

    assert results[0].profitability == 100
    assert results[0].stability == 0
    assert results[0].growth == 50


@respx.mock
def test_client_health_rejects_string_scores():
    respx.post(f"{BASE}/api/ai/client-health").mock(return_value=Response(200, json=[
        {"clientId": "c1", "name": "Acme", "profitability": "80", "stability": 70, "growth": 50},
    ]))
    with pytest.raises(DecodeError):
        run(call(ServerTransport(BASE), "analyze_client_health", [], [], [Client(id="c1", name="Acme")]))


def test_client_health_requires_clients():
    with pytest.raises(InvalidInput):
        run(call(ServerTransport(BASE), "analyze_client_health", [], [], []))


@respx.mock
def test_parse_receipt_returns_none_on_failure():
    respx.post(f"{BASE}/api/ai/parse-receipt").mock(
        return_value=Response(500, json={"error": "Failed to parse receipt"})
    )
    assert run(call(ServerTransport(BASE), "parse_receipt", "garbage")) is None


def test_parse_receipt_skips_empty_image():
    with respx.mock(assert_all_called=False) as mock:
        assert run(call(ServerTransport(BASE), "parse_receipt", "")) is None
        assert not mock.calls


# --- liveness ---

@respx.mock
def test_server_health_check():
    respx.get(f"{BASE}/api/health").mock(return_value=Response(200, json={"status": "ok"}))
    assert run(call(ServerTransport(BASE), "check_ai_health")) is True


@respx.mock
def test_serverless_health_check_uses_preflight():
    route = respx.options(f"{SERVERLESS_BASE}/.netlify/functions/ai").mock(return_value=Response(200))
    assert run(call(ServerlessTransport(SERVERLESS_BASE), "check_ai_health")) is True
    assert route.called


@respx.mock
def test_health_check_unreachable():
    respx.get(f"{BASE}/api/health").mock(side_effect=httpx.ConnectError("refused"))
    assert run(call(ServerTransport(BASE), "check_ai_health")) is False


# --- against the real app ---

def proxy_for(app, transport_cls):
    http_client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
    return AIProxyClient(transport_cls("http://testserver"), http_client=http_client)


@pytest.mark.parametrize("transport_cls", [ServerTransport, ServerlessTransport])
def test_malformed_receipt_round_trip(app, completion, transport_cls):
    async def scenario():
        proxy = proxy_for(app, transport_cls)
        try:
            return await proxy.parse_receipt("definitely not base64 !!")
        finally:
            await proxy.client.aclose()

    assert run(scenario()) is None
    assert completion.calls == []


def test_client_health_round_trip(app, completion):
    completion.reply_json([{"clientId": "c1", "name": "Acme", "profitability": 88, "stability": 72.5,
                            "growth": 61, "recommendation": "Upsell retainer"}])

    async def scenario():
        proxy = proxy_for(app, ServerTransport)
        try:
            return await proxy.analyze_client_health([], [], [Client(id="c1", name="Acme")])
        finally:
            await proxy.client.aclose()

    results = run(scenario())
    assert [r.client_id for r in results] == ["c1"]
    for item in results:
        for score in (item.profitability, item.stability, item.growth):
            assert isinstance(score, (int, float)) and not isinstance(score, bool)


def test_health_round_trip(app):
    async def scenario():
        proxy = proxy_for(app, ServerTransport)
        try:
            return await proxy.check_ai_health()
        finally:
            await proxy.client.aclose()

    assert run(scenario()) is True


# --- client matching ---

CLIENTS = [Client(id="c1", name="Acme Corporation"), Client(id="c2", name="Globex"), Client(id="c3", name="Initech")]


@pytest.mark.parametrize("name, expected", [
    ("globex", "c2"),
    ("Acme Corp", "c1"),
    ("Initec", "c3"),
    ("Umbrella", None),
    (None, None),
])
def test_match_client(name, expected):
    match = match_client(name, CLIENTS)
    assert (match.id if match else None) == expected
