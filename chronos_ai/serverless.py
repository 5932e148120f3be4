"""
Serverless deployment of the gateway: one function endpoint taking ``{action, payload}``.

``handler(event, context)`` accepts the Netlify/Lambda proxy event shape
(``httpMethod``, ``headers``, ``body``, ``isBase64Encoded``) and returns
``{statusCode, headers, body}``. The same CORS headers are used by the FastAPI
route that mirrors this endpoint.
"""
import asyncio
import base64
import binascii
import json
from typing import Any, Dict, Optional

from chronos_ai.config import load_and_validate_config
from chronos_ai.errors import GatewayError, InvalidInput
from chronos_ai.gateway import AIGateway
from chronos_ai.middleware import get_logger
from chronos_ai.schemas import FUNCTION_CORS_HEADERS, ActionEnvelope, parse_request

CORS_HEADERS = FUNCTION_CORS_HEADERS

# built once per warm container
_gateway = None
# the Gemini async client binds to the loop it first runs on, so the loop outlives each call
_loop: Optional[asyncio.AbstractEventLoop] = None


def get_gateway():
    global _gateway
    if _gateway is None:
        _gateway = AIGateway.from_config(load_and_validate_config())
    return _gateway


def set_gateway(gateway):
    """Install a prebuilt gateway (used by tests and custom wiring)."""
    global _gateway
    _gateway = gateway


def _response(status_code: int, body: Any = None) -> Dict[str, Any]:
    headers = dict(CORS_HEADERS)
    headers["Content-Type"] = "application/json"
    return {
        "statusCode": status_code,
        "headers": headers,
        "body": "" if body is None else json.dumps(body),
    }


def _header(headers: Optional[Dict[str, str]], name: str) -> Optional[str]:
    for key, value in (headers or {}).items():
        if key.lower() == name.lower():
            return value
    return None


def event_identity(event: Dict[str, Any]) -> str:
    headers = event.get("headers") or {}
    for name in ("x-nf-client-connection-ip", "client-ip", "x-forwarded-for"):
        value = _header(headers, name)
        if value:
            return value.split(",")[0].strip()
    source = ((event.get("requestContext") or {}).get("identity") or {}).get("sourceIp")
    return source or "unknown"


def _decode_body(event: Dict[str, Any]) -> Any:
    raw = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            raw = base64.b64decode(raw).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            raise InvalidInput("Request body must be valid JSON")
    if not raw:
        raise InvalidInput("Action and payload are required")
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        raise InvalidInput("Request body must be valid JSON")


async def handle_event(event: Dict[str, Any], gateway=None) -> Dict[str, Any]:
    method = (event.get("httpMethod") or "").upper()
    if method == "OPTIONS":
        return _response(200)
    if method != "POST":
        return _response(405, {"error": "Method not allowed"})

    correlation_id = _header(event.get("headers"), "X-Correlation-ID")
    log = get_logger(correlation_id)
    try:
        envelope = parse_request(ActionEnvelope, _decode_body(event))
        gateway = gateway or get_gateway()
        body = await gateway.dispatch(envelope.action, envelope.payload, event_identity(event), correlation_id)
        return _response(200, body)
    except GatewayError as e:
        log.warning(f"AI function request failed with {e.status_code}: {e.error}")
        return _response(e.status_code, e.to_dict())
    except Exception as e:
        log.error(f"AI function error: {type(e).__name__}", exc_info=True)
        return _response(500, {"error": "AI processing failed"})


def get_loop() -> asyncio.AbstractEventLoop:
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop


def handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    """Function-platform entry point; every warm invocation runs on the same event loop."""
    return get_loop().run_until_complete(handle_event(event))
