# proxy_client.py
"""
Caller-side proxy for the Chronos AI actions.

One coroutine per action hides whether the gateway runs as a conventional server
(one path per action) or as a serverless function (one URL, action in the body).
The transport is resolved once from configuration and injected.
"""
import logging
import os
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError
from thefuzz import process

from chronos_ai.errors import DecodeError, InvalidInput, ProxyError
from chronos_ai.prompts import recent
from chronos_ai.schemas import (
    ACTION_PATH_PREFIX,
    FORECAST_RECEIPT_WINDOW,
    FORECAST_RECORD_WINDOW,
    FUNCTION_PATH,
    HEALTH_PATH,
    HEALTH_RECEIPT_WINDOW,
    HEALTH_RECORD_WINDOW,
    Client,
    ClientHealth,
    ReceiptParseResult,
    ReceiptRecord,
    SmartCommandResult,
    WorkRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3001"
DEFAULT_TIMEOUT_SECONDS = 60.0
DEPLOYMENTS = ("auto", "server", "serverless")

_client_health_list = TypeAdapter(List[ClientHealth])

ClientLike = Union[Client, Dict[str, Any]]


# --- Transports ---

class Transport:
    """Maps a logical action onto a physical request."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def request_for(self, action: str, payload: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        raise NotImplementedError

    async def check_health(self, http_client: httpx.AsyncClient) -> bool:
        raise NotImplementedError


class ServerTransport(Transport):
    """Standalone server: ``POST /api/ai/<action>`` with the payload as the body."""

    def request_for(self, action, payload):
        return f"{self.base_url}{ACTION_PATH_PREFIX}/{action}", payload

    async def check_health(self, http_client):
        response = await http_client.get(f"{self.base_url}{HEALTH_PATH}")
        if response.status_code != 200:
            return False
        body = response.json()
        return isinstance(body, dict) and body.get("status") == "ok"


class ServerlessTransport(Transport):
    """Serverless function: one URL, ``{action, payload}`` body."""

    def request_for(self, action, payload):
        return f"{self.base_url}{FUNCTION_PATH}", {"action": action, "payload": payload}

    async def check_health(self, http_client):
        # a preflight reaches the function without running a billed action
        response = await http_client.options(f"{self.base_url}{FUNCTION_PATH}")
        return response.status_code == 200


def _looks_serverless(base_url: str) -> bool:
    host = (urlparse(base_url).hostname or "").lower()
    return "netlify" in host or host.endswith(".app")


def resolve_transport(base_url: str, deployment: Optional[str] = None) -> Transport:
    """
    Pick the transport for ``base_url``.

    ``deployment`` may be "server", "serverless" or "auto" (the default), where
    hosts containing "netlify" or ending in ".app" select the serverless shape.
    """
    mode = (deployment or "auto").strip().lower()
    if mode not in DEPLOYMENTS:
        raise ValueError(f"Unknown deployment '{deployment}', expected one of: {', '.join(DEPLOYMENTS)}")
    if mode == "serverless" or (mode == "auto" and _looks_serverless(base_url)):
        return ServerlessTransport(base_url)
    return ServerTransport(base_url)


# --- Client ---

def _serialize(items: Optional[Sequence[Any]]) -> List[Any]:
    return [_serialize_one(item) for item in items or []]


def _serialize_one(item: Any) -> Any:
    if isinstance(item, BaseModel):
        return item.model_dump(by_alias=True, exclude_none=True, mode="json")
    return item


class AIProxyClient:
    """Single entry point the application uses to reach the AI actions."""

    def __init__(self, transport: Transport, http_client: Optional[httpx.AsyncClient] = None,
                 timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.transport = transport
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_env(cls) -> 'AIProxyClient':
        base_url = os.getenv("CHRONOS_API_BASE_URL", DEFAULT_BASE_URL)
        timeout = float(os.getenv("CHRONOS_PROXY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS))
        transport = resolve_transport(base_url, os.getenv("CHRONOS_DEPLOYMENT"))
        return cls(transport, timeout=timeout)

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def _call(self, action: str, payload: Dict[str, Any]) -> Any:
        url, body = self.transport.request_for(action, payload)
        try:
            response = await self.client.post(url, json=body)
        except httpx.HTTPError as e:
            logger.error(f"AI proxy request for '{action}' failed: {type(e).__name__}")
            raise ProxyError(f"Network error: {type(e).__name__}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            message = None
            if isinstance(data, dict):
                message = data.get("message") or data.get("error")
            raise DecodeError(message or f"API error: {response.status_code}", response.status_code)

        if data is None:
            raise DecodeError("Malformed response from AI service", response.status_code)
        return data

    # --- Actions ---

    async def parse_smart_command(self, command: str,
                                  clients: Optional[Sequence[ClientLike]] = None) -> SmartCommandResult:
        if not command or not command.strip():
            raise InvalidInput("Command is required")
        data = await self._call("smart-command", {"command": command, "clients": _serialize(clients)})
        try:
            return SmartCommandResult.model_validate(data)
        except ValidationError as e:
            raise DecodeError(f"Unexpected smart command result: {e.error_count()} error(s)") from e

    async def get_strategic_forecast(self, records: Optional[Sequence[Union[WorkRecord, Dict]]],
                                     receipts: Optional[Sequence[Union[ReceiptRecord, Dict]]],
                                     client: Optional[ClientLike]) -> str:
        if client is None:
            raise InvalidInput("Client data is required")
        data = await self._call("forecast", {
            "records": _serialize(recent(records, FORECAST_RECORD_WINDOW)),
            "receipts": _serialize(recent(receipts, FORECAST_RECEIPT_WINDOW)),
            "client": _serialize_one(client),
        })
        forecast = data.get("forecast") if isinstance(data, dict) else None
        if not isinstance(forecast, str):
            raise DecodeError("Unexpected forecast result")
        return forecast

    async def analyze_client_health(self, records: Optional[Sequence[Union[WorkRecord, Dict]]],
                                    receipts: Optional[Sequence[Union[ReceiptRecord, Dict]]],
                                    clients: Sequence[ClientLike]) -> List[ClientHealth]:
        if not clients:
            raise InvalidInput("Clients data is required")
        data = await self._call("client-health", {
            "records": _serialize(recent(records, HEALTH_RECORD_WINDOW)),
            "receipts": _serialize(recent(receipts, HEALTH_RECEIPT_WINDOW)),
            "clients": _serialize(clients),
        })
        try:
            results = _client_health_list.validate_python(data)
        except ValidationError as e:
            raise DecodeError(f"Unexpected client health result: {e.error_count()} error(s)") from e

        clamped = []
        for item in results:
            if not item.in_range:
                logger.warning(f"Clamping out-of-range health scores for client {item.client_id}")
                item = item.clamped()
            clamped.append(item)
        return clamped

    async def parse_receipt(self, image: str) -> Optional[ReceiptParseResult]:
        """Returns None instead of raising: a failed scan is an expected outcome."""
        if not image:
            return None
        try:
            data = await self._call("parse-receipt", {"image": image})
            return ReceiptParseResult.model_validate(data)
        except Exception as e:
            logger.error(f"Receipt parse failed: {e}")
            return None

    async def check_ai_health(self) -> bool:
        try:
            return await self.transport.check_health(self.client)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"AI service health check failed: {type(e).__name__}")
            return False


def match_client(name: Optional[str], clients: Sequence[Client], score_cutoff: int = 80) -> Optional[Client]:
    """Resolve a model-suggested client name to a known client, fuzzily."""
    if not name or not clients:
        return None
    for client in clients:
        if client.name.lower() == name.strip().lower():
            return client

    by_name = {client.name: client for client in clients}
    best_match = process.extractOne(name, by_name.keys(), score_cutoff=score_cutoff)
    if best_match is None:
        return None
    return by_name[best_match[0]]
