# gateway.py
"""
AI gateway: validates typed action requests, gates them through the rate limiter,
builds the prompt/schema pair, calls the completion model and decodes its output.

Every failure leaves this module as one of InvalidInput, RateLimited or
UpstreamError, with credential values stripped from the message.
"""
import asyncio
import base64
import binascii
import json
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from chronos_ai.completion import CompletionClient, GeminiCompletionClient
from chronos_ai.config import ServiceConfig
from chronos_ai.errors import InvalidInput, RateLimited, UpstreamError, redact_secrets
from chronos_ai.middleware import get_logger
from chronos_ai.prompts import (
    RECEIPT_INSTRUCTION,
    build_client_health_prompt,
    build_forecast_prompt,
    build_smart_command_prompt,
)
from chronos_ai.rate_limiter import SlidingWindowRateLimiter
from chronos_ai.schemas import (
    ACTION_REQUESTS,
    ACTIONS,
    CLIENT_HEALTH_SCHEMA,
    RECEIPT_SCHEMA,
    SMART_COMMAND_SCHEMA,
    ClientHealth,
    ClientHealthRequest,
    ForecastRequest,
    ForecastResult,
    ParseReceiptRequest,
    ReceiptParseResult,
    SmartCommandRequest,
    SmartCommandResult,
    parse_request,
)

DEFAULT_IMAGE_MIME = "image/jpeg"

_DATA_URL_PREFIX = re.compile(r'^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,]*)?,', re.IGNORECASE)
_CODE_FENCE = re.compile(r'^```(?:json)?\s*|\s*```$')

_client_health_list = TypeAdapter(List[ClientHealth])


def split_data_url(image: str) -> Tuple[str, str]:
    """Return (mime type, base64 payload), dropping any ``data:...,`` prefix."""
    match = _DATA_URL_PREFIX.match(image)
    if match:
        return match.group('mime') or DEFAULT_IMAGE_MIME, image[match.end():]
    return DEFAULT_IMAGE_MIME, image


def _strip_code_fences(text: str) -> str:
    return _CODE_FENCE.sub('', text.strip())


class AIGateway:
    """The only component that talks to the completion model."""

    def __init__(self, completion_client: CompletionClient, rate_limiter: SlidingWindowRateLimiter,
                 model_name: str = "gemini-2.0-flash", timeout_seconds: float = 30.0,
                 max_image_chars: int = 10 * 1024 * 1024, secrets: Iterable[Optional[str]] = ()):
        self.completion_client = completion_client
        self.rate_limiter = rate_limiter
        self.model_name = model_name
        self.timeout_seconds = timeout_seconds
        self.max_image_chars = max_image_chars
        self._secrets = tuple(s for s in secrets if s)

    @classmethod
    def from_config(cls, config: ServiceConfig) -> 'AIGateway':
        """Wire the real Gemini client and rate limiter from configuration."""
        rate_limiter = SlidingWindowRateLimiter(
            max_requests=config.rate_limit_max_requests,
            window_seconds=config.rate_limit_window_seconds,
            max_identities=config.rate_limit_max_identities,
        )
        return cls(
            completion_client=GeminiCompletionClient(config.gemini_api_key, config.upstream_timeout_seconds),
            rate_limiter=rate_limiter,
            model_name=config.gemini_model,
            timeout_seconds=config.upstream_timeout_seconds,
            max_image_chars=config.max_image_chars,
            secrets=[config.gemini_api_key],
        )

    # --- Dispatch ---

    async def dispatch(self, action: str, payload: Any, identity: str,
                       correlation_id: Optional[str] = None) -> Any:
        """Run ``action`` with an untrusted JSON payload and return the response body."""
        request_model = ACTION_REQUESTS.get(action)
        if request_model is None:
            raise InvalidInput("Unknown action", f"Supported actions: {', '.join(ACTIONS)}")

        request = parse_request(request_model, payload)

        if action == "smart-command":
            result = await self.smart_command(request, identity, correlation_id)
            return result.to_json_dict()
        if action == "forecast":
            result = await self.forecast(request, identity, correlation_id)
            return result.to_json_dict()
        if action == "client-health":
            results = await self.client_health(request, identity, correlation_id)
            return [item.to_json_dict() for item in results]
        result = await self.parse_receipt(request, identity, correlation_id)
        return result.to_json_dict()

    # --- Actions ---

    async def smart_command(self, request: SmartCommandRequest, identity: str,
                            correlation_id: Optional[str] = None) -> SmartCommandResult:
        logger = get_logger(correlation_id)
        failure = "Failed to process command"
        self._gate(identity, logger)

        prompt = build_smart_command_prompt(request.command, request.clients)
        text = await self._complete(prompt, SMART_COMMAND_SCHEMA, failure, logger)
        data = self._parse_json(text, failure, logger)
        try:
            result = SmartCommandResult.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Smart command output failed validation: {e.error_count()} error(s)")
            raise UpstreamError(failure, "The AI model returned an unexpected result") from None

        logger.info(f"Smart command parsed as '{result.type}'")
        return result

    async def forecast(self, request: ForecastRequest, identity: str,
                       correlation_id: Optional[str] = None) -> ForecastResult:
        logger = get_logger(correlation_id)
        failure = "Failed to generate forecast"
        self._gate(identity, logger)

        prompt = build_forecast_prompt(request.records, request.receipts, request.client)
        text = await self._complete(prompt, None, failure, logger)
        if not text or not text.strip():
            logger.error("Forecast came back empty")
            raise UpstreamError(failure, "The AI model returned an empty forecast")
        return ForecastResult(forecast=text)

    async def client_health(self, request: ClientHealthRequest, identity: str,
                            correlation_id: Optional[str] = None) -> List[ClientHealth]:
        logger = get_logger(correlation_id)
        failure = "Failed to analyze client health"
        self._gate(identity, logger)

        prompt = build_client_health_prompt(request.records, request.receipts, request.clients)
        text = await self._complete(prompt, CLIENT_HEALTH_SCHEMA, failure, logger)
        data = self._parse_json(text, failure, logger)
        try:
            results = _client_health_list.validate_python(data)
        except ValidationError as e:
            logger.warning(f"Client health output failed validation: {e.error_count()} error(s)")
            raise UpstreamError(failure, "The AI model returned an unexpected result") from None

        out_of_range = [item.client_id for item in results if not item.in_range]
        if out_of_range:
            # passed through untouched; callers clamp
            logger.warning(f"Health scores outside 0-100 for clients: {out_of_range}")
        return results

    async def parse_receipt(self, request: ParseReceiptRequest, identity: str,
                            correlation_id: Optional[str] = None) -> ReceiptParseResult:
        logger = get_logger(correlation_id)
        failure = "Failed to parse receipt"

        if len(request.image) > self.max_image_chars:
            raise InvalidInput("Image payload too large",
                               f"Images are limited to {self.max_image_chars} characters of base64")
        mime_type, payload = split_data_url(request.image)
        if not payload:
            raise InvalidInput(ParseReceiptRequest.invalid_message)

        self._gate(identity, logger)

        try:
            image_bytes = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Receipt image is not valid base64")
            raise UpstreamError(failure, "Image data is not valid base64") from None

        contents = [{"mime_type": mime_type, "data": image_bytes}, RECEIPT_INSTRUCTION]
        text = await self._complete(contents, RECEIPT_SCHEMA, failure, logger)
        data = self._parse_json(text, failure, logger)
        try:
            result = ReceiptParseResult.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Receipt output failed validation: {e.error_count()} error(s)")
            raise UpstreamError(failure, "The AI model returned an unexpected result") from None

        logger.info("Receipt parsed")
        return result

    # --- Helpers ---

    def _gate(self, identity: str, logger):
        if not self.rate_limiter.allow(identity):
            logger.warning("Request rejected by rate limiter")
            raise RateLimited(self.rate_limiter.retry_after)

    async def _complete(self, contents: Any, schema: Optional[Dict[str, Any]], failure: str, logger) -> str:
        try:
            return await asyncio.wait_for(
                self.completion_client.generate(self.model_name, contents, schema),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(f"{failure}: upstream call exceeded {self.timeout_seconds}s")
            raise UpstreamError(failure, "The AI model did not respond in time") from None
        except Exception as e:
            message = redact_secrets(f"{type(e).__name__}: {e}", self._secrets)
            logger.error(f"{failure}: {message}")
            raise UpstreamError(failure, message) from None

    def _parse_json(self, text: str, failure: str, logger) -> Any:
        try:
            return json.loads(_strip_code_fences(text or ""))
        except (json.JSONDecodeError, TypeError):
            logger.error(f"{failure}: model output is not valid JSON")
            raise UpstreamError(failure, "The AI model returned malformed JSON") from None
