# main.py
"""
Chronos API server: the conventional HTTP deployment of the AI gateway.

Also mounts the serverless-style single endpoint so both call shapes can be
served by one process.
"""
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from chronos_ai import __version__
from chronos_ai.config import DEFAULT_CORS_ORIGINS, ServiceConfig, load_and_validate_config
from chronos_ai.errors import GatewayError, InvalidInput
from chronos_ai.gateway import AIGateway
from chronos_ai.middleware import (
    ScopedCORSMiddleware,
    add_process_time_header,
    central_exception_handler,
    configure_logging,
    correlation_id_middleware,
    get_logger,
)
from chronos_ai.rate_limiter import SlidingWindowRateLimiter
from chronos_ai.schemas import FUNCTION_PATH, HEALTH_PATH, ActionEnvelope, HealthResponse, parse_request
from chronos_ai.serverless import CORS_HEADERS

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "Chronos API"


async def periodic_sweep(rate_limiter: SlidingWindowRateLimiter):
    """Background task dropping idle identities from the rate limiter"""
    while True:
        try:
            await asyncio.sleep(rate_limiter.window_seconds)
            removed = rate_limiter.sweep()
            if removed > 0:
                logger.info(f"Rate limiter sweep removed {removed} idle identities")
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Error during rate limiter sweep: {str(e)}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown"""
    logger.info("Starting Chronos API...")

    if app.state.gateway is None:
        # refuses to start without a usable credential
        config = app.state.config or load_and_validate_config()
        app.state.config = config
        app.state.gateway = AIGateway.from_config(config)
        logger.info(f"Configuration: {config.to_dict(mask_secrets=True)}")

    sweep_task = asyncio.create_task(periodic_sweep(app.state.gateway.rate_limiter))

    yield

    logger.info("Shutting down Chronos API...")
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass
    logger.info("Chronos API shutdown complete")


def client_identity(request: Request) -> str:
    config: Optional[ServiceConfig] = request.app.state.config
    if config is not None and config.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def read_json(request: Request) -> Any:
    body = await request.body()
    if not body:
        return {}
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidInput("Request body must be valid JSON")


def create_app(config: Optional[ServiceConfig] = None, gateway: Optional[AIGateway] = None) -> FastAPI:
    """
    Build the FastAPI application.

    With no ``gateway`` the lifespan loads configuration from the environment and
    builds the Gemini-backed gateway, failing startup when the key is missing.
    """
    app = FastAPI(
        title="Chronos API",
        version=__version__,
        description="Secure proxy for Gemini AI calls made by the Chronos time tracker",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.gateway = gateway

    app.add_middleware(
        ScopedCORSMiddleware,
        exempt_paths=[FUNCTION_PATH],
        allow_origins=config.cors_origins if config else DEFAULT_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    # last registered runs first: correlation id is set before the exception handler runs
    app.middleware("http")(central_exception_handler)
    app.middleware("http")(correlation_id_middleware)
    app.middleware("http")(add_process_time_header)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        headers = {}
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
        if request.url.path == FUNCTION_PATH:
            headers.update(CORS_HEADERS)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    async def run_action(action: str, request: Request) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", None)
        payload = await read_json(request)
        body = await request.app.state.gateway.dispatch(
            action, payload, client_identity(request), correlation_id
        )
        return JSONResponse(content=body)

    # --- API Endpoints ---

    @app.get(HEALTH_PATH, response_model=HealthResponse)
    async def health_check(request: Request):
        current: Optional[ServiceConfig] = request.app.state.config
        return HealthResponse(
            status="ok",
            service=current.service_name if current else DEFAULT_SERVICE_NAME,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.post("/api/ai/smart-command")
    async def smart_command(request: Request):
        return await run_action("smart-command", request)

    @app.post("/api/ai/forecast")
    async def forecast(request: Request):
        return await run_action("forecast", request)

    @app.post("/api/ai/client-health")
    async def client_health(request: Request):
        return await run_action("client-health", request)

    @app.post("/api/ai/parse-receipt")
    async def parse_receipt(request: Request):
        return await run_action("parse-receipt", request)

    # --- Serverless-style single endpoint ---

    @app.options(FUNCTION_PATH)
    async def function_preflight():
        return Response(status_code=200, headers=CORS_HEADERS)

    @app.post(FUNCTION_PATH)
    async def function_dispatch(request: Request):
        correlation_id = getattr(request.state, "correlation_id", None)
        envelope = parse_request(ActionEnvelope, await read_json(request))
        body = await request.app.state.gateway.dispatch(
            envelope.action, envelope.payload, client_identity(request), correlation_id
        )
        return JSONResponse(content=body, headers=CORS_HEADERS)

    @app.api_route(FUNCTION_PATH, methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
    async def function_method_not_allowed():
        return JSONResponse(status_code=405, content={"error": "Method not allowed"}, headers=CORS_HEADERS)

    return app


def run():
    """Console entry point: validate configuration, then serve with uvicorn."""
    configure_logging()
    try:
        config = load_and_validate_config()
    except (ValueError, RuntimeError) as e:
        get_logger().critical(f"FATAL: {e}")
        sys.exit(1)

    configure_logging(config.log_level)
    app = create_app(config=config)
    logger.info(f"Chronos API listening on {config.host}:{config.port}")
    uvicorn.run(app, host=config.host, port=config.port, log_config=None)


if __name__ == "__main__":
    run()
