import time
import uuid
import logging
import sys
from typing import Optional

from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chronos_ai.schemas import FUNCTION_CORS_HEADERS, FUNCTION_PATH

SERVICE_NAME = "chronos-ai"
LOG_FORMAT = (
    '{"ts": "%(asctime)s", "level": "%(levelname)s", "service": "' + SERVICE_NAME + '", '
    '"correlation_id": "%(correlation_id)s", "message": "%(message)s"}'
)


class CorrelationIdFilter(logging.Filter):
    """Gives records logged outside a request a placeholder correlation id."""

    def filter(self, record):
        if not hasattr(record, 'correlation_id'):
            record.correlation_id = 'N/A'
        return True


def configure_logging(level: str = "INFO"):
    if logging.root.handlers:
        logging.root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))


class CorrelationIdLoggerAdapter(logging.LoggerAdapter):
    """Stamps every record with the request's correlation id."""

    def process(self, msg, kwargs):
        extra = dict(kwargs.get('extra') or {})
        extra.setdefault('correlation_id', self.extra.get('correlation_id') or 'N/A')
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(correlation_id: Optional[str] = None, name: str = "chronos_ai"):
    return CorrelationIdLoggerAdapter(logging.getLogger(name), {'correlation_id': correlation_id})


async def add_process_time_header(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.perf_counter() - started) * 1000:.1f}ms"
    return response


async def correlation_id_middleware(request: Request, call_next):
    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    request.state.correlation_id = correlation_id
    logger = get_logger(correlation_id)
    logger.info(f"{request.method} {request.url.path}")

    response = await call_next(request)

    logger.info(f"{request.method} {request.url.path} -> {response.status_code}")
    response.headers["X-Correlation-ID"] = correlation_id
    return response


async def central_exception_handler(request: Request, call_next):
    correlation_id = getattr(request.state, 'correlation_id', 'N/A')
    try:
        return await call_next(request)
    except Exception as e:
        get_logger(correlation_id).error(f"Unhandled exception: {type(e).__name__}", exc_info=True)
        # the function endpoint is exempt from CORSMiddleware
        headers = FUNCTION_CORS_HEADERS if request.url.path == FUNCTION_PATH else None
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": "Something went wrong",
                "correlation_id": correlation_id,
            },
            headers=headers,
        )


class ScopedCORSMiddleware(CORSMiddleware):
    """CORSMiddleware that leaves ``exempt_paths`` to send their own CORS headers."""

    def __init__(self, app, exempt_paths=(), **kwargs):
        super().__init__(app, **kwargs)
        self.exempt_paths = frozenset(exempt_paths)

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope.get("path") in self.exempt_paths:
            await self.app(scope, receive, send)
            return
        await super().__call__(scope, receive, send)
