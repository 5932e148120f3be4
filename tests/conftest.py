import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from chronos_ai.config import ServiceConfig
from chronos_ai.gateway import AIGateway
from chronos_ai.main import create_app
from chronos_ai.rate_limiter import SlidingWindowRateLimiter

TEST_API_KEY = "test-gemini-key-0123456789"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeCompletionClient:
    """Stands in for Gemini: records every call and answers with ``reply``."""

    def __init__(self, reply: Any = "{}"):
        self.reply = reply
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.calls: List[Dict[str, Any]] = []

    def reply_json(self, data: Any):
        self.reply = json.dumps(data)

    async def generate(self, model_name, contents, schema=None) -> str:
        self.calls.append({"model": model_name, "contents": contents, "schema": schema})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rate_limiter(clock):
    return SlidingWindowRateLimiter(max_requests=30, window_seconds=60, clock=clock)


@pytest.fixture
def completion():
    return FakeCompletionClient()


@pytest.fixture
def gateway(completion, rate_limiter):
    return AIGateway(completion, rate_limiter, model_name="gemini-test", timeout_seconds=5.0,
                     max_image_chars=1024, secrets=[TEST_API_KEY])


@pytest.fixture
def service_config():
    return ServiceConfig(gemini_api_key=TEST_API_KEY)


@pytest.fixture
def app(service_config, gateway):
    return create_app(config=service_config, gateway=gateway)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
