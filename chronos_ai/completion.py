"""
Gemini completion client.

The gateway only depends on the ``CompletionClient`` protocol: text (or a list of
parts) in, text out, optionally constrained to a JSON response schema.
"""
from typing import Any, Dict, Optional, Protocol

import google.generativeai as genai

from chronos_ai.middleware import get_logger


class CompletionClient(Protocol):
    async def generate(self, model_name: str, contents: Any,
                       schema: Optional[Dict[str, Any]] = None) -> str:
        ...


class GeminiCompletionClient:
    """Calls Gemini through google-generativeai, holding the only copy of the key."""

    def __init__(self, api_key: str, timeout_seconds: float = 30.0):
        genai.configure(api_key=api_key)
        self.timeout_seconds = timeout_seconds

    async def generate(self, model_name: str, contents: Any,
                       schema: Optional[Dict[str, Any]] = None) -> str:
        logger = get_logger()
        generation_config = None
        if schema is not None:
            generation_config = genai.GenerationConfig(
                response_mime_type="application/json",
                response_schema=schema,
            )

        model = genai.GenerativeModel(model_name, generation_config=generation_config)
        logger.debug(f"Sending request to {model_name} (schema constrained: {schema is not None})")
        response = await model.generate_content_async(
            contents,
            request_options={"timeout": self.timeout_seconds},
        )
        return response.text
