"""
Error taxonomy shared by the gateway (server side) and the proxy client (caller side).
"""
import re
from typing import Any, Dict, Iterable, Optional

MASK = '***masked***'

# Google API keys are 39 characters starting with "AIza"
_GOOGLE_KEY_PATTERN = re.compile(r'AIza[0-9A-Za-z_\-]{35}')


def redact_secrets(text: str, secrets: Iterable[Optional[str]] = ()) -> str:
    """Remove credential values from a message before it leaves the process."""
    redacted = str(text)
    for secret in secrets:
        if secret:
            redacted = redacted.replace(secret, MASK)
    return _GOOGLE_KEY_PATTERN.sub(MASK, redacted)


# --- Server side ---

class GatewayError(Exception):
    """Base class for failures the gateway reports to its callers."""

    status_code = 500

    def __init__(self, error: str, message: Optional[str] = None):
        super().__init__(message or error)
        self.error = error
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.message:
            body["message"] = self.message
        return body


class InvalidInput(GatewayError):
    """A request failed a precondition. Never worth retrying."""

    status_code = 400


class RateLimited(GatewayError):
    status_code = 429

    def __init__(self, retry_after: int = 60):
        super().__init__("Too many requests. Please try again later.")
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "retryAfter": self.retry_after}


class UpstreamError(GatewayError):
    """The completion model failed, timed out, or produced output we could not decode."""

    status_code = 500


# --- Caller side ---

class ProxyError(Exception):
    """A proxy call failed before a usable response was received."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class DecodeError(ProxyError):
    """Non-2xx response, malformed body, or a body that does not match the result type."""
