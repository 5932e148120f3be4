# --- Schema contracts for the four AI actions ---

import datetime
from typing import Any, ClassVar, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import (
    BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictStr,
    ValidationError, field_validator,
)
from pydantic.alias_generators import to_camel

from chronos_ai.errors import InvalidInput

ACTIONS = ("smart-command", "forecast", "client-health", "parse-receipt")

# Endpoint layout shared by the server and the proxy client
HEALTH_PATH = "/api/health"
ACTION_PATH_PREFIX = "/api/ai"
FUNCTION_PATH = "/.netlify/functions/ai"

# The function endpoint answers any origin, on success and on error
FUNCTION_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}

COMMAND_TYPES = ("work", "expense", "sync", "report", "fix")
SmartCommandType = Literal["work", "expense", "sync", "report", "fix", "unknown"]

# History windows embedded in prompts (most recent entries win)
FORECAST_RECORD_WINDOW = 20
FORECAST_RECEIPT_WINDOW = 10
HEALTH_RECORD_WINDOW = 50
HEALTH_RECEIPT_WINDOW = 50

COMMAND_MAX_CHARS = 2000

# Applied when the model leaves these out of a work or expense command
COMMAND_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "work": {"duration_minutes": 60.0, "category": "Deep Work"},
    "expense": {"vendor": "Magic Vendor", "category": "Expense"},
}

SCORE_MIN = 0.0
SCORE_MAX = 100.0

# --- LLM response schemas ---
# Passed to Gemini as response_schema; forecast deliberately has none.

SMART_COMMAND_SCHEMA = {
    "type": "object",
    "required": ["type"],
    "properties": {
        "type": {
            "type": "string",
            "enum": list(COMMAND_TYPES) + ["unknown"],
            "description": "One of: work, expense, sync, report, fix, unknown",
        },
        "clientName": {"type": "string"},
        "amount": {"type": "number"},
        "durationMinutes": {"type": "number"},
        "notes": {"type": "string"},
        "category": {"type": "string"},
        "vendor": {"type": "string"},
        "message": {"type": "string", "description": "A friendly status message about what was done"},
    },
}

CLIENT_HEALTH_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["clientId", "name", "profitability", "stability", "growth", "recommendation"],
        "properties": {
            "clientId": {"type": "string"},
            "name": {"type": "string"},
            "profitability": {"type": "number", "description": "Score from 0 to 100"},
            "stability": {"type": "number", "description": "Score from 0 to 100"},
            "growth": {"type": "number", "description": "Score from 0 to 100"},
            "recommendation": {"type": "string"},
        },
    },
}

RECEIPT_SCHEMA = {
    "type": "object",
    "required": ["amount", "vendor", "date"],
    "properties": {
        "amount": {"type": "number"},
        "vendor": {"type": "string"},
        "date": {"type": "string", "description": "YYYY-MM-DD"},
        "category": {"type": "string"},
        "isTaxDeductible": {"type": "boolean"},
    },
}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')

    def with_defaults(self, **defaults: Any):
        """Return a copy with absent optional fields filled from ``defaults``."""
        missing = {name: value for name, value in defaults.items() if getattr(self, name) is None}
        return self.model_copy(update=missing)

    def to_json_dict(self, **kwargs) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json", **kwargs)


# --- Domain inputs (owned by the UI/storage layer, read here) ---

class Client(CamelModel):
    id: Optional[StrictStr] = None
    name: StrictStr = Field(min_length=1)
    hourly_rate: Optional[StrictFloat] = None
    currency: Optional[StrictStr] = None
    color: Optional[str] = None
    sheet_url: Optional[str] = None


class WorkRecord(CamelModel):
    id: Optional[str] = None
    client_id: Optional[str] = None
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_minutes: Optional[StrictFloat] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    location: Optional[str] = None
    sync_status: Optional[str] = None


class ReceiptRecord(CamelModel):
    id: Optional[str] = None
    client_id: Optional[str] = None
    date: Optional[str] = None
    vendor: Optional[str] = None
    amount: Optional[StrictFloat] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    image_url: Optional[str] = None
    is_tax_deductible: Optional[bool] = None
    sync_status: Optional[str] = None


# --- Action requests ---

class ActionRequest(BaseModel):
    model_config = ConfigDict(extra='ignore')

    # error reported when the payload does not validate
    invalid_message: ClassVar[str] = "Invalid request"


class SmartCommandRequest(ActionRequest):
    invalid_message: ClassVar[str] = "Command is required"

    command: StrictStr = Field(max_length=COMMAND_MAX_CHARS)
    clients: Optional[List[Client]] = None

    @field_validator('command')
    @classmethod
    def command_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("command must not be empty")
        return value


class ForecastRequest(ActionRequest):
    invalid_message: ClassVar[str] = "Client data is required"

    records: Optional[List[WorkRecord]] = None
    receipts: Optional[List[ReceiptRecord]] = None
    client: Client


class ClientHealthRequest(ActionRequest):
    invalid_message: ClassVar[str] = "Clients data is required"

    records: Optional[List[WorkRecord]] = None
    receipts: Optional[List[ReceiptRecord]] = None
    clients: List[Client]


class ParseReceiptRequest(ActionRequest):
    invalid_message: ClassVar[str] = "Base64 image is required"

    image: StrictStr = Field(min_length=1)


class ActionEnvelope(ActionRequest):
    """Body accepted by the single serverless endpoint."""

    invalid_message: ClassVar[str] = "Action and payload are required"

    action: StrictStr
    payload: Dict[str, Any] = Field(default_factory=dict)


ACTION_REQUESTS: Dict[str, Type[ActionRequest]] = {
    "smart-command": SmartCommandRequest,
    "forecast": ForecastRequest,
    "client-health": ClientHealthRequest,
    "parse-receipt": ParseReceiptRequest,
}

RequestT = TypeVar('RequestT', bound=ActionRequest)


def _describe(error: ValidationError, limit: int = 5) -> str:
    parts = []
    for err in error.errors(include_url=False)[:limit]:
        location = ".".join(str(item) for item in err.get("loc", ())) or "body"
        parts.append(f"{location}: {err.get('msg')}")
    return "; ".join(parts)


def parse_request(model: Type[RequestT], payload: Any) -> RequestT:
    """Validate an untrusted JSON payload into a request model or raise InvalidInput."""
    if not isinstance(payload, dict):
        raise InvalidInput(model.invalid_message, "Request body must be a JSON object")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise InvalidInput(model.invalid_message, _describe(e)) from e


# --- Action results ---

class SmartCommandResult(CamelModel):
    type: SmartCommandType = "unknown"
    client_name: Optional[str] = None
    amount: Optional[StrictFloat] = None
    duration_minutes: Optional[StrictFloat] = None
    notes: Optional[str] = None
    category: Optional[str] = None
    vendor: Optional[str] = None
    message: Optional[str] = None

    @field_validator('type', mode='before')
    @classmethod
    def normalise_type(cls, value: Any) -> str:
        # unrecognised tags degrade to "unknown" instead of failing the call
        if isinstance(value, str) and value.strip().lower() in COMMAND_TYPES:
            return value.strip().lower()
        return "unknown"

    def with_type_defaults(self) -> 'SmartCommandResult':
        """Fill the fields the UI needs to act on a work or expense command."""
        return self.with_defaults(**COMMAND_DEFAULTS.get(self.type, {}))


class ForecastResult(CamelModel):
    forecast: StrictStr = Field(min_length=1)


class ClientHealth(CamelModel):
    client_id: StrictStr
    name: StrictStr
    profitability: StrictFloat
    stability: StrictFloat
    growth: StrictFloat
    recommendation: StrictStr = ""

    @property
    def in_range(self) -> bool:
        return all(SCORE_MIN <= score <= SCORE_MAX for score in (self.profitability, self.stability, self.growth))

    def clamped(self) -> 'ClientHealth':
        def clamp(score: float) -> float:
            return max(SCORE_MIN, min(SCORE_MAX, score))

        return self.model_copy(update={
            'profitability': clamp(self.profitability),
            'stability': clamp(self.stability),
            'growth': clamp(self.growth),
        })


class ReceiptParseResult(CamelModel):
    amount: StrictFloat
    vendor: StrictStr
    date: datetime.date
    category: Optional[str] = None
    is_tax_deductible: Optional[StrictBool] = None


class HealthResponse(BaseModel):
    status: str
    service: str
    timestamp: str
