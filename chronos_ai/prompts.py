"""
Prompt builders for the Gemini-backed actions.

Every builder takes validated request models and returns the text sent to the
model. History lists are truncated to the most recent entries before they are
embedded; callers never control how much history reaches the model.
"""
import json
from typing import List, Optional, Sequence, TypeVar

from chronos_ai.schemas import (
    COMMAND_TYPES,
    FORECAST_RECEIPT_WINDOW,
    FORECAST_RECORD_WINDOW,
    HEALTH_RECEIPT_WINDOW,
    HEALTH_RECORD_WINDOW,
    CamelModel,
    Client,
    ReceiptRecord,
    WorkRecord,
)

T = TypeVar('T')

DEFAULT_CLIENT_NAME = "Default Client"

ACTION_DESCRIPTIONS = {
    "work": "log time",
    "expense": "log money",
    "sync": "sync pending",
    "report": "summary",
    "fix": "polish notes",
}

RECEIPT_INSTRUCTION = (
    "Extract details into JSON: total amount, vendor, date (YYYY-MM-DD), "
    "category, and 'isTaxDeductible' (boolean)."
)


def recent(items: Optional[Sequence[T]], limit: int) -> List[T]:
    """Most recent ``limit`` entries (lists are stored oldest first)."""
    if not items or limit <= 0:
        return []
    return list(items[-limit:])


def _dump(items: Sequence[CamelModel]) -> list:
    # receipt image URLs can be whole data URLs; never ship them as prompt text
    return [item.to_json_dict(exclude={'image_url'}) if isinstance(item, ReceiptRecord) else item.to_json_dict()
            for item in items]


def build_smart_command_prompt(command: str, clients: Optional[List[Client]]) -> str:
    client_names = ", ".join(c.name for c in clients) if clients else DEFAULT_CLIENT_NAME
    actions = ", ".join(f"'{tag}' ({ACTION_DESCRIPTIONS[tag]})" for tag in COMMAND_TYPES)
    return (
        "You are an AI assistant for Chronos, a work tracker.\n"
        f"Available clients: {client_names}.\n"
        f"Available actions: {actions}.\n"
        "If the command matches none of these actions, use 'unknown'.\n"
        "Durations are always expressed in minutes.\n"
        f"Command: {json.dumps(command)}"
    )


def build_forecast_prompt(records: Optional[List[WorkRecord]],
                          receipts: Optional[List[ReceiptRecord]],
                          client: Client) -> str:
    data = json.dumps({
        "records": _dump(recent(records, FORECAST_RECORD_WINDOW)),
        "receipts": _dump(recent(receipts, FORECAST_RECEIPT_WINDOW)),
    })
    rate = ""
    if client.hourly_rate is not None:
        rate = f" (hourly rate {client.hourly_rate:g} {client.currency or 'USD'})"
    return (
        f"You are a CFO. Based on this work/expense data for client {client.name}{rate}, "
        "predict the total revenue for the end of this month. Identify the biggest 'profit killer' "
        f"and give 1 strategic move to increase margins. Data: {data}"
    )


def build_client_health_prompt(records: Optional[List[WorkRecord]],
                               receipts: Optional[List[ReceiptRecord]],
                               clients: List[Client]) -> str:
    return (
        "Analyze the profitability of these clients. Compare hours worked vs expenses incurred. "
        "Return a JSON array of health metrics (0-100) for each. "
        f"Clients: {json.dumps(_dump(clients))} "
        f"Records: {json.dumps(_dump(recent(records, HEALTH_RECORD_WINDOW)))} "
        f"Expenses: {json.dumps(_dump(recent(receipts, HEALTH_RECEIPT_WINDOW)))}"
    )
