import datetime

import pytest

from chronos_ai.errors import InvalidInput
from chronos_ai.schemas import (
    ClientHealth,
    ForecastRequest,
    ReceiptParseResult,
    SmartCommandResult,
    parse_request,
)


def test_parse_request_accepts_camel_case_records():
    request = parse_request(ForecastRequest, {
        "client": {"id": "c1", "name": "Acme", "hourlyRate": 95},
        "records": [{"id": "w1", "clientId": "c1", "durationMinutes": 45, "unexpected": True}],
    })
    assert request.client.hourly_rate == 95
    assert request.records[0].duration_minutes == 45


@pytest.mark.parametrize("payload", [None, [], "client", {"client": {"name": ""}}, {"client": {"name": 5}}])
def test_parse_request_rejects_bad_payloads(payload):
    with pytest.raises(InvalidInput) as excinfo:
        parse_request(ForecastRequest, payload)
    assert excinfo.value.error == "Client data is required"


def test_work_command_defaults():
    result = SmartCommandResult(type="work", client_name="Acme").with_type_defaults()
    assert result.duration_minutes == 60
    assert result.category == "Deep Work"


def test_expense_command_keeps_model_values():
    result = SmartCommandResult(type="expense", vendor="Cafe", amount=4.5).with_type_defaults()
    assert result.vendor == "Cafe"
    assert result.category == "Expense"


def test_unknown_command_has_no_defaults():
    result = SmartCommandResult(type="report").with_type_defaults()
    assert result.to_json_dict() == {"type": "report"}


def test_client_health_clamping():
    health = ClientHealth(client_id="c1", name="Acme", profitability=140, stability=-3.5, growth=40)
    assert not health.in_range
    clamped = health.clamped()
    assert (clamped.profitability, clamped.stability, clamped.growth) == (100, 0, 40)
    assert clamped.in_range


def test_receipt_result_serialises_camel_case():
    result = ReceiptParseResult.model_validate({"amount": 12, "vendor": "Cafe", "date": "2024-01-31",
                                                "isTaxDeductible": False})
    assert result.date == datetime.date(2024, 1, 31)
    assert result.to_json_dict() == {"amount": 12, "vendor": "Cafe", "date": "2024-01-31", "isTaxDeductible": False}
