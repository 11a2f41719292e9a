from __future__ import annotations

import json
from datetime import date

import pytest

from reconciler.extraction_service import (
    NO_USABLE_DATA,
    TYPE_PROMPT,
    TYPE_SAMPLE_CHARS,
    ExtractionError,
    ExtractionGateway,
    MultiProviderClient,
    prepare_text,
)
from reconciler.retry_utils import RetryPolicy
from schemas.extraction_schema import ContractExtraction, InvoiceExtraction

TODAY = date(2026, 3, 1)


class _FakeClient:
    def __init__(self, outputs: list[object]) -> None:
        self._outputs = list(outputs)
        self.calls: list[tuple[str, str, int]] = []

    def complete(self, system: str, prompt: str, max_tokens: int) -> str:
        self.calls.append((system, prompt, max_tokens))
        if not self._outputs:
            raise RuntimeError("No outputs configured")
        item = self._outputs.pop(0)
        if isinstance(item, Exception):
            raise item
        return str(item)


def _gateway(client: _FakeClient, sleeps: list[float] | None = None) -> ExtractionGateway:
    return ExtractionGateway(
        client,
        retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=0.01),
        sleep_fn=(sleeps.append if sleeps is not None else lambda _: None),
        today_fn=lambda: TODAY,
        id_factory=lambda: "abcd1234-0000-4000-8000-000000000000",
    )


CLEAN_INVOICE = {
    "invoice_id": "INV-1001",
    "invoice_date": "2026-02-15",
    "vendor_party_id": "Acme Supplies LLC",
    "currency": "USD",
    "total_amount": 1500.0,
    "net_amount": 1500.0,
    "line_items": [
        {"line_number": 1, "item_code": "WID-1", "quantity": 10, "unit_price": 150.0, "extended_amount": 1500.0}
    ],
    "metadata": {"overall_confidence": 0.95},
}


def test_extract_invoice_clean_payload() -> None:
    client = _FakeClient([json.dumps(CLEAN_INVOICE)])
    result = _gateway(client).extract_invoice("Invoice INV-1001", total_pages=2)

    assert result.success
    assert isinstance(result.data, InvoiceExtraction)
    assert result.data.invoice_id == "INV-1001"
    assert result.data.line_items[0].quantity == 10
    assert result.confidence == pytest.approx(0.95)
    assert result.requires_human_review is False
    assert result.warnings == []
    assert result.data.metadata.parse_tier == "strict"
    assert result.data.metadata.total_pages == 2
    assert result.data.metadata.provider == "custom"


def test_extract_invoice_fallbacks_lower_confidence_and_flag_review() -> None:
    client = _FakeClient(['{"invoice_id": "INV-1001", "currency": "USD", "line_items": []}'])
    text = "Remit To: Acme Supplies LLC\nTotal Due: $1,500.00"
    result = _gateway(client).extract_invoice(text)

    assert result.success
    assert result.data.vendor_party_id == "Acme Supplies LLC"
    assert result.data.total_amount == 1500.0
    assert result.data.invoice_date == TODAY.isoformat()
    assert len(result.warnings) == 3
    assert result.confidence == pytest.approx(0.6)
    assert result.requires_human_review is True
    assert "low_confidence" in result.metadata["review_reasons"]
    assert result.data.metadata.fallbacks == result.warnings


def test_truncated_output_is_repaired_with_penalty() -> None:
    raw = json.dumps(CLEAN_INVOICE)[:-40]
    client = _FakeClient([raw])
    result = _gateway(client).extract_invoice("text")

    assert result.success
    assert result.metadata["parse_tier"] in {"quote_repair", "bracket_repair"}
    assert result.confidence < 0.95
    assert result.warnings[0].startswith("Model output required")


def test_unusable_output_reports_failure() -> None:
    client = _FakeClient(["I am unable to read this document."])
    result = _gateway(client).extract_invoice("text")

    assert result.success is False
    assert result.data is None
    assert result.errors == [NO_USABLE_DATA]
    assert result.requires_human_review is True


def test_nested_invoice_header_is_flattened() -> None:
    raw = {
        "invoice_header": {
            "invoice_number": "INV-7",
            "vendor_name": "Acme Supplies LLC",
            "invoice_date": "2026-02-01",
            "total": 250,
        },
        "line_items": [{"description": "Widgets", "quantity": 1, "unit_price": 250}],
    }
    result = _gateway(_FakeClient([json.dumps(raw)])).extract_invoice("text")

    assert result.data.invoice_id == "INV-7"
    assert result.data.vendor_party_id == "Acme Supplies LLC"
    assert result.data.total_amount == 250.0
    assert result.data.line_items[0].description == "Widgets"
    assert result.warnings == []


def test_extract_contract_applies_date_fallbacks() -> None:
    raw = {
        "contract_number": "MSA-2026-01",
        "contract_title": "Master Supply Agreement",
        "currency": "USD",
        "parties": [{"legal_name": "Acme Supplies LLC", "role": "vendor"}],
        "billable_items": [{"item_code": "WID-1", "name": "Widget", "contract_price": "$150.00"}],
    }
    result = _gateway(_FakeClient([json.dumps(raw)])).extract_contract("contract text")

    assert isinstance(result.data, ContractExtraction)
    assert result.data.contract_id == "MSA-2026-01"
    assert result.data.effective_date == "2026-03-01"
    assert result.data.expiration_date == "2027-03-01"
    assert result.data.parties[0].role == "Vendor"
    assert result.data.billable_items[0].contract_price == 150.0
    assert len(result.metadata["fallbacks"]) == 4


def test_transient_errors_are_retried() -> None:
    sleeps: list[float] = []
    client = _FakeClient(
        [
            ExtractionError("overloaded", status_code=529),
            TimeoutError("slow"),
            json.dumps(CLEAN_INVOICE),
        ]
    )
    result = _gateway(client, sleeps).extract_invoice("text")

    assert result.success
    assert len(client.calls) == 3
    assert len(sleeps) == 2


def test_non_transient_error_is_not_retried() -> None:
    client = _FakeClient([ExtractionError("bad request", code="provider_request_failed", status_code=400)])
    with pytest.raises(ExtractionError) as info:
        _gateway(client).extract_invoice("text")
    assert info.value.code == "provider_request_failed"
    assert len(client.calls) == 1


def test_exhausted_retries_report_provider_unavailable() -> None:
    client = _FakeClient([ExtractionError("down", status_code=503)] * 3)
    with pytest.raises(ExtractionError) as info:
        _gateway(client).extract_invoice("text")
    assert info.value.code == "provider_unavailable"
    assert len(client.calls) == 3


def test_detect_type_maps_labels_and_samples_text() -> None:
    client = _FakeClient(
        [
            '{"document_type": "Agreement", "confidence": 0.8, "reasoning": "signature block"}',
            '{"document_type": "receipt"}',
        ]
    )
    gateway = _gateway(client)

    detection = gateway.detect_type("x" * (TYPE_SAMPLE_CHARS * 2))
    assert detection.type == "contract"
    assert detection.confidence == 0.8
    assert detection.reasoning == "signature block"
    assert len(client.calls[0][1]) == len(TYPE_PROMPT) + TYPE_SAMPLE_CHARS

    other = gateway.detect_type("store receipt")
    assert other.type == "other"
    assert other.confidence == 0.5


def test_prepare_text_fixes_ocr_digits_and_whitespace() -> None:
    assert prepare_text("Total:   $1,2O0.00") == "Total: $1,200.00"
    assert prepare_text("a \t b\n\n\n\nc") == "a b\n\nc"
    assert prepare_text("Pay $SOON") == "Pay $SOON"


def test_multi_provider_client_falls_through() -> None:
    failing = _FakeClient([ExtractionError("down", status_code=503)])
    working = _FakeClient(["{}"])
    client = MultiProviderClient([("anthropic", failing), ("openai", working)])

    assert client.complete("sys", "prompt", 10) == "{}"
    assert client.last_provider == "openai"


def test_multi_provider_client_marks_transient_failure() -> None:
    client = MultiProviderClient(
        [("anthropic", _FakeClient([TimeoutError("slow")])), ("openai", _FakeClient([ValueError("bad")]))]
    )
    with pytest.raises(ExtractionError) as info:
        client.complete("sys", "prompt", 10)
    assert info.value.code == "all_providers_failed"
    assert info.value.status_code == 503
