from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

from reconciler.config import Settings
from reconciler.extraction_service import TYPE_PROMPT, ExtractionGateway
from reconciler.ocr import OcrResult
from reconciler.pipeline import PipelineServices, build_services
from reconciler.retry_utils import RetryPolicy

TODAY = date(2026, 3, 1)

CONTRACT_TEXT = "MASTER SUPPLY AGREEMENT MSA-2026-01 between Acme Supplies LLC and Globex Hospital"
INVOICE_TEXT = "INVOICE INV-1001 from Acme Supplies LLC under MSA-2026-01"

CONTRACT_PAYLOAD: dict[str, Any] = {
    "contract_number": "MSA-2026-01",
    "contract_title": "Master Supply Agreement",
    "contract_type": "Supply",
    "effective_date": "2026-01-01",
    "expiration_date": "2026-12-31",
    "currency": "USD",
    "parties": [
        {"legal_name": "Acme Supplies LLC", "role": "Vendor"},
        {"legal_name": "Globex Hospital", "role": "Customer"},
    ],
    "billable_items": [
        {"item_code": "WID-1", "name": "Widget", "contract_price": 100, "allowed_variance": 10, "uom": "each"}
    ],
    "metadata": {"overall_confidence": 0.95},
}

INVOICE_PAYLOAD: dict[str, Any] = {
    "invoice_id": "INV-1001",
    "invoice_date": "2026-03-01",
    "vendor_party_id": "Acme Supplies LLC",
    "contract_reference": "MSA-2026-01",
    "currency": "USD",
    "total_amount": 1150.0,
    "net_amount": 1150.0,
    "line_items": [
        {"line_number": 1, "item_code": "WID-1", "quantity": 10, "unit_price": 115, "extended_amount": 1150, "uom": "each"}
    ],
    "metadata": {"overall_confidence": 0.95},
}


class ScriptedClient:
    """Completion client keyed on the document text embedded in each prompt."""

    def __init__(self) -> None:
        self.detections: dict[str, str] = {CONTRACT_TEXT: "contract", INVOICE_TEXT: "invoice"}
        self.extractions: dict[str, str] = {
            CONTRACT_TEXT: json.dumps(CONTRACT_PAYLOAD),
            INVOICE_TEXT: json.dumps(INVOICE_PAYLOAD),
        }
        self.calls = 0

    def complete(self, system: str, prompt: str, max_tokens: int) -> str:
        self.calls += 1
        for text, label in self.detections.items():
            if prompt.startswith(TYPE_PROMPT) and text in prompt:
                return json.dumps({"document_type": label, "confidence": 0.9})
        for text, output in self.extractions.items():
            if text in prompt:
                return output
        return json.dumps({"document_type": "other", "confidence": 0.9})


def read_upload(path: str | Path) -> OcrResult:
    return OcrResult(text=Path(path).read_bytes().decode("utf-8"), total_pages=1)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_path=str(tmp_path / "data" / "reconciler.db"),
        upload_dir=str(tmp_path / "data" / "uploads"),
        dead_letter_path=str(tmp_path / "logs" / "dead_letter.jsonl"),
        metrics_path=str(tmp_path / "logs" / "metrics.jsonl"),
        max_upload_bytes=1024,
        cache_ttl_seconds=0,
        worker_count=1,
    )


@pytest.fixture
def client() -> ScriptedClient:
    return ScriptedClient()


@pytest.fixture
def make_services(
    settings: Settings, client: ScriptedClient
) -> Iterator[Callable[..., PipelineServices]]:
    built: list[PipelineServices] = []

    def _make(**overrides: Any) -> PipelineServices:
        gateway = ExtractionGateway(
            client,
            retry_policy=RetryPolicy(max_attempts=1, base_delay_seconds=0.0),
            sleep_fn=lambda _: None,
            today_fn=lambda: TODAY,
        )
        options: dict[str, Any] = {"gateway": gateway, "text_extractor": read_upload, "start_worker": False}
        options.update(overrides)
        services = build_services(settings, **options)
        built.append(services)
        return services

    yield _make
    for services in built:
        services.worker.shutdown()


@pytest.fixture
def services(make_services: Callable[..., PipelineServices]) -> PipelineServices:
    return make_services()
