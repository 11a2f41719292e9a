from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from reconciler.entity_normalizer import EntityNormalizer, NormalizationError
from reconciler.store import SqliteRecordStore
from schemas.entities import (
    BillableItem,
    Contract,
    ContractLocation,
    ContractParty,
    Invoice,
    InvoiceLineItem,
    Location,
    Party,
    PricingModel,
)
from schemas.extraction_schema import ContractExtraction, InvoiceExtraction

TODAY = date(2026, 3, 1)

CONTRACT_PAYLOAD = {
    "contract_number": "MSA-2026-01",
    "contract_title": "Master Supply Agreement",
    "effective_date": "2026-01-01",
    "expiration_date": "2026-12-31",
    "currency": "usd",
    "parties": [
        {"legal_name": "Acme Supplies LLC", "role": "Vendor", "tax_id": "12-3456789"},
        {"legal_name": "Globex Hospital", "role": "Customer"},
    ],
    "locations": [{"location_code": "WH-1", "name": "Main Warehouse"}],
    "pricing_models": [{"name": "Fixed", "model_type": "Fixed"}],
    "billable_items": [
        {
            "item_code": "WID-1",
            "name": "Widget",
            "contract_price": 100,
            "allowed_variance": 5,
            "allowed_variance_type": "percent",
            "uom": "Each",
            "pricing_model": "fixed",
        },
        {"name": "Installation Service", "contract_price": 250, "uom": "hour"},
    ],
}


@pytest.fixture
def store(tmp_path: Path) -> SqliteRecordStore:
    return SqliteRecordStore(tmp_path / "records.db")


@pytest.fixture
def normalizer(store: SqliteRecordStore) -> EntityNormalizer:
    return EntityNormalizer(store, today_fn=lambda: TODAY)


def _contract(normalizer: EntityNormalizer, **overrides: object) -> str:
    return normalizer.normalize_contract(ContractExtraction.model_validate({**CONTRACT_PAYLOAD, **overrides}))


def _invoice_payload(**overrides: object) -> dict:
    payload = {
        "invoice_id": "INV-1001",
        "invoice_date": "2026-03-01",
        "vendor_party_id": "Acme Supplies LLC",
        "total_amount": 1150.0,
        "location_code": "WH-1",
        "line_items": [
            {"item_code": "WID-1", "quantity": 10, "unit_price": 115, "uom": "each"},
            {"description": "Installation service, 2 hours", "quantity": 2, "unit_price": 250},
        ],
    }
    payload.update(overrides)
    return payload


def test_contract_graph_is_created(store: SqliteRecordStore, normalizer: EntityNormalizer) -> None:
    contract_id = _contract(normalizer)

    contract = store.require(Contract, contract_id)
    assert contract.contract_number == "MSA-2026-01"
    assert contract.currency == "USD"
    assert store.count(Party) == 2
    links = store.find(ContractParty, lambda cp: cp.contract_id == contract_id)
    assert sorted(link.role for link in links) == ["Customer", "Vendor"]
    assert all(link.is_primary for link in links)
    assert store.count(ContractLocation) == 1

    items = {item.name: item for item in store.find(BillableItem)}
    widget = items["Widget"]
    assert widget.allowed_variance_type == "Percentage"
    assert widget.uom == "each"
    pricing = store.find_one(PricingModel, lambda pm: pm.name == "Fixed")
    assert widget.pricing_model_id == pricing.id
    assert items["Installation Service"].pricing_model_id is None


def test_renormalizing_contract_updates_in_place(
    store: SqliteRecordStore, normalizer: EntityNormalizer
) -> None:
    first = _contract(normalizer)
    second = _contract(normalizer, contract_title="Amended Supply Agreement")

    assert first == second
    assert store.count(Contract) == 1
    assert store.count(Party) == 2
    assert store.count(ContractParty) == 2
    assert store.count(BillableItem) == 2
    assert store.require(Contract, first).title == "Amended Supply Agreement"


def test_contract_without_identifier_is_matched_by_source_document(
    store: SqliteRecordStore, normalizer: EntityNormalizer
) -> None:
    payload = {k: v for k, v in CONTRACT_PAYLOAD.items() if k != "contract_number"}
    first = normalizer.normalize_contract(
        ContractExtraction.model_validate({**payload, "contract_id": "5f0c6a57-3b9e-4d52-9a51-0d1f7c2b8e01"}),
        source_document_id="doc-1",
    )
    second = normalizer.normalize_contract(
        ContractExtraction.model_validate({**payload, "contract_id": "8d2e4c11-7a6b-4f3e-8c9d-1e2f3a4b5c6d"}),
        source_document_id="doc-1",
    )

    assert first == second
    assert store.count(Contract) == 1
    assert store.count(BillableItem) == 2


def test_contract_dates_default_and_validate(store: SqliteRecordStore, normalizer: EntityNormalizer) -> None:
    contract_id = _contract(normalizer, contract_number="MSA-2", effective_date="soon", expiration_date=None)
    contract = store.require(Contract, contract_id)
    assert contract.effective_date == TODAY
    assert contract.expiration_date == date(2027, 3, 1)

    with pytest.raises(NormalizationError) as info:
        _contract(normalizer, contract_number="MSA-3", expiration_date="2025-06-30")
    assert info.value.code == "invalid_date_range"


def test_party_enrichment_never_overwrites(store: SqliteRecordStore, normalizer: EntityNormalizer) -> None:
    created = normalizer.resolve_party(name="Acme Supplies LLC", tax_id="11-1111111")
    again = normalizer.resolve_party(name="acme supplies llc", tax_id="22-2222222", email="ap@acme.test")

    assert again.id == created.id
    assert again.tax_id == "11-1111111"
    assert again.email == "ap@acme.test"
    assert store.count(Party) == 1

    by_tax_id = normalizer.resolve_party(name=None, tax_id="11-1111111")
    assert by_tax_id.id == created.id


def test_long_party_names_are_truncated_before_matching(normalizer: EntityNormalizer) -> None:
    party = normalizer.resolve_party(name="Acme Supplies LLC\n" + "boilerplate text " * 30)
    assert party.legal_name == "Acme Supplies LLC"


def test_invoice_matches_contract_and_items(store: SqliteRecordStore, normalizer: EntityNormalizer) -> None:
    contract_id = _contract(normalizer)
    invoice_id = normalizer.normalize_invoice(InvoiceExtraction.model_validate(_invoice_payload()))

    invoice = store.require(Invoice, invoice_id)
    assert invoice.contract_id == contract_id
    assert invoice.net_amount == 1150.0
    assert invoice.gross_amount == 1150.0
    assert invoice.location_id == store.find_one(Location, lambda loc: loc.location_code == "WH-1").id

    lines = sorted(store.find(InvoiceLineItem, lambda li: li.invoice_id == invoice_id), key=lambda li: li.line_number)
    items = {item.id: item.name for item in store.find(BillableItem)}
    assert [items[line.billable_item_id] for line in lines] == ["Widget", "Installation Service"]
    assert lines[0].extended_amount == 1150.0


def test_invoice_renormalization_is_idempotent(store: SqliteRecordStore, normalizer: EntityNormalizer) -> None:
    _contract(normalizer)
    data = InvoiceExtraction.model_validate(_invoice_payload())
    first = normalizer.normalize_invoice(data, source_document_id="doc-1")
    second = normalizer.normalize_invoice(data, source_document_id="doc-1")

    assert first == second
    assert store.count(Invoice) == 1
    assert store.count(InvoiceLineItem) == 2

    shorter = InvoiceExtraction.model_validate(_invoice_payload(line_items=[{"item_code": "WID-1", "quantity": 1}]))
    normalizer.normalize_invoice(shorter, source_document_id="doc-1")
    assert store.count(InvoiceLineItem) == 1


def test_invoice_without_contract_or_vendor(store: SqliteRecordStore, normalizer: EntityNormalizer) -> None:
    data = InvoiceExtraction.model_validate(_invoice_payload(vendor_party_id=None, line_items=[]))
    invoice = store.require(Invoice, normalizer.normalize_invoice(data))

    assert invoice.contract_id is None
    assert store.require(Party, invoice.vendor_party_id).legal_name == "Unknown Vendor"


def test_invoice_requires_identifier(normalizer: EntityNormalizer) -> None:
    with pytest.raises(NormalizationError) as info:
        normalizer.normalize_invoice(InvoiceExtraction.model_validate(_invoice_payload(invoice_id=None)))
    assert info.value.code == "missing_invoice_id"
