from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable

from reconciler.fallbacks import UNKNOWN_VENDOR
from reconciler.normalization import (
    add_years,
    clean_search_term,
    is_uuid,
    looks_like_identifier,
    normalize_currency,
    normalize_uom,
    parse_date,
    round_money,
)
from reconciler.store import RecordStore
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
from schemas.extraction_schema import (
    BillableItemExtraction,
    ContractExtraction,
    InvoiceExtraction,
    LocationExtraction,
    PricingModelExtraction,
)

logger = logging.getLogger(__name__)

_PARTY_DETAIL_FIELDS = ("trading_name", "party_type", "email", "phone", "address")


class NormalizationError(ValueError):
    def __init__(self, message: str, code: str = "normalization_failed") -> None:
        super().__init__(message)
        self.code = code


def _same(a: str | None, b: str | None) -> bool:
    return a is not None and b is not None and a.strip().lower() == b.strip().lower()


class EntityNormalizer:
    """Turns extraction payloads into stored entities by match-or-create.

    Reference entities (parties, locations) are only ever enriched: a
    populated field is never overwritten. Contracts, billable items and
    invoices are upserted, so values from a newer extraction replace the
    old ones.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        today_fn: Callable[[], date] | None = None,
    ) -> None:
        self._store = store
        self._today_fn = today_fn or (lambda: datetime.now(timezone.utc).date())

    # Parties and locations

    def resolve_party(
        self,
        *,
        name: str | None,
        party_id: str | None = None,
        tax_id: str | None = None,
        duns_number: str | None = None,
        npi_number: str | None = None,
        **details: Any,
    ) -> Party:
        ids = {"tax_id": tax_id, "duns_number": duns_number, "npi_number": npi_number}
        found: Party | None = None
        if party_id and is_uuid(party_id):
            found = self._store.get(Party, party_id.strip())

        term = clean_search_term(name)
        if found is None and term:
            needle = term.lower()
            matches = self._store.find(
                Party,
                lambda p: needle in p.legal_name.lower()
                or (p.trading_name is not None and needle in p.trading_name.lower()),
            )
            exact = [p for p in matches if _same(p.legal_name, term) or _same(p.trading_name, term)]
            if exact or matches:
                found = (exact or matches)[0]

        if found is None:
            for key, value in ids.items():
                if not value:
                    continue
                found = self._store.find_one(Party, lambda p, k=key, v=value: _same(getattr(p, k), v))
                if found is not None:
                    break

        updates = {**ids, **{k: v for k, v in details.items() if k in _PARTY_DETAIL_FIELDS}}
        if found is not None:
            return self._enrich(found, updates)

        party = Party(
            legal_name=term or UNKNOWN_VENDOR,
            **{k: v for k, v in updates.items() if v is not None},
        )
        logger.info("Created party %s (%s)", party.id, party.legal_name)
        return self._store.insert(party)

    def _enrich(self, party: Party, updates: dict[str, Any]) -> Party:
        missing = {
            k: v for k, v in updates.items() if v is not None and getattr(party, k, None) is None
        }
        if not missing:
            return party
        return self._store.update(party.model_copy(update=missing))

    def _resolve_location(self, data: LocationExtraction) -> Location | None:
        if data.location_id and is_uuid(data.location_id):
            found = self._store.get(Location, data.location_id)
            if found is not None:
                return found
        code = data.location_code if looks_like_identifier(data.location_code) else None
        if code:
            found = self._store.find_one(Location, lambda loc: _same(loc.location_code, code))
            if found is not None:
                return found
        name = clean_search_term(data.name)
        if name:
            found = self._store.find_one(Location, lambda loc: _same(loc.name, name))
            if found is not None:
                return found
        if not (name or code):
            return None
        return self._store.insert(
            Location(
                location_code=code,
                name=name or code or "",
                location_type=data.location_type,
                address=data.address,
            )
        )

    def _link_party(self, contract_id: str, party_id: str, role: str, is_primary: bool) -> None:
        existing = self._store.find_one(
            ContractParty,
            lambda cp: cp.contract_id == contract_id and cp.party_id == party_id and _same(cp.role, role),
        )
        if existing is None:
            self._store.insert(
                ContractParty(
                    contract_id=contract_id, party_id=party_id, role=role, is_primary=is_primary
                )
            )

    def _link_location(self, contract_id: str, location_id: str) -> None:
        existing = self._store.find_one(
            ContractLocation,
            lambda cl: cl.contract_id == contract_id and cl.location_id == location_id,
        )
        if existing is None:
            self._store.insert(ContractLocation(contract_id=contract_id, location_id=location_id))

    # Contracts

    def _find_contract(
        self,
        contract_id: str | None,
        number: str | None,
        source_document_id: str | None = None,
    ) -> Contract | None:
        if contract_id and is_uuid(contract_id):
            found = self._store.get(Contract, contract_id.strip())
            if found is not None:
                return found
        keys = [k.strip() for k in (contract_id, number) if looks_like_identifier(k)]
        if contract_id and not looks_like_identifier(contract_id):
            logger.warning("Ignoring non-identifier contract id %r", contract_id[:80])
        found = None
        if keys:
            found = self._store.find_one(
                Contract, lambda c: any(_same(c.contract_number, k) for k in keys)
            )
        if found is None and source_document_id:
            # Re-extraction of a contract that carries no stable identifier.
            found = self._store.find_one(
                Contract, lambda c: c.source_document_id == source_document_id
            )
        return found

    def _contract_dates(self, data: ContractExtraction) -> tuple[date, date]:
        effective = parse_date(data.effective_date)
        expiration = parse_date(data.expiration_date)
        if effective is None:
            logger.warning("Unparseable effective date %r; using today", data.effective_date)
            effective = self._today_fn()
            if expiration is not None and expiration <= effective:
                expiration = None
        if expiration is None:
            return effective, add_years(effective, 1)
        if expiration <= effective:
            raise NormalizationError(
                f"Contract expiration date {expiration.isoformat()} must be after "
                f"effective date {effective.isoformat()}",
                code="invalid_date_range",
            )
        return effective, expiration

    def normalize_contract(
        self,
        data: ContractExtraction,
        *,
        source_document_id: str | None = None,
    ) -> str:
        effective, expiration = self._contract_dates(data)
        number = data.contract_number
        if number is None and data.contract_id and not is_uuid(data.contract_id):
            number = data.contract_id
        if number is not None and not looks_like_identifier(number):
            number = None

        currency = normalize_currency(
            data.currency
            or data.payment_terms.get("currency")
            or next((b.currency for b in data.billable_items if b.currency), None)
        )
        fields: dict[str, Any] = {
            "contract_number": number,
            "title": clean_search_term(data.contract_title) or f"Contract {number or effective}",
            "contract_type": data.contract_type,
            "effective_date": effective,
            "expiration_date": expiration,
            "currency": currency,
            "total_value": round_money(data.total_value),
            "payment_terms": data.payment_terms or None,
            "source_document_id": source_document_id,
        }
        provided = {k: v for k, v in fields.items() if v is not None}

        existing = self._find_contract(data.contract_id, number, source_document_id)
        if existing is not None:
            contract = self._store.update(existing.model_copy(update=provided))
            logger.info("Updated contract %s", contract.id)
        else:
            new_fields = dict(provided)
            if data.contract_id and is_uuid(data.contract_id):
                new_fields["id"] = data.contract_id.strip()
            contract = self._store.insert(Contract(**new_fields))
            logger.info("Created contract %s", contract.id)

        seen_roles: set[str] = set()
        for party_data in data.parties:
            if not (party_data.legal_name or party_data.party_id):
                continue
            party = self.resolve_party(
                name=party_data.legal_name,
                party_id=party_data.party_id,
                tax_id=party_data.tax_id,
                duns_number=party_data.duns_number,
                npi_number=party_data.npi_number,
                trading_name=party_data.trading_name,
                party_type=party_data.role,
                email=party_data.email,
                phone=party_data.phone,
                address=party_data.address,
            )
            role = party_data.role
            self._link_party(contract.id, party.id, role, is_primary=role not in seen_roles)
            seen_roles.add(role)

        for location_data in data.locations:
            location = self._resolve_location(location_data)
            if location is not None:
                self._link_location(contract.id, location.id)

        pricing_ids = {
            (pm.name or "").lower(): self._upsert_pricing_model(contract, pm).id
            for pm in data.pricing_models
            if pm.name or pm.pricing_model_id
        }
        for index, item in enumerate(data.billable_items, start=1):
            self._upsert_billable_item(contract, item, index, pricing_ids)
        return contract.id

    def _upsert_pricing_model(self, contract: Contract, data: PricingModelExtraction) -> PricingModel:
        external = data.pricing_model_id if looks_like_identifier(data.pricing_model_id) else None
        found: PricingModel | None = None
        if external:
            found = self._store.find_one(
                PricingModel, lambda pm: pm.id == external or _same(pm.external_id, external)
            )
        if found is None and data.name:
            found = self._store.find_one(
                PricingModel,
                lambda pm: pm.contract_id == contract.id and _same(pm.name, data.name),
            )
        fields = {
            "contract_id": contract.id,
            "external_id": external,
            "name": data.name or external or "Pricing model",
            "model_type": data.model_type,
            "base_rate": data.base_rate,
            "currency": normalize_currency(data.currency, contract.currency),
            "tiers": data.tiers or None,
        }
        provided = {k: v for k, v in fields.items() if v is not None}
        if found is not None:
            return self._store.update(found.model_copy(update=provided))
        return self._store.insert(PricingModel(**provided))

    def _upsert_billable_item(
        self,
        contract: Contract,
        data: BillableItemExtraction,
        index: int,
        pricing_ids: dict[str, str],
    ) -> BillableItem:
        code = data.item_code if looks_like_identifier(data.item_code) else None
        name = clean_search_term(data.name) or clean_search_term(data.description) or code or f"Item {index}"

        found: BillableItem | None = None
        if data.billable_item_id and is_uuid(data.billable_item_id):
            found = self._store.get(BillableItem, data.billable_item_id)
        if found is None:
            found = self._store.find_one(
                BillableItem,
                lambda b: b.contract_id == contract.id
                and ((code is not None and _same(b.item_code, code)) or _same(b.name, name)),
            )

        variance_type = "Absolute"
        if (data.allowed_variance_type or "").strip().lower().startswith("perc"):
            variance_type = "Percentage"
        fields = {
            "contract_id": contract.id,
            "pricing_model_id": pricing_ids.get((data.pricing_model or "").lower()),
            "item_code": code,
            "name": name,
            "description": data.description,
            "list_price": round_money(data.list_price),
            "contract_price": round_money(data.contract_price),
            "price_floor": round_money(data.price_floor),
            "price_ceiling": round_money(data.price_ceiling),
            "allowed_variance_type": variance_type,
            "allowed_variance": data.allowed_variance,
            "uom": normalize_uom(data.uom),
            "currency": normalize_currency(data.currency, contract.currency),
        }
        provided = {k: v for k, v in fields.items() if v is not None}
        if found is not None:
            return self._store.update(found.model_copy(update=provided))
        return self._store.insert(BillableItem(**provided))

    # Invoices

    def _match_contract(
        self, reference: str | None, vendor_id: str, invoice_date: date
    ) -> Contract | None:
        if reference and looks_like_identifier(reference):
            found = self._find_contract(reference, reference)
            if found is not None:
                return found
            logger.info("Contract reference %r not found; matching by vendor", reference)

        linked = {
            cp.contract_id for cp in self._store.find(ContractParty, lambda cp: cp.party_id == vendor_id)
        }
        if not linked:
            return None
        candidates = self._store.find(Contract, lambda c: c.id in linked)
        covering = [c for c in candidates if c.effective_date <= invoice_date <= c.expiration_date]
        pool = covering or candidates
        if not pool:
            return None
        pool.sort(key=lambda c: (c.status == "Active", c.effective_date), reverse=True)
        return pool[0]

    def _find_invoice(self, invoice_number: str, source_document_id: str | None) -> Invoice | None:
        found = self._store.find_one(Invoice, lambda inv: inv.invoice_number == invoice_number)
        if found is None and source_document_id:
            found = self._store.find_one(
                Invoice, lambda inv: inv.source_document_id == source_document_id
            )
        return found

    def normalize_invoice(
        self,
        data: InvoiceExtraction,
        *,
        source_document_id: str | None = None,
    ) -> str:
        if not data.invoice_id:
            raise NormalizationError("Invoice identifier is required", code="missing_invoice_id")
        invoice_number = data.invoice_id.strip()
        if len(invoice_number) > 200:
            invoice_number = invoice_number.splitlines()[0].strip()[:100]

        vendor_ref = data.vendor_party_id or UNKNOWN_VENDOR
        vendor = self.resolve_party(
            name=None if is_uuid(vendor_ref) else vendor_ref,
            party_id=vendor_ref if is_uuid(vendor_ref) else None,
            tax_id=data.vendor_tax_id,
            party_type="Vendor",
        )
        customer = None
        if data.customer_name:
            customer = self.resolve_party(name=data.customer_name, party_type="Customer")

        invoice_date = parse_date(data.invoice_date) or self._today_fn()
        contract = self._match_contract(data.contract_reference, vendor.id, invoice_date)

        location_id = None
        if data.location_code:
            location = self._store.find_one(
                Location,
                lambda loc: _same(loc.location_code, data.location_code) or _same(loc.name, data.location_code),
            )
            location_id = location.id if location else None

        net = data.net_amount if data.net_amount is not None else data.total_amount
        gross = data.total_amount if data.total_amount is not None else net
        fields: dict[str, Any] = {
            "invoice_number": invoice_number,
            "invoice_date": invoice_date,
            "due_date": parse_date(data.due_date),
            "vendor_party_id": vendor.id,
            "customer_party_id": customer.id if customer else None,
            "contract_id": contract.id if contract else None,
            "gross_amount": round_money(gross),
            "net_amount": round_money(net),
            "currency": normalize_currency(data.currency, contract.currency if contract else "USD"),
            "location_code": data.location_code,
            "location_id": location_id,
            "service_start": parse_date(data.service_period_start),
            "service_end": parse_date(data.service_period_end),
            "requires_human_review": data.metadata.requires_human_review,
            "source_document_id": source_document_id,
        }

        existing = self._find_invoice(invoice_number, source_document_id)
        if existing is not None:
            provided = {k: v for k, v in fields.items() if v is not None}
            provided["contract_id"] = fields["contract_id"]
            invoice = self._store.update(existing.model_copy(update=provided))
            logger.info("Updated invoice %s (%s)", invoice.id, invoice_number)
        else:
            invoice = self._store.insert(Invoice(**{k: v for k, v in fields.items() if v is not None}))
            logger.info("Created invoice %s (%s)", invoice.id, invoice_number)

        self._upsert_line_items(invoice, contract, data)
        return invoice.id

    def _match_billable_item(
        self, contract: Contract | None, item_code: str | None, description: str | None
    ) -> BillableItem | None:
        if contract is None:
            return None
        items = self._store.find(BillableItem, lambda b: b.contract_id == contract.id)
        if item_code:
            for item in items:
                if _same(item.item_code, item_code):
                    return item
        text = (description or "").strip().lower()
        if not text:
            return None
        for item in items:
            name = item.name.lower()
            if name in text or text in name:
                return item
        return None

    def _upsert_line_items(
        self, invoice: Invoice, contract: Contract | None, data: InvoiceExtraction
    ) -> None:
        existing = {
            li.line_number: li
            for li in self._store.find(InvoiceLineItem, lambda li: li.invoice_id == invoice.id)
        }
        used: set[int] = set()
        for index, item in enumerate(data.line_items, start=1):
            line_number = item.line_number or index
            while line_number in used:
                line_number += 1
            used.add(line_number)
            billable = self._match_billable_item(contract, item.item_code, item.description)
            extended = item.extended_amount
            if extended is None and item.unit_price is not None:
                extended = item.unit_price * (item.quantity if item.quantity is not None else 1.0)
            fields = {
                "invoice_id": invoice.id,
                "line_number": line_number,
                "description": item.description,
                "item_code": item.item_code,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "extended_amount": round_money(extended),
                "uom": normalize_uom(item.uom),
                "billable_item_id": billable.id if billable else None,
            }
            current = existing.get(line_number)
            if current is not None:
                self._store.update(current.model_copy(update=fields))
            else:
                self._store.insert(InvoiceLineItem(**fields))

        for line_number, stale in existing.items():
            if line_number not in used:
                self._store.delete(InvoiceLineItem, stale.id)
