from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable

from schemas.entities import BillableItem, Contract, Invoice, InvoiceLineItem


@dataclass(frozen=True)
class RuleContext:
    invoice: Invoice
    contract: Contract | None = None
    line_item: InvoiceLineItem | None = None
    billable_item: BillableItem | None = None
    contract_party_ids: frozenset[str] = frozenset()
    contract_location_ids: frozenset[str] = frozenset()


@dataclass(frozen=True)
class RuleResult:
    passed: bool
    message: str
    expected_value: Any = None
    actual_value: Any = None
    variance: float | None = None


Rule = Callable[[RuleContext], RuleResult]


def contract_price_for(item: BillableItem) -> float | None:
    if item.contract_price is not None:
        return item.contract_price
    return item.list_price


def check_price(ctx: RuleContext) -> RuleResult:
    line, item = ctx.line_item, ctx.billable_item
    if line is None or item is None:
        return RuleResult(False, "Line item has no matched billable item to price against")
    if line.unit_price is None:
        return RuleResult(False, "Invoiced unit price is missing")
    contract_price = contract_price_for(item)
    if contract_price is None:
        return RuleResult(False, f"No contract or list price defined for {item.name}", actual_value=line.unit_price)

    variance = round(line.unit_price - contract_price, 4)
    allowed = item.allowed_variance or 0.0
    if item.allowed_variance_type == "Percentage":
        if contract_price == 0:
            deviation = 0.0 if variance == 0 else math.inf
        else:
            deviation = abs(variance) / contract_price * 100
        passed = deviation <= allowed
        tolerance = f"{allowed}%"
    else:
        passed = abs(variance) <= allowed
        tolerance = f"{allowed:.2f}"

    if passed:
        message = f"Price {line.unit_price:.2f} within tolerance of contract price {contract_price:.2f}"
    else:
        message = (
            f"Price variance of {variance:.2f} exceeds allowed tolerance of {tolerance} "
            f"(invoiced {line.unit_price:.2f}, contract {contract_price:.2f})"
        )
    return RuleResult(passed, message, contract_price, line.unit_price, variance)


def check_quantity(ctx: RuleContext) -> RuleResult:
    line = ctx.line_item
    if line is None or line.quantity is None:
        return RuleResult(True, "Quantity not specified")
    if line.quantity <= 0:
        return RuleResult(False, f"Invalid quantity: {line.quantity}", "> 0", line.quantity)
    return RuleResult(True, "Quantity is valid", actual_value=line.quantity)


def check_uom(ctx: RuleContext) -> RuleResult:
    line, item = ctx.line_item, ctx.billable_item
    if line is None or item is None:
        return RuleResult(True, "No billable item to compare unit of measure against")
    if not line.uom:
        return RuleResult(False, "Unit of measure missing on invoice line", item.uom, None)
    if line.uom.strip().lower() != item.uom.strip().lower():
        return RuleResult(
            False,
            f"Unit of measure mismatch: invoiced {line.uom}, contract {item.uom}",
            item.uom,
            line.uom,
        )
    return RuleResult(True, "Unit of measure matches", item.uom, line.uom)


def check_currency(ctx: RuleContext) -> RuleResult:
    if ctx.contract is None:
        return RuleResult(True, "No contract to compare currency against")
    expected = ctx.contract.currency.upper()
    actual = ctx.invoice.currency.upper()
    if expected != actual:
        return RuleResult(False, f"Invoice currency {actual} does not match contract currency {expected}", expected, actual)
    return RuleResult(True, "Currency matches", expected, actual)


def check_date_range(ctx: RuleContext) -> RuleResult:
    contract = ctx.contract
    if contract is None:
        return RuleResult(True, "No contract to compare dates against")
    start = ctx.invoice.service_start or ctx.invoice.invoice_date
    end = ctx.invoice.service_end or start
    expected = f"{contract.effective_date.isoformat()} to {contract.expiration_date.isoformat()}"
    actual = start.isoformat() if start == end else f"{start.isoformat()} to {end.isoformat()}"
    if start < contract.effective_date or end > contract.expiration_date:
        return RuleResult(False, f"Invoice period {actual} falls outside contract term {expected}", expected, actual)
    return RuleResult(True, "Invoice period within contract term", expected, actual)


def check_vendor(ctx: RuleContext) -> RuleResult:
    if ctx.contract is None:
        return RuleResult(True, "No contract to compare vendor against")
    if ctx.invoice.vendor_party_id not in ctx.contract_party_ids:
        return RuleResult(
            False,
            "Invoice vendor is not a party to the matched contract",
            sorted(ctx.contract_party_ids),
            ctx.invoice.vendor_party_id,
        )
    return RuleResult(True, "Vendor is a contract party", actual_value=ctx.invoice.vendor_party_id)


def check_location(ctx: RuleContext) -> RuleResult:
    invoice = ctx.invoice
    if ctx.contract is None:
        return RuleResult(True, "No contract to compare location against")
    if invoice.location_id is None and not invoice.location_code:
        return RuleResult(True, "Invoice names no service location")
    if invoice.location_id is not None and invoice.location_id in ctx.contract_location_ids:
        return RuleResult(True, "Location authorized", actual_value=invoice.location_code or invoice.location_id)
    return RuleResult(
        False,
        f"Location {invoice.location_code or invoice.location_id} is not authorized under the contract",
        sorted(ctx.contract_location_ids),
        invoice.location_code or invoice.location_id,
    )
