from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from reconciler.approval_workflow import (
    TERMINAL_ESCALATION_COMMENT,
    ApprovalError,
    ApprovalWorkflow,
    load_approval_levels,
)
from reconciler.metrics import MetricsCollector
from reconciler.store import SqliteRecordStore
from schemas.entities import (
    ApprovalLevel,
    Invoice,
    InvoiceApprovalRequest,
    ValidationException,
)

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def store(tmp_path: Path) -> SqliteRecordStore:
    return SqliteRecordStore(tmp_path / "records.db")


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def workflow(store: SqliteRecordStore, clock: _Clock) -> ApprovalWorkflow:
    wf = ApprovalWorkflow(store, clock=clock, metrics=MetricsCollector())
    wf.seed_levels()
    return wf


def _request(store: SqliteRecordStore, workflow: ApprovalWorkflow, *impacts: tuple[str, float]) -> str | None:
    invoice = store.insert(
        Invoice(invoice_number="INV-1", invoice_date=date(2026, 3, 1), vendor_party_id="p-1", net_amount=1.0)
    )
    for severity, impact in impacts:
        store.insert(
            ValidationException(
                validation_id="v-1",
                invoice_id=invoice.id,
                exception_type="Price Variance",
                category="Pricing Validation",
                severity=severity,
                message="variance",
                financial_impact=impact,
            )
        )
    return workflow.create_request(invoice.id, "v-1")


def _level_name(store: SqliteRecordStore, request: InvoiceApprovalRequest) -> str:
    return store.require(ApprovalLevel, request.approval_level_id).level_name


def test_seed_levels_is_idempotent(workflow: ApprovalWorkflow) -> None:
    assert workflow.seed_levels() == []
    assert [level.sequence for level in workflow.active_levels()] == [1, 2, 3]


@pytest.mark.parametrize(
    ("amount", "level"),
    [(0, "AP Clerk"), (999.99, "AP Clerk"), (1000, "Department Head"), (5000, "Department Head"), (25000, "Finance Admin")],
)
def test_select_level_by_amount(workflow: ApprovalWorkflow, amount: float, level: str) -> None:
    assert workflow.select_level(amount).level_name == level


def test_select_level_without_coverage(store: SqliteRecordStore, clock: _Clock) -> None:
    workflow = ApprovalWorkflow(store, clock=clock)
    with pytest.raises(ApprovalError) as info:
        workflow.select_level(10)
    assert info.value.code == "no_level"


def test_request_routes_by_total_impact(store: SqliteRecordStore, workflow: ApprovalWorkflow) -> None:
    approval_id = _request(store, workflow, ("Medium", 3000.0), ("High", 2000.0), ("Low", 100.0))
    request = store.require(InvoiceApprovalRequest, approval_id)

    assert request.status == "Pending"
    assert request.total_amount == 5100.0
    assert _level_name(store, request) == "Department Head"
    assert request.required_by == T0 + timedelta(days=3)
    assert store.require(Invoice, request.invoice_id).current_status == "Pending Approval"
    [entry] = workflow.history(approval_id)
    assert entry.from_status is None and entry.to_status == "Pending"

    assert workflow.create_request(request.invoice_id, "v-1") == approval_id


def test_low_severity_only_needs_no_approval(store: SqliteRecordStore, workflow: ApprovalWorkflow) -> None:
    assert _request(store, workflow, ("Low", 50.0)) is None
    assert store.count(InvoiceApprovalRequest) == 0


def test_overdue_sweep_escalates_through_levels(
    store: SqliteRecordStore, workflow: ApprovalWorkflow, clock: _Clock
) -> None:
    approval_id = _request(store, workflow, ("High", 5000.0))

    assert workflow.escalate_overdue(T0 + timedelta(days=2)) == []

    first_sweep = T0 + timedelta(days=4)
    assert workflow.escalate_overdue(first_sweep) == [approval_id]
    request = store.require(InvoiceApprovalRequest, approval_id)
    assert request.status == "Pending"
    assert _level_name(store, request) == "Finance Admin"
    assert request.assigned_role == "Finance Admin"
    assert request.required_by == first_sweep + timedelta(days=5)
    assert request.escalation_count == 1
    assert [h.to_status for h in workflow.history(approval_id)] == ["Pending", "Escalated", "Pending"]

    assert workflow.escalate_overdue(first_sweep) == []

    final_sweep = first_sweep + timedelta(days=6)
    assert workflow.escalate_overdue(final_sweep) == [approval_id]
    request = store.require(InvoiceApprovalRequest, approval_id)
    assert request.status == "Escalated"
    assert request.escalation_count == 2
    assert workflow.history(approval_id)[-1].comment == TERMINAL_ESCALATION_COMMENT

    assert workflow.escalate_overdue(final_sweep + timedelta(days=30)) == []


def test_escalated_request_can_still_be_decided(
    store: SqliteRecordStore, workflow: ApprovalWorkflow, clock: _Clock
) -> None:
    approval_id = _request(store, workflow, ("High", 25000.0))
    workflow.escalate(approval_id, actor="system")
    clock.now = T0 + timedelta(hours=1)

    decided = workflow.decide(approval_id, "approve", actor="cfo", comments="Reviewed with vendor")
    assert decided.status == "Approved"
    assert decided.decided_by == "cfo"
    assert decided.decided_at == clock.now
    assert store.require(Invoice, decided.invoice_id).current_status == "Approved"


def test_reject_records_reason(store: SqliteRecordStore, workflow: ApprovalWorkflow) -> None:
    approval_id = _request(store, workflow, ("Medium", 10.0))
    decided = workflow.decide(approval_id, "Reject", actor="clerk", rejection_reason="Duplicate billing")

    assert decided.status == "Rejected"
    assert decided.rejection_reason == "Duplicate billing"
    assert workflow.history(approval_id)[-1].comment == "Rejected (reason: Duplicate billing)"


def test_decisions_on_closed_requests_are_refused(store: SqliteRecordStore, workflow: ApprovalWorkflow) -> None:
    approval_id = _request(store, workflow, ("Medium", 10.0))
    workflow.decide(approval_id, "Approve", actor="clerk")

    with pytest.raises(ApprovalError) as info:
        workflow.decide(approval_id, "Reject", actor="clerk")
    assert info.value.code == "invalid_state"
    with pytest.raises(ApprovalError):
        workflow.escalate(approval_id)


def test_unknown_decision_is_refused(store: SqliteRecordStore, workflow: ApprovalWorkflow) -> None:
    approval_id = _request(store, workflow, ("Medium", 10.0))
    with pytest.raises(ApprovalError) as info:
        workflow.decide(approval_id, "maybe", actor="clerk")
    assert info.value.code == "invalid_decision"


def test_decide_escalate_moves_up_one_level(store: SqliteRecordStore, workflow: ApprovalWorkflow) -> None:
    approval_id = _request(store, workflow, ("Medium", 10.0))
    request = workflow.decide(approval_id, "Escalate", actor="clerk", comments="Needs sign-off")

    assert request.status == "Pending"
    assert _level_name(store, request) == "Department Head"
    assert workflow.history(approval_id)[1].comment == "Needs sign-off"


def test_load_approval_levels(tmp_path: Path) -> None:
    path = tmp_path / "levels.json"
    path.write_text(
        json.dumps(
            {
                "levels": [
                    {
                        "level_name": "Manager",
                        "sequence": 1,
                        "min_amount": 0,
                        "required_role": "Manager",
                        "escalation_days": 2,
                    }
                ]
            }
        ),
        encoding="utf-8",
    )
    [level] = load_approval_levels(path)
    assert level["level_name"] == "Manager"
    assert level["max_amount"] is None

    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        load_approval_levels(path)


def test_escalate_does_not_overwrite_a_concurrent_decision(
    store: SqliteRecordStore, workflow: ApprovalWorkflow, monkeypatch: pytest.MonkeyPatch
) -> None:
    approval_id = _request(store, workflow, ("Medium", 10.0))
    original_require = store.require

    def _require_then_decide(model, record_id, *, fresh=False):
        record = original_require(model, record_id, fresh=fresh)
        if model is InvoiceApprovalRequest:
            monkeypatch.setattr(store, "require", original_require)
            workflow.decide(approval_id, "Approve", actor="controller")
        return record

    monkeypatch.setattr(store, "require", _require_then_decide)
    with pytest.raises(ApprovalError) as info:
        workflow.escalate(approval_id)

    assert info.value.code == "invalid_state"
    request = store.require(InvoiceApprovalRequest, approval_id)
    assert request.status == "Approved"
    assert request.escalation_count == 0
    assert [h.to_status for h in workflow.history(approval_id)] == ["Pending", "Approved"]
