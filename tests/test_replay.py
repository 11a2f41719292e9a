from __future__ import annotations

import json
from pathlib import Path

import pytest

from reconciler.dead_letter import DeadLetterStore
from reconciler.pipeline import PipelineServices
from reconciler.replay import replay_failures
from reconciler.validation import ValidationRunError
from schemas.entities import Document

from conftest import CONTRACT_TEXT, INVOICE_TEXT, ScriptedClient


def test_replay_requeues_failed_documents_and_writes_audit(
    tmp_path: Path, services: PipelineServices, client: ScriptedClient
) -> None:
    client.extractions[INVOICE_TEXT] = "model refused"
    failed = services.pipeline.upload("inv.pdf", INVOICE_TEXT.encode("utf-8"), "invoice")
    services.worker.run_once()
    assert services.store.require(Document, failed.id).stage == "error"

    mismatch = services.pipeline.upload("msa.pdf", CONTRACT_TEXT.encode("utf-8"), "invoice")
    services.worker.run_once()
    assert services.store.require(Document, mismatch.id).stage == "error"
    services.store.update(
        services.store.require(Document, mismatch.id).model_copy(update={"stage": "completed"})
    )

    DeadLetterStore(services.settings.dead_letter_path).write_failure({"document_id": "ghost", "status": "FAILED"})
    DeadLetterStore(services.settings.dead_letter_path).write_failure(
        {"document_id": failed.id, "status": "REVIEW_REQUIRED"}
    )

    audit_path = tmp_path / "audit.jsonl"
    summary = replay_failures(
        pipeline=services.pipeline,
        store=services.store,
        dead_letter_path=services.settings.dead_letter_path,
        audit_path=audit_path,
    )

    assert summary == {"queued": 1, "skipped_processed": 1, "skipped_invalid": 1}
    assert services.store.require(Document, failed.id).stage == "uploaded"

    payloads = [json.loads(line) for line in audit_path.read_text(encoding="utf-8").splitlines()]
    outcomes = sorted(p["outcome"] for p in payloads)
    assert outcomes == ["queued_for_replay", "skipped_invalid", "skipped_processed"]


def test_replay_deduplicates_repeated_failures(tmp_path: Path, services: PipelineServices) -> None:
    document = services.pipeline.upload("msa.pdf", CONTRACT_TEXT.encode("utf-8"), "invoice")
    services.worker.run_once()
    services.pipeline.submit(document.id)
    services.worker.run_once()
    assert len(DeadLetterStore(services.settings.dead_letter_path).list_failures(status="FAILED")) == 2

    summary = replay_failures(
        pipeline=services.pipeline,
        store=services.store,
        dead_letter_path=services.settings.dead_letter_path,
        audit_path=tmp_path / "audit.jsonl",
    )
    assert summary["queued"] == 1
    assert services.queue.pending_count() == 1


def test_replay_validation_errors_by_stage(
    tmp_path: Path, services: PipelineServices, monkeypatch: pytest.MonkeyPatch
) -> None:
    services.pipeline.upload("msa.pdf", CONTRACT_TEXT.encode("utf-8"), "contract")
    services.worker.run_once()

    def _fail(invoice_id: str, actor: str = "system") -> str:
        raise ValidationRunError("database is locked")

    monkeypatch.setattr(services.validator, "run_validation", _fail)
    document = services.pipeline.upload("inv.pdf", INVOICE_TEXT.encode("utf-8"), "invoice")
    services.worker.run_once()
    monkeypatch.undo()

    skipped = replay_failures(
        pipeline=services.pipeline,
        store=services.store,
        dead_letter_path=services.settings.dead_letter_path,
        audit_path=tmp_path / "audit.jsonl",
    )
    assert skipped["queued"] == 0
    assert skipped["skipped_processed"] == 1

    summary = replay_failures(
        pipeline=services.pipeline,
        store=services.store,
        stage="validation_error",
        dead_letter_path=services.settings.dead_letter_path,
        audit_path=tmp_path / "audit.jsonl",
    )
    assert summary["queued"] == 1
    services.worker.run_once()
    assert services.store.require(Document, document.id).stage == "completed"
