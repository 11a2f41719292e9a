from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest

from reconciler import main as cli
from reconciler.config import Settings
from reconciler.extraction_service import ExtractionGateway
from reconciler.pipeline import PipelineServices, build_services
from reconciler.retry_utils import RetryPolicy
from schemas.entities import ApprovalLevel, Document, InvoiceApprovalRequest, utc_now

from conftest import CONTRACT_TEXT, INVOICE_TEXT, TODAY, ScriptedClient, read_upload


@pytest.fixture
def built(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> list[PipelineServices]:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "data" / "reconciler.db"))
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "data" / "uploads"))
    monkeypatch.setenv("DEAD_LETTER_PATH", str(tmp_path / "logs" / "dead_letter.jsonl"))
    monkeypatch.setenv("METRICS_PATH", str(tmp_path / "logs" / "metrics.jsonl"))
    monkeypatch.setenv("CACHE_TTL_SECONDS", "0")
    monkeypatch.delenv("APPROVAL_LEVELS_PATH", raising=False)

    client = ScriptedClient()
    created: list[PipelineServices] = []

    def _build(settings: Settings, **options: Any) -> PipelineServices:
        gateway = ExtractionGateway(
            client,
            retry_policy=RetryPolicy(max_attempts=1, base_delay_seconds=0.0),
            today_fn=lambda: TODAY,
        )
        services = build_services(settings, gateway=gateway, text_extractor=read_upload, **options)
        created.append(services)
        return services

    monkeypatch.setattr(cli, "build_services", _build)
    return created


def test_ingest_contract_and_invoice(tmp_path: Path, built: list[PipelineServices]) -> None:
    contract = tmp_path / "msa.pdf"
    contract.write_text(CONTRACT_TEXT, encoding="utf-8")
    invoice = tmp_path / "invoice.pdf"
    invoice.write_text(INVOICE_TEXT, encoding="utf-8")

    assert cli.main(["ingest", str(contract), "--type", "contract"]) == 0
    assert cli.main(["ingest", str(invoice), "--type", "invoice"]) == 0

    store = built[-1].store
    assert [doc.stage for doc in store.find(Document)] == ["completed", "completed"]
    assert store.count(InvoiceApprovalRequest) == 1


def test_ingest_reports_failure(tmp_path: Path, built: list[PipelineServices]) -> None:
    contract = tmp_path / "msa.pdf"
    contract.write_text(CONTRACT_TEXT, encoding="utf-8")

    assert cli.main(["ingest", str(contract), "--type", "invoice"]) == 1


def test_seed_levels_from_file(tmp_path: Path, built: list[PipelineServices]) -> None:
    levels = tmp_path / "levels.json"
    levels.write_text(
        json.dumps(
            [
                {"level_name": "Manager", "sequence": 1, "min_amount": 0, "required_role": "Manager", "escalation_days": 2},
                {"level_name": "Director", "sequence": 2, "min_amount": 5000, "required_role": "Director", "escalation_days": 4},
            ]
        ),
        encoding="utf-8",
    )

    assert cli.main(["seed-levels", "--levels-path", str(levels)]) == 0
    assert cli.main(["seed-levels", "--levels-path", str(levels)]) == 0
    names = sorted(level.level_name for level in built[-1].store.find(ApprovalLevel))
    assert names == ["Director", "Manager"]


def test_worker_once_drains_queue(tmp_path: Path, built: list[PipelineServices]) -> None:
    settings = Settings.from_env()
    services = cli.build_services(settings, start_worker=False)
    services.pipeline.upload("msa.pdf", CONTRACT_TEXT.encode("utf-8"), "contract")
    assert services.queue.pending_count() == 1

    assert cli.main(["worker", "--once"]) == 0
    assert services.queue.pending_count() == 0


def test_sweep_once_escalates_overdue(tmp_path: Path, built: list[PipelineServices]) -> None:
    contract = tmp_path / "msa.pdf"
    contract.write_text(CONTRACT_TEXT, encoding="utf-8")
    invoice = tmp_path / "invoice.pdf"
    invoice.write_text(INVOICE_TEXT, encoding="utf-8")
    cli.main(["ingest", str(contract), "--type", "contract"])
    cli.main(["ingest", str(invoice), "--type", "invoice"])

    store = built[-1].store
    request = store.find(InvoiceApprovalRequest)[0]
    store.update(request.model_copy(update={"required_by": utc_now() - timedelta(hours=1)}))

    assert cli.main(["sweep-approvals", "--once"]) == 0
    assert built[-1].store.require(InvoiceApprovalRequest, request.id).escalation_count == 1


def test_replay_command(tmp_path: Path, built: list[PipelineServices]) -> None:
    contract = tmp_path / "msa.pdf"
    contract.write_text(CONTRACT_TEXT, encoding="utf-8")
    cli.main(["ingest", str(contract), "--type", "invoice"])
    audit = tmp_path / "audit.jsonl"

    assert cli.main(["replay", "--audit-path", str(audit)]) == 0
    [entry] = [json.loads(line) for line in audit.read_text(encoding="utf-8").splitlines()]
    assert entry["outcome"] == "queued_for_replay"
    document = built[-1].store.find(Document)[0]
    assert document.stage == "uploaded"


def test_command_is_required() -> None:
    with pytest.raises(SystemExit):
        cli.main([])
