from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from reconciler.dead_letter import DeadLetterStore
from reconciler.pipeline import DocumentPipeline
from reconciler.store import RecordStore
from schemas.entities import Document


def replay_failures(
    *,
    pipeline: DocumentPipeline,
    store: RecordStore,
    stage: str = "error",
    dead_letter_path: str | Path = "logs/dead_letter.jsonl",
    audit_path: str | Path = "logs/replay_audit.jsonl",
) -> dict[str, int]:
    """Re-submit dead-lettered documents that are still sitting at ``stage``."""
    dead = DeadLetterStore(file_path=dead_letter_path)
    audit_file = Path(audit_path)
    audit_file.parent.mkdir(parents=True, exist_ok=True)

    entries = dead.list_failures(status="FAILED")
    summary = {"queued": 0, "skipped_processed": 0, "skipped_invalid": 0}
    seen: set[str] = set()

    with audit_file.open("a", encoding="utf-8") as fh:
        for item in entries:
            document_id = item.get("document_id")
            if document_id in seen:
                continue
            document = store.get(Document, document_id) if document_id else None
            if document is None:
                summary["skipped_invalid"] += 1
                _write_audit(
                    fh,
                    document_id=document_id,
                    outcome="skipped_invalid",
                    stage=stage,
                    reason="unknown document_id",
                )
                continue
            seen.add(document.id)

            if document.stage != stage:
                summary["skipped_processed"] += 1
                _write_audit(
                    fh,
                    document_id=document.id,
                    outcome="skipped_processed",
                    stage=stage,
                    reason=f"document now at {document.stage}",
                )
                continue

            job_id = pipeline.submit(document.id)
            summary["queued"] += 1
            _write_audit(
                fh,
                document_id=document.id,
                outcome="queued_for_replay",
                stage=stage,
                reason=f"job {job_id}",
            )

    return summary


def _write_audit(
    fh: Any,
    *,
    document_id: str | None,
    outcome: str,
    stage: str,
    reason: str,
) -> None:
    event = {
        "recorded_at_utc": datetime.now(timezone.utc).isoformat(),
        "document_id": document_id,
        "stage": stage,
        "outcome": outcome,
        "reason": reason,
    }
    fh.write(json.dumps(event, ensure_ascii=True) + "\n")
