from __future__ import annotations

import json
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class JsonlMetricsSink:
    def __init__(self, path: str | Path = "logs/metrics.jsonl") -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def emit(self, event: dict[str, Any]) -> None:
        payload = {
            "recorded_at_utc": datetime.now(timezone.utc).isoformat(),
            **event,
        }
        with self._lock, self._path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(payload, ensure_ascii=True) + "\n")


@dataclass
class MetricsCollector:
    sink: JsonlMetricsSink | None = None
    counters: Counter[str] = field(default_factory=Counter)
    latencies_ms: dict[str, list[int]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def increment(self, name: str, value: int = 1, *, stage: str | None = None) -> None:
        with self._lock:
            self.counters[name] += value
        if self.sink is not None:
            event: dict[str, Any] = {"metric": name, "value": value}
            if stage is not None:
                event["stage"] = stage
            self.sink.emit(event)

    def observe_latency(self, stage: str, value_ms: int) -> None:
        with self._lock:
            self.latencies_ms.setdefault(stage, []).append(value_ms)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            p95_by_stage: dict[str, int] = {}
            for stage, values in self.latencies_ms.items():
                ordered = sorted(values)
                p95_by_stage[stage] = ordered[int(0.95 * (len(ordered) - 1))]
            return {
                "uploaded_total": self.counters.get("documents_uploaded_total", 0),
                "completed_total": self.counters.get("documents_completed_total", 0),
                "failed_total": self.counters.get("documents_failed_total", 0),
                "validation_error_total": self.counters.get(
                    "documents_validation_error_total", 0
                ),
                "review_total": self.counters.get("extractions_review_total", 0),
                "escalated_total": self.counters.get("approvals_escalated_total", 0),
                "stage_latency_p95_ms": p95_by_stage,
            }
