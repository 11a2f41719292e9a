from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class DeadLetterStore:
    def __init__(self, file_path: str | Path = "logs/dead_letter.jsonl") -> None:
        self._path = Path(file_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def write_failure(self, payload: dict[str, Any]) -> None:
        event = {
            "recorded_at_utc": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        line = json.dumps(event, ensure_ascii=True, default=str) + "\n"
        with self._lock, self._path.open("a", encoding="utf-8") as fh:
            fh.write(line)

    def list_failures(
        self,
        status: str | None = None,
        *,
        stage: str | None = None,
    ) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        items: list[dict[str, Any]] = []
        for line in self._path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            event = json.loads(line)
            if status and event.get("status") != status:
                continue
            if stage and event.get("stage") != stage:
                continue
            items.append(event)
        return items
