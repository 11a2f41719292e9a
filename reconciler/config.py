from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _parse_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


def _parse_float(name: str, default: float, *, low: float, high: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value < low or (high is not None and value > high):
        bound = f"[{low}, {high}]" if high is not None else f">= {low}"
        raise ValueError(f"{name} must be within {bound}")
    return value


def _optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


@dataclass(frozen=True)
class Settings:
    database_path: str = "data/reconciler.db"
    upload_dir: str = "data/uploads"
    max_upload_bytes: int = 50 * 1024 * 1024
    allowed_extensions: tuple[str, ...] = (".pdf", ".doc", ".docx")
    log_level: str = "INFO"
    extraction_provider: str = "anthropic"
    extraction_model: str = "auto"
    review_confidence_threshold: float = 0.7
    price_variance_high_threshold: float = 1000.0
    worker_count: int = 2
    job_lease_seconds: int = 600
    cache_ttl_seconds: int = 300
    approval_levels_path: str | None = None
    dead_letter_path: str = "logs/dead_letter.jsonl"
    metrics_path: str = "logs/metrics.jsonl"
    sweep_interval_seconds: int = 3600

    @classmethod
    def from_env(cls) -> "Settings":
        provider = os.getenv("EXTRACTION_PROVIDER", "anthropic").strip().lower()
        if provider not in {"anthropic", "openai", "auto"}:
            raise ValueError("EXTRACTION_PROVIDER must be one of: anthropic, openai, auto")

        ext_env = os.getenv("ALLOWED_EXTENSIONS", ".pdf,.doc,.docx")
        extensions = tuple(
            ext if ext.startswith(".") else f".{ext}"
            for ext in (v.strip().lower() for v in ext_env.split(","))
            if ext
        )
        if not extensions:
            raise ValueError("ALLOWED_EXTENSIONS must contain at least one extension")

        levels_path = _optional("APPROVAL_LEVELS_PATH")
        if levels_path is not None and not Path(levels_path).exists():
            raise ValueError(f"APPROVAL_LEVELS_PATH not found: {levels_path}")

        return cls(
            database_path=os.getenv("DATABASE_PATH", "data/reconciler.db"),
            upload_dir=os.getenv("UPLOAD_DIR", "data/uploads"),
            max_upload_bytes=_parse_int("MAX_UPLOAD_BYTES", 50 * 1024 * 1024, minimum=1),
            allowed_extensions=extensions,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            extraction_provider=provider,
            extraction_model=os.getenv("EXTRACTION_MODEL", "auto"),
            review_confidence_threshold=_parse_float(
                "REVIEW_CONFIDENCE_THRESHOLD", 0.7, low=0.0, high=1.0
            ),
            price_variance_high_threshold=_parse_float(
                "PRICE_VARIANCE_HIGH_THRESHOLD", 1000.0, low=0.0
            ),
            worker_count=_parse_int("WORKER_COUNT", 2, minimum=1),
            job_lease_seconds=_parse_int("JOB_LEASE_SECONDS", 600, minimum=1),
            cache_ttl_seconds=_parse_int("CACHE_TTL_SECONDS", 300),
            approval_levels_path=levels_path,
            dead_letter_path=os.getenv("DEAD_LETTER_PATH", "logs/dead_letter.jsonl"),
            metrics_path=os.getenv("METRICS_PATH", "logs/metrics.jsonl"),
            sweep_interval_seconds=_parse_int("SWEEP_INTERVAL_SECONDS", 3600, minimum=1),
        )


def load_dotenv(path: str | Path = ".env") -> None:
    env_path = Path(path)
    if not env_path.exists():
        return
    for line in env_path.read_text(encoding="utf-8").splitlines():
        entry = line.strip()
        if not entry or entry.startswith("#") or "=" not in entry:
            continue
        key, value = entry.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))
