from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path

from reconciler.approval_workflow import load_approval_levels
from reconciler.config import Settings, load_dotenv
from reconciler.logger import configure_logging
from reconciler.pipeline import build_services
from reconciler.replay import replay_failures

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Contract and invoice reconciliation")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    worker = subparsers.add_parser("worker", help="Drain the pipeline job queue")
    worker.add_argument("--once", action="store_true", help="Exit once the queue is empty")
    worker.add_argument("--poll-interval", type=float, default=2.0)

    sweep = subparsers.add_parser("sweep-approvals", help="Escalate overdue approval requests")
    sweep.add_argument("--interval", type=int, default=None, help="Seconds between sweeps")
    sweep.add_argument("--once", action="store_true")

    seed = subparsers.add_parser("seed-levels", help="Insert missing approval levels")
    seed.add_argument("--levels-path", default=None)

    replay = subparsers.add_parser("replay", help="Re-submit dead-lettered documents")
    replay.add_argument("--stage", default="error", choices=["error", "validation_error"])
    replay.add_argument("--audit-path", default="logs/replay_audit.jsonl")

    ingest = subparsers.add_parser("ingest", help="Upload a local file and process it")
    ingest.add_argument("path")
    ingest.add_argument("--type", dest="document_type", required=True, choices=["contract", "invoice"])
    return parser


def _run_sweep(settings: Settings, *, interval: int | None, once: bool) -> int:
    services = build_services(settings, start_worker=False)
    period = interval or settings.sweep_interval_seconds
    while True:
        escalated = services.approvals.escalate_overdue()
        logger.info("Sweep escalated %d approval request(s)", len(escalated))
        if once:
            return 0
        time.sleep(period)


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    if args.command == "serve":
        from reconciler.api_main import main as serve_main

        serve_main(host=args.host, port=args.port)
        return 0

    if args.command == "sweep-approvals":
        return _run_sweep(settings, interval=args.interval, once=args.once)

    services = build_services(settings, start_worker=False, seed_levels=args.command != "seed-levels")

    if args.command == "worker":
        if args.once:
            handled = services.worker.run_once()
            logger.info("Worker processed %d job(s)", handled)
            services.worker.shutdown()
            return 0
        try:
            services.worker.run_forever(poll_interval=args.poll_interval)
        except KeyboardInterrupt:
            logger.info("Worker interrupted; shutting down")
        finally:
            services.worker.shutdown()
        return 0

    if args.command == "seed-levels":
        levels_path = args.levels_path or settings.approval_levels_path
        levels = load_approval_levels(levels_path) if levels_path else None
        created = services.approvals.seed_levels(levels)
        logger.info("Seeded %d approval level(s)", len(created))
        return 0

    if args.command == "replay":
        summary = replay_failures(
            pipeline=services.pipeline,
            store=services.store,
            stage=args.stage,
            dead_letter_path=settings.dead_letter_path,
            audit_path=args.audit_path,
        )
        logger.info(
            "Replay summary queued=%d skipped_processed=%d skipped_invalid=%d",
            summary["queued"],
            summary["skipped_processed"],
            summary["skipped_invalid"],
        )
        return 0

    if args.command == "ingest":
        path = Path(args.path)
        document = services.pipeline.upload(path.name, path.read_bytes(), args.document_type, uploaded_by="cli")
        services.worker.run_once()
        services.worker.shutdown()
        status = services.pipeline.status(document.id)
        logger.info("Document %s finished at stage %s", document.id, status["stage"])
        return 0 if status["stage"] in {"completed", "validation_error"} else 1
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
