import argparse
import json
import sys
import time
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict

from report_ingest.config.settings import EngineSettings
from report_ingest.engine.batch import RunResult
from report_ingest.ledger.models import JobStatus
from report_ingest.scheduling.memory import MemoryScheduler
from report_ingest.shared.logging import get_logger, log_event

from .consumer import consume_forever
from .stores import build_ledgers, build_runtime
from .sweepers import LedgerRetentionSweeper


logger = get_logger("report_ingest.runner")


def _emit(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _exit_code(result: RunResult) -> int:
    return 1 if result.status == JobStatus.FAILED else 0


def start(settings: EngineSettings, force: bool) -> int:
    engine, _ = build_runtime(settings)
    result = engine.start_fresh(force=force)
    _emit(asdict(result))
    return _exit_code(result)


def resume(settings: EngineSettings) -> int:
    engine, _ = build_runtime(settings)
    result = engine.run()
    _emit(asdict(result))
    return _exit_code(result)


def status(settings: EngineSettings) -> int:
    engine, scheduler = build_runtime(settings)
    state = engine.status()
    payload = state.to_dict()
    payload["pending_continuations"] = [asdict(handle) for handle in scheduler.list_pending(settings.job_id)]
    _emit(payload)
    return 0


def sweep(settings: EngineSettings) -> int:
    ledger, _ = build_ledgers(settings)
    removed = LedgerRetentionSweeper(ledger, settings.ledger_retention_days).sweep()
    _emit({"removed": removed})
    return 0


def listen(settings: EngineSettings) -> int:
    if settings.scheduler_backend != "servicebus":
        raise RuntimeError("listen requires INGEST_SCHEDULER_BACKEND=servicebus")
    engine, scheduler = build_runtime(settings)
    consume_forever(engine, scheduler, settings.service_bus_connection, settings.continuation_queue)
    return 0


def loop(settings: EngineSettings, force: bool, sleep=time.sleep) -> int:
    """Fresh run, then fire in-process continuations until none is pending."""
    scheduler = MemoryScheduler()
    engine, _ = build_runtime(settings, scheduler)
    result = engine.start_fresh(force=force)
    while True:
        due_at = scheduler.next_due_at(settings.job_id)
        if due_at is None:
            break
        wait = (due_at - datetime.now(timezone.utc)).total_seconds()
        if wait > 0:
            sleep(wait)
        for handle in scheduler.pop_due(settings.job_id):
            log_event(logger, "continuation.fired", job_id=settings.job_id, handle_id=handle.handle_id)
            result = engine.run()
    _emit(asdict(result))
    return _exit_code(result)


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Checkpointed report ingestion runner")
    sub = parser.add_subparsers(dest="command", required=True)

    start_parser = sub.add_parser("start")
    start_parser.add_argument("--force", action="store_true", help="break a lease held by another run")

    sub.add_parser("resume")
    sub.add_parser("status")
    sub.add_parser("sweep")
    sub.add_parser("listen")

    loop_parser = sub.add_parser("loop")
    loop_parser.add_argument("--force", action="store_true")

    args = parser.parse_args(argv)
    settings = EngineSettings.from_env()

    if args.command == "start":
        code = start(settings, args.force)
    elif args.command == "resume":
        code = resume(settings)
    elif args.command == "status":
        code = status(settings)
    elif args.command == "sweep":
        code = sweep(settings)
    elif args.command == "listen":
        code = listen(settings)
    else:
        code = loop(settings, args.force)
    sys.exit(code)


if __name__ == "__main__":
    main()
