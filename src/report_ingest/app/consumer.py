import json
import os
import time
from typing import Any, Callable, Dict, Optional

from report_ingest.engine.batch import BatchEngine, RunResult
from report_ingest.ledger.models import JobStatus
from report_ingest.scheduling.interfaces import Scheduler
from report_ingest.shared.logging import get_logger, log_event


logger = get_logger("report_ingest.consumer")


def _message_body(message) -> str:
    body = getattr(message, "body", None)
    if body is None:
        return str(message)
    if isinstance(body, bytes):
        return body.decode("utf-8")
    if isinstance(body, str):
        return body
    return b"".join(body).decode("utf-8")


def handle_continuation(
    engine: BatchEngine,
    scheduler: Scheduler,
    payload: Dict[str, Any],
    handle_id: Optional[str] = None,
) -> RunResult:
    job_id = payload.get("job_id")
    if job_id != engine.job_id:
        raise ValueError(f"continuation for unknown job: {job_id}")
    acknowledge = getattr(scheduler, "acknowledge", None)
    if acknowledge is not None:
        acknowledge(job_id, handle_id)
    log_event(logger, "continuation.fired", job_id=job_id, handle_id=handle_id)
    return engine.run()


def process_message(
    receiver,
    message,
    engine: BatchEngine,
    scheduler: Scheduler,
    max_delivery: int,
    backoff_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[RunResult]:
    """Run one continuation message and settle it on the receiver."""
    try:
        payload = json.loads(_message_body(message))
        handle_id = getattr(message, "sequence_number", None)
        result = handle_continuation(
            engine,
            scheduler,
            payload,
            None if handle_id is None else str(handle_id),
        )
        receiver.complete_message(message)
    except Exception as exc:
        logger.exception("continuation.handling_failed")
        delivery = getattr(message, "delivery_count", 0)
        if delivery >= max_delivery:
            receiver.dead_letter_message(
                message,
                reason="MAX_DELIVERY_EXCEEDED",
                error_description=str(exc),
            )
        else:
            receiver.abandon_message(message)
            sleep(backoff_seconds)
        return None
    if result.status == JobStatus.FAILED:
        logger.error("continuation.run_failed", extra={"status_message": result.status_message})
    return result


def drain(
    receiver,
    engine: BatchEngine,
    scheduler: Scheduler,
    max_delivery: int,
    backoff_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    messages = receiver.receive_messages(max_message_count=1, max_wait_time=5)
    if not messages:
        sleep(1)
        return 0
    for message in messages:
        process_message(receiver, message, engine, scheduler, max_delivery, backoff_seconds, sleep=sleep)
    return len(messages)


def consume_forever(engine: BatchEngine, scheduler: Scheduler, connection_string: str, queue_name: str) -> None:
    try:
        from azure.servicebus import ServiceBusClient
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("azure-servicebus dependency is not installed") from exc

    max_delivery = int(os.getenv("SERVICEBUS_MAX_DELIVERY", "5"))
    backoff_seconds = float(os.getenv("SERVICEBUS_RETRY_BACKOFF", "2"))

    with ServiceBusClient.from_connection_string(connection_string) as client:
        receiver = client.get_queue_receiver(queue_name=queue_name)
        with receiver:
            while True:
                drain(receiver, engine, scheduler, max_delivery, backoff_seconds)
