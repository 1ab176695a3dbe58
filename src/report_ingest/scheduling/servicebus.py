import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from report_ingest.ledger.interfaces import KeyValueStore
from report_ingest.shared.logging import get_logger, log_event

from .interfaces import ContinuationHandle, Scheduler


logger = get_logger("report_ingest.scheduling")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _default_client_factory(connection_string: str) -> Any:
    try:
        from azure.servicebus import ServiceBusClient
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("azure-servicebus dependency is not installed") from exc
    return ServiceBusClient.from_connection_string(connection_string)


def _message(body: dict) -> Any:
    from azure.servicebus import ServiceBusMessage

    return ServiceBusMessage(json.dumps(body), content_type="application/json")


class ServiceBusScheduler(Scheduler):
    """One-shot continuations delivered as scheduled Service Bus messages.

    Service Bus cannot list scheduled messages by job, so every sequence
    number is registered in ``registry`` until it is cancelled or consumed.
    """

    def __init__(
        self,
        connection_string: str,
        queue_name: str,
        registry: KeyValueStore,
        clock: Callable[[], datetime] = _now,
        client_factory: Callable[[str], Any] = _default_client_factory,
        message_factory: Callable[[dict], Any] = _message,
    ) -> None:
        self._connection_string = connection_string
        self._queue_name = queue_name
        self._registry = registry
        self._clock = clock
        self._client_factory = client_factory
        self._message_factory = message_factory

    def _scope(self, job_id: str) -> str:
        return f"{job_id}.continuations"

    def schedule_once(self, job_id: str, delay: timedelta) -> ContinuationHandle:
        now = self._clock()
        fire_at = now + delay
        message = self._message_factory({"job_id": job_id, "fire_at": fire_at.isoformat()})
        with self._client_factory(self._connection_string) as client:
            sender = client.get_queue_sender(queue_name=self._queue_name)
            with sender:
                sequence_numbers = sender.schedule_messages(message, fire_at)
        handle = ContinuationHandle(
            job_id=job_id,
            handle_id=str(sequence_numbers[0]),
            fire_at=fire_at.isoformat(),
            created_at=now.isoformat(),
        )
        self._registry.set(
            self._scope(job_id),
            handle.handle_id,
            {"fire_at": handle.fire_at, "created_at": handle.created_at},
        )
        log_event(logger, "continuation.scheduled", job_id=job_id, handle_id=handle.handle_id, fire_at=handle.fire_at)
        return handle

    def cancel_all(self, job_id: str) -> int:
        handles = self._registered(job_id)
        now = self._clock()
        cancellable = [int(h.handle_id) for h in handles if datetime.fromisoformat(h.fire_at) > now]
        if cancellable:
            with self._client_factory(self._connection_string) as client:
                sender = client.get_queue_sender(queue_name=self._queue_name)
                with sender:
                    sender.cancel_scheduled_messages(cancellable)
        for handle in handles:
            self._registry.delete(self._scope(job_id), handle.handle_id)
        if handles:
            log_event(logger, "continuation.cancelled", job_id=job_id, cancelled=len(cancellable), pruned=len(handles))
        return len(cancellable)

    def list_pending(self, job_id: str) -> List[ContinuationHandle]:
        now = self._clock()
        return [h for h in self._registered(job_id) if datetime.fromisoformat(h.fire_at) > now]

    def acknowledge(self, job_id: str, handle_id: Optional[str]) -> None:
        if handle_id:
            self._registry.delete(self._scope(job_id), handle_id)

    def _registered(self, job_id: str) -> List[ContinuationHandle]:
        handles: List[ContinuationHandle] = []
        for key, stored in self._registry.items(self._scope(job_id)):
            handles.append(
                ContinuationHandle(
                    job_id=job_id,
                    handle_id=key,
                    fire_at=stored.value["fire_at"],
                    created_at=stored.value.get("created_at", ""),
                )
            )
        return sorted(handles, key=lambda handle: handle.fire_at)
