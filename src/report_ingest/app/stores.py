from typing import Any, Optional

from report_ingest.config.settings import EngineSettings
from report_ingest.engine.batch import BatchEngine, EngineConfig
from report_ingest.engine.retry import RetryingSink, RetryPolicy
from report_ingest.extraction.http_extractor import HttpExtractor
from report_ingest.extraction.interfaces import Extractor
from report_ingest.ledger.interfaces import KeyValueStore
from report_ingest.ledger.ledger import JobStateStore, ProcessingLedger
from report_ingest.ledger.memory_store import MemoryKeyValueStore
from report_ingest.scheduling.interfaces import Scheduler
from report_ingest.scheduling.memory import MemoryScheduler
from report_ingest.sinks.interfaces import Sink
from report_ingest.sinks.memory import MemorySink
from report_ingest.sources.directory import DirectoryWorkSource
from report_ingest.sources.interfaces import WorkSource


def _table_service(settings: EngineSettings) -> Any:
    if not settings.table_connection_string:
        raise RuntimeError("INGEST_TABLE_CONNECTION is required for table storage")

    from azure.data.tables import TableServiceClient

    return TableServiceClient.from_connection_string(settings.table_connection_string)


def build_kv_store(settings: EngineSettings, table_name: Optional[str] = None) -> KeyValueStore:
    if settings.storage_backend == "memory":
        return MemoryKeyValueStore()

    if settings.storage_backend != "table":
        raise RuntimeError(f"Unsupported storage backend: {settings.storage_backend}")

    from report_ingest.ledger.table_storage import TableKeyValueStore

    return TableKeyValueStore.from_service(_table_service(settings), table_name or settings.state_table)


def build_ledgers(settings: EngineSettings, kv_store: Optional[KeyValueStore] = None):
    """Return ``(ProcessingLedger, JobStateStore)``; both share ``kv_store`` when given."""
    if kv_store is not None:
        state_kv = ledger_kv = kv_store
    elif settings.storage_backend == "table":
        state_kv = build_kv_store(settings, settings.state_table)
        ledger_kv = build_kv_store(settings, settings.ledger_table)
    else:
        state_kv = ledger_kv = build_kv_store(settings)
    return (
        ProcessingLedger(ledger_kv, settings.job_id),
        JobStateStore(state_kv, settings.job_id),
    )


def build_source(settings: EngineSettings) -> WorkSource:
    return DirectoryWorkSource(settings.source_dir, settings.source_prefix, settings.source_suffix)


def build_extractor(settings: EngineSettings) -> Extractor:
    if not settings.extractor_url:
        raise RuntimeError("INGEST_EXTRACTOR_URL is required")
    return HttpExtractor(settings.extractor_url, timeout=settings.extractor_timeout_seconds)


def build_sink(settings: EngineSettings) -> Sink:
    if settings.sink_backend == "memory":
        return MemorySink()

    if settings.sink_backend != "table":
        raise RuntimeError(f"Unsupported sink backend: {settings.sink_backend}")

    from report_ingest.sinks.table_sink import TableSink

    return TableSink(_table_service(settings), settings.reports_table, settings.rows_table)


def build_scheduler(settings: EngineSettings, kv_store: Optional[KeyValueStore] = None) -> Scheduler:
    if settings.scheduler_backend == "memory":
        return MemoryScheduler()

    if settings.scheduler_backend != "servicebus":
        raise RuntimeError(f"Unsupported scheduler backend: {settings.scheduler_backend}")

    if not settings.service_bus_connection:
        raise RuntimeError("INGEST_SERVICEBUS_CONNECTION is required for the servicebus scheduler")

    from report_ingest.scheduling.servicebus import ServiceBusScheduler

    registry = kv_store
    if registry is None or settings.storage_backend == "table":
        registry = build_kv_store(settings, settings.continuations_table)
    return ServiceBusScheduler(settings.service_bus_connection, settings.continuation_queue, registry)


def engine_config(settings: EngineSettings) -> EngineConfig:
    return EngineConfig(
        hard_limit_seconds=settings.hard_limit_seconds,
        safety_buffer_seconds=settings.safety_buffer_seconds,
        retry_interval_seconds=settings.retry_interval_seconds,
        timeout_signature=settings.timeout_signature,
        lease_stale_seconds=settings.lease_stale_seconds,
        max_consecutive_item_errors=settings.max_consecutive_item_errors,
        max_systemic_retries=settings.max_systemic_retries,
    )


def retry_policy(settings: EngineSettings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.sink_max_attempts,
        initial_delay=settings.sink_initial_delay_seconds,
        backoff_multiplier=settings.sink_backoff_multiplier,
        transient_signatures=list(settings.transient_signatures),
    )


def build_engine(
    settings: EngineSettings,
    kv_store: Optional[KeyValueStore] = None,
    source: Optional[WorkSource] = None,
    extractor: Optional[Extractor] = None,
    sink: Optional[Sink] = None,
    scheduler: Optional[Scheduler] = None,
) -> BatchEngine:
    settings.validate()
    ledger, states = build_ledgers(settings, kv_store)
    return BatchEngine(
        job_id=settings.job_id,
        source=source or build_source(settings),
        extractor=extractor or build_extractor(settings),
        sink=RetryingSink(sink or build_sink(settings), retry_policy(settings)),
        ledger=ledger,
        states=states,
        scheduler=scheduler or build_scheduler(settings, kv_store),
        config=engine_config(settings),
    )


def build_runtime(settings: EngineSettings, scheduler: Optional[Scheduler] = None):
    """Return ``(BatchEngine, Scheduler)`` sharing one in-memory store when storage is memory."""
    kv_store = build_kv_store(settings) if settings.storage_backend == "memory" else None
    scheduler = scheduler or build_scheduler(settings, kv_store)
    return build_engine(settings, kv_store=kv_store, scheduler=scheduler), scheduler
