from dataclasses import dataclass, field
import os
from typing import List, Optional


DEFAULT_TRANSIENT_SIGNATURE = "We're sorry, a server error occurred"


def _split(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class EngineSettings:
    job_id: str = "pdf-ingestion"
    hard_limit_seconds: float = 360.0
    safety_buffer_seconds: float = 120.0
    retry_interval_seconds: float = 30.0
    sink_max_attempts: int = 4
    sink_initial_delay_seconds: float = 1.0
    sink_backoff_multiplier: float = 2.0
    transient_signatures: List[str] = field(default_factory=lambda: [DEFAULT_TRANSIENT_SIGNATURE])
    timeout_signature: str = "timed out"
    lease_stale_seconds: float = 900.0
    max_consecutive_item_errors: int = 3
    max_systemic_retries: int = 3
    ledger_retention_days: int = 10
    storage_backend: str = "memory"
    table_connection_string: Optional[str] = None
    state_table: str = "ingestion-state"
    ledger_table: str = "ingestion-ledger"
    source_dir: str = "./inbox"
    source_prefix: str = "pmix-"
    source_suffix: str = ".pdf"
    extractor_url: Optional[str] = None
    extractor_timeout_seconds: float = 90.0
    sink_backend: str = "memory"
    reports_table: str = "reports"
    rows_table: str = "metrics"
    scheduler_backend: str = "memory"
    service_bus_connection: Optional[str] = None
    continuation_queue: str = "ingestion-continuations"
    continuations_table: str = "ingestion-continuations"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            job_id=os.getenv("INGEST_JOB_ID", "pdf-ingestion"),
            hard_limit_seconds=float(os.getenv("INGEST_HARD_LIMIT_SECONDS", "360")),
            safety_buffer_seconds=float(os.getenv("INGEST_SAFETY_BUFFER_SECONDS", "120")),
            retry_interval_seconds=float(os.getenv("INGEST_RETRY_INTERVAL_SECONDS", "30")),
            sink_max_attempts=int(os.getenv("INGEST_SINK_MAX_ATTEMPTS", "4")),
            sink_initial_delay_seconds=float(os.getenv("INGEST_SINK_INITIAL_DELAY_SECONDS", "1.0")),
            sink_backoff_multiplier=float(os.getenv("INGEST_SINK_BACKOFF_MULTIPLIER", "2.0")),
            transient_signatures=_split(
                os.getenv("INGEST_TRANSIENT_SIGNATURES", DEFAULT_TRANSIENT_SIGNATURE)
            ),
            timeout_signature=os.getenv("INGEST_TIMEOUT_SIGNATURE", "timed out"),
            lease_stale_seconds=float(os.getenv("INGEST_LEASE_STALE_SECONDS", "900")),
            max_consecutive_item_errors=int(os.getenv("INGEST_MAX_CONSECUTIVE_ITEM_ERRORS", "3")),
            max_systemic_retries=int(os.getenv("INGEST_MAX_SYSTEMIC_RETRIES", "3")),
            ledger_retention_days=int(os.getenv("INGEST_LEDGER_RETENTION_DAYS", "10")),
            storage_backend=os.getenv("INGEST_STORAGE_BACKEND", "memory"),
            table_connection_string=os.getenv("INGEST_TABLE_CONNECTION"),
            state_table=os.getenv("INGEST_STATE_TABLE", "ingestion-state"),
            ledger_table=os.getenv("INGEST_LEDGER_TABLE", "ingestion-ledger"),
            source_dir=os.getenv("INGEST_SOURCE_DIR", "./inbox"),
            source_prefix=os.getenv("INGEST_SOURCE_PREFIX", "pmix-"),
            source_suffix=os.getenv("INGEST_SOURCE_SUFFIX", ".pdf"),
            extractor_url=os.getenv("INGEST_EXTRACTOR_URL"),
            extractor_timeout_seconds=float(os.getenv("INGEST_EXTRACTOR_TIMEOUT_SECONDS", "90")),
            sink_backend=os.getenv("INGEST_SINK_BACKEND", "memory"),
            reports_table=os.getenv("INGEST_REPORTS_TABLE", "reports"),
            rows_table=os.getenv("INGEST_ROWS_TABLE", "metrics"),
            scheduler_backend=os.getenv("INGEST_SCHEDULER_BACKEND", "memory"),
            service_bus_connection=os.getenv("INGEST_SERVICEBUS_CONNECTION"),
            continuation_queue=os.getenv("INGEST_CONTINUATION_QUEUE", "ingestion-continuations"),
            continuations_table=os.getenv("INGEST_CONTINUATIONS_TABLE", "ingestion-continuations"),
        )

    def validate(self) -> None:
        if self.safety_buffer_seconds >= self.hard_limit_seconds:
            raise RuntimeError("INGEST_SAFETY_BUFFER_SECONDS must be below INGEST_HARD_LIMIT_SECONDS")
        if self.sink_max_attempts < 1:
            raise RuntimeError("INGEST_SINK_MAX_ATTEMPTS must be at least 1")
        if self.max_consecutive_item_errors < 1:
            raise RuntimeError("INGEST_MAX_CONSECUTIVE_ITEM_ERRORS must be at least 1")
        if self.max_systemic_retries < 0:
            raise RuntimeError("INGEST_MAX_SYSTEMIC_RETRIES must not be negative")
        uses_tables = "table" in {self.storage_backend, self.sink_backend}
        if uses_tables and not self.table_connection_string:
            raise RuntimeError("INGEST_TABLE_CONNECTION is required for table storage")
        if self.scheduler_backend == "servicebus" and not self.service_bus_connection:
            raise RuntimeError("INGEST_SERVICEBUS_CONNECTION is required for the servicebus scheduler")
