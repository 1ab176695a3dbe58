import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from report_ingest.engine.errors import (
    FatalSinkError,
    RetryExhausted,
    TransientDownstreamError,
)
from report_ingest.extraction.interfaces import StructuredRecord
from report_ingest.shared.logging import get_logger, log_event
from report_ingest.sinks.interfaces import Sink


logger = get_logger("report_ingest.retry")


@dataclass
class RetryPolicy:
    max_attempts: int = 4
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    transient_signatures: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.backoff_multiplier < 1:
            raise ValueError("delays must be non-negative and non-decreasing")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after ``attempt`` failed (1-based)."""
        return self.initial_delay * (self.backoff_multiplier ** (attempt - 1))

    def is_transient(self, exc: BaseException) -> bool:
        if isinstance(exc, TransientDownstreamError):
            return True
        text = str(exc)
        return any(signature in text for signature in self.transient_signatures)


class RetryingSink:
    def __init__(
        self,
        sink: Sink,
        policy: RetryPolicy,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._sink = sink
        self._policy = policy
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def ensure_ready(self) -> None:
        self._sink.ensure_ready()

    def write(self, record: StructuredRecord) -> int:
        """Write ``record``; returns the number of attempts it took.

        Raises ``FatalSinkError`` on the first non-transient failure and
        ``RetryExhausted`` once ``max_attempts`` transient failures happened.
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self._policy.max_attempts + 1):
            try:
                self._sink.write(record)
                return attempt
            except Exception as exc:
                if not self._policy.is_transient(exc):
                    raise FatalSinkError(exc) from exc
                last_error = exc
                if attempt == self._policy.max_attempts:
                    break
                delay = self._policy.delay_for(attempt)
                log_event(
                    logger,
                    "sink.retry",
                    record_id=record.record_id,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(exc),
                )
                self._sleep(delay)
        raise RetryExhausted(last_error, self._policy.max_attempts) from last_error
