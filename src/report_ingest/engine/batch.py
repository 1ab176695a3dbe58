"""Checkpointed batch ingestion.

Each invocation restores the job's cursor from durable state, walks the work
source in enumeration order and pushes every not-yet-classified item through
extraction and the retrying sink. Before the execution budget runs out the
invocation either finishes the pass or persists its cursor and registers a
single continuation with the scheduler. Nothing survives between invocations
except the job state record and the processing ledger.

State machine::

    IDLE/STARTING -> RUNNING -> WAITING_FOR_CONTINUATION  (budget expired)
                             -> COMPLETED                 (source exhausted)
                             -> RETRY_SCHEDULED           (transient setup error,
                                                           or systemic item errors)
                             -> FAILED                    (fatal setup error,
                                                           ledger unavailable)

A streak of unclassified item errors is retried at most
``max_systemic_retries`` times in a row; after that the streak items are
recorded as FAILED_PARSE and the pass moves on.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from report_ingest.engine.budget import ExecutionBudget
from report_ingest.engine.errors import (
    ErrorDetail,
    ExtractionError,
    ExtractionTimeout,
    FailureClass,
    FatalSetupError,
    FatalSinkError,
    LedgerUnavailable,
    RetryExhausted,
    StateConflict,
    SystemicSetupError,
    error_code,
)
from report_ingest.engine.retry import RetryingSink
from report_ingest.extraction.interfaces import Extractor
from report_ingest.ledger.ledger import JobStateStore, ProcessingLedger
from report_ingest.ledger.models import JobState, JobStatus, Outcome
from report_ingest.scheduling.interfaces import ContinuationHandle, Scheduler
from report_ingest.shared.logging import get_logger, log_event
from report_ingest.sources.interfaces import WorkItem, WorkSource


logger = get_logger("report_ingest.engine")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EngineConfig:
    hard_limit_seconds: float = 360.0
    safety_buffer_seconds: float = 120.0
    retry_interval_seconds: float = 30.0
    timeout_signature: str = "timed out"
    lease_stale_seconds: float = 900.0
    max_consecutive_item_errors: int = 3
    max_systemic_retries: int = 3


@dataclass
class RunResult:
    status: str
    status_message: str = ""
    processed: int = 0
    skipped: int = 0
    failed_parse: int = 0
    timed_out: int = 0
    errors: int = 0
    overlap: bool = False
    superseded: bool = False
    error: Optional[ErrorDetail] = None
    continuation: Optional[ContinuationHandle] = None


class BatchEngine:
    def __init__(
        self,
        job_id: str,
        source: WorkSource,
        extractor: Extractor,
        sink: RetryingSink,
        ledger: ProcessingLedger,
        states: JobStateStore,
        scheduler: Scheduler,
        config: Optional[EngineConfig] = None,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._job_id = job_id
        self._source = source
        self._extractor = extractor
        self._sink = sink
        self._ledger = ledger
        self._states = states
        self._scheduler = scheduler
        self._config = config or EngineConfig()
        self._monotonic = monotonic
        self._clock = clock

    @property
    def job_id(self) -> str:
        return self._job_id

    def status(self) -> JobState:
        return self._states.load()

    def is_running(self) -> bool:
        return self._lease_held(self._states.load())

    def start_fresh(self, force: bool = False) -> RunResult:
        """Clear the ledger and job state, then run a new pass from the beginning."""
        try:
            state = self._states.load()
        except LedgerUnavailable as exc:
            return self._state_unreachable(exc)
        try:
            if not force and self._lease_held(state):
                return self._overlap(state)
            self._cancel_continuations(state)
            cleared = self._ledger.clear()
            state = self._states.reset()
        except StateConflict:
            return self._overlap(self._states.load())
        except LedgerUnavailable as exc:
            return self._abort_unavailable(state, exc, RunResult(status=JobStatus.FAILED))
        log_event(logger, "run.fresh", job_id=self._job_id, ledger_cleared=cleared, forced=force)
        return self._invoke(state)

    def run(self) -> RunResult:
        """Continuation entry point: resume from the persisted cursor."""
        try:
            state = self._states.load()
        except LedgerUnavailable as exc:
            return self._state_unreachable(exc)
        if state.status in {JobStatus.IDLE, JobStatus.COMPLETED}:
            log_event(logger, "run.nothing_to_resume", job_id=self._job_id, status=state.status)
            return RunResult(status=state.status, status_message=state.status_message)
        if self._lease_held(state):
            return self._overlap(state)
        return self._invoke(state)

    def _invoke(self, state: JobState) -> RunResult:
        budget = ExecutionBudget(
            self._config.hard_limit_seconds,
            self._config.safety_buffer_seconds,
            clock=self._monotonic,
        )
        result = RunResult(status=JobStatus.RUNNING, status_message="Running...")
        try:
            state = self._acquire(state)
        except StateConflict:
            return self._overlap(self._states.load())
        except LedgerUnavailable as exc:
            return self._abort_unavailable(state, exc, result)

        try:
            return self._pass(state, budget, result)
        except StateConflict:
            log_event(logger, "run.superseded", job_id=self._job_id)
            result.superseded = True
            return result
        except LedgerUnavailable as exc:
            return self._abort_unavailable(state, exc, result)

    def _pass(self, state: JobState, budget: ExecutionBudget, result: RunResult) -> RunResult:
        try:
            self._sink.ensure_ready()
            enumeration = self._source.enumerate(state.cursor)
        except (LedgerUnavailable, StateConflict):
            raise
        except Exception as exc:
            return self._setup_failed(state, exc, result)

        if state.cursor is None and not enumeration.has_next():
            return self._complete(state, result, "Completed (no files found)")

        streak: List[Tuple[WorkItem, Exception]] = []
        streak_cursor: Optional[str] = None
        while enumeration.has_next():
            if budget.expired():
                return self._pause(state, enumeration.continuation_token(), result)
            position = enumeration.continuation_token()
            item = next(enumeration)
            error = self._process(state, item, result)
            if error is None:
                streak = []
                continue
            if not streak:
                streak_cursor = position
            streak.append((item, error))
            if len(streak) < self._config.max_consecutive_item_errors:
                continue
            if state.systemic_retries < self._config.max_systemic_retries:
                return self._systemic(state, streak_cursor, len(streak), result)
            self._give_up(state, streak, result)
            streak = []

        message = "Completed"
        if result.errors:
            message = f"Completed with {result.errors} unprocessed file(s); see last error"
        return self._complete(state, result, message)

    def _process(self, state: JobState, item: WorkItem, result: RunResult) -> Optional[Exception]:
        """Handle one item; returns the error when it failed without a classification."""
        if self._ledger.get(item.id) != Outcome.UNSEEN:
            result.skipped += 1
            log_event(logger, "item.skipped", job_id=self._job_id, item_id=item.id)
            return None

        log_event(logger, "item.processing", job_id=self._job_id, item_id=item.id, item_name=item.name)
        try:
            record = self._extractor.extract(item)
            if record is None:
                self._classify(item, Outcome.FAILED_PARSE, "extractor returned no data", result)
                return None
            attempts = self._sink.write(record)
        except (LedgerUnavailable, StateConflict):
            raise
        except (ExtractionError, FatalSinkError) as exc:
            self._classify(item, Outcome.FAILED_PARSE, str(exc), result)
            return None
        except Exception as exc:
            if self._is_timeout(exc):
                self._classify(item, Outcome.TIMED_OUT, str(exc), result)
                return None
            self._item_error(state, item, exc, result)
            return exc

        self._ledger.set(item.id, Outcome.SUCCESS)
        state.processed_count += 1
        state.systemic_retries = 0
        result.processed += 1
        self._states.save(state)
        log_event(
            logger,
            "item.succeeded",
            job_id=self._job_id,
            item_id=item.id,
            record_id=record.record_id,
            attempts=attempts,
            processed_count=state.processed_count,
        )
        return None

    def _classify(self, item: WorkItem, outcome: str, detail: str, result: RunResult) -> None:
        self._ledger.set(item.id, outcome, detail=detail[:500])
        if outcome == Outcome.TIMED_OUT:
            result.timed_out += 1
        else:
            result.failed_parse += 1
        log_event(logger, "item.classified", job_id=self._job_id, item_id=item.id, outcome=outcome, detail=detail)

    def _item_error(self, state: JobState, item: WorkItem, exc: Exception, result: RunResult) -> None:
        state.last_error = self._detail(exc, item_id=item.id)
        state.status_message = f"Running... (error on file: {item.name})"
        result.errors += 1
        result.error = state.last_error
        self._states.save(state)
        logger.warning(
            "item.error",
            extra={"job_id": self._job_id, "item_id": item.id, "error": str(exc)},
            exc_info=exc,
        )

    def _is_timeout(self, exc: Exception) -> bool:
        if isinstance(exc, (ExtractionTimeout, RetryExhausted)):
            return True
        signature = self._config.timeout_signature.lower()
        return bool(signature) and signature in str(exc).lower()

    def _acquire(self, state: JobState) -> JobState:
        now = self._clock().isoformat()
        state.status = JobStatus.RUNNING
        state.status_message = "Running..."
        state.last_run_at = now
        state.running_since = now
        state = self._states.save(state)
        log_event(logger, "run.started", job_id=self._job_id, cursor=bool(state.cursor))
        return state

    def _lease_held(self, state: JobState) -> bool:
        if not state.running_since:
            return False
        age = self._clock() - datetime.fromisoformat(state.running_since)
        return age < timedelta(seconds=self._config.lease_stale_seconds)

    def _overlap(self, state: JobState) -> RunResult:
        log_event(logger, "run.overlap_skipped", job_id=self._job_id, running_since=state.running_since)
        return RunResult(status=state.status, status_message=state.status_message, overlap=True)

    def _pause(self, state: JobState, cursor: Optional[str], result: RunResult) -> RunResult:
        state.cursor = cursor
        state.status = JobStatus.WAITING_FOR_CONTINUATION
        state.status_message = f"Waiting... will continue in {self._interval_text()}"
        state.running_since = None
        self._states.save(state)
        log_event(logger, "run.paused", job_id=self._job_id, processed=result.processed)
        self._schedule_continuation(state, result)
        return self._finish(state, result)

    def _systemic(self, state: JobState, cursor: Optional[str], streak: int, result: RunResult) -> RunResult:
        state.cursor = cursor
        state.systemic_retries += 1
        state.status = JobStatus.RETRY_SCHEDULED
        state.status_message = (
            f"Retry scheduled: {streak} consecutive files failed (will retry in {self._interval_text()})"
        )
        state.running_since = None
        self._states.save(state)
        logger.warning(
            "run.systemic_item_errors",
            extra={"job_id": self._job_id, "streak": streak, "systemic_retries": state.systemic_retries},
        )
        self._schedule_continuation(state, result)
        return self._finish(state, result)

    def _give_up(self, state: JobState, streak: List[Tuple[WorkItem, Exception]], result: RunResult) -> None:
        retries = state.systemic_retries
        for item, exc in streak:
            self._classify(item, Outcome.FAILED_PARSE, f"failed after {retries} retries: {exc}", result)
            result.errors -= 1
        state.systemic_retries = 0
        self._states.save(state)
        logger.warning(
            "run.systemic_retries_exhausted",
            extra={"job_id": self._job_id, "items": [item.id for item, _ in streak], "retries": retries},
        )

    def _setup_failed(self, state: JobState, exc: Exception, result: RunResult) -> RunResult:
        transient = self._sink.policy.is_transient(exc)
        classified = SystemicSetupError(exc) if transient else FatalSetupError(exc)
        state.last_error = self._detail(classified)
        state.running_since = None
        result.error = state.last_error
        if transient:
            state.status = JobStatus.RETRY_SCHEDULED
            state.status_message = f"Retry scheduled: {exc} (will retry in {self._interval_text()})"
            self._states.save(state)
            logger.warning("run.setup_transient", extra={"job_id": self._job_id, "error": str(exc)})
            self._schedule_continuation(state, result)
        else:
            state.status = JobStatus.FAILED
            state.status_message = f"Failed: {exc}"
            self._cancel_continuations(state)
            self._states.save(state)
            logger.error("run.setup_failed", extra={"job_id": self._job_id, "error": str(exc)})
        return self._finish(state, result)

    def _complete(self, state: JobState, result: RunResult, message: str) -> RunResult:
        state.cursor = None
        state.systemic_retries = 0
        state.status = JobStatus.COMPLETED
        state.status_message = message
        state.running_since = None
        self._cancel_continuations(state)
        self._states.save(state)
        log_event(
            logger,
            "run.completed",
            job_id=self._job_id,
            processed=result.processed,
            processed_count=state.processed_count,
            skipped=result.skipped,
            failed_parse=result.failed_parse,
            timed_out=result.timed_out,
            errors=result.errors,
        )
        return self._finish(state, result)

    def _abort_unavailable(self, state: JobState, exc: LedgerUnavailable, result: RunResult) -> RunResult:
        logger.error("run.ledger_unavailable", extra={"job_id": self._job_id, "error": str(exc)})
        detail = self._detail(exc)
        self._cancel_continuations(state)
        state.status = JobStatus.FAILED
        state.status_message = f"Failed: {exc}"
        state.running_since = None
        state.last_error = detail
        if state.etag is None:
            # no loaded record to update
            logger.error("run.state_unsaved", extra={"job_id": self._job_id, "error": "no stored state to update"})
        else:
            try:
                self._states.save(state)
            except (LedgerUnavailable, StateConflict) as save_exc:
                logger.error("run.state_unsaved", extra={"job_id": self._job_id, "error": str(save_exc)})
        result.error = detail
        return self._finish(state, result)

    def _state_unreachable(self, exc: LedgerUnavailable) -> RunResult:
        """Report a failed state load without touching the stored record or pending continuations."""
        logger.error("run.state_unreachable", extra={"job_id": self._job_id, "error": str(exc)})
        return RunResult(status=JobStatus.FAILED, status_message=f"Failed: {exc}", error=self._detail(exc))

    def _schedule_continuation(self, state: JobState, result: RunResult) -> None:
        delay = timedelta(seconds=self._config.retry_interval_seconds)
        try:
            self._scheduler.cancel_all(self._job_id)
            result.continuation = self._scheduler.schedule_once(self._job_id, delay)
        except Exception as exc:
            logger.exception("continuation.schedule_failed", extra={"job_id": self._job_id})
            state.status = JobStatus.FAILED
            state.status_message = f"Failed: could not schedule continuation: {exc}"
            state.last_error = self._detail(exc)
            self._states.save(state)
            return
        log_event(
            logger,
            "continuation.registered",
            job_id=self._job_id,
            handle_id=result.continuation.handle_id,
            fire_at=result.continuation.fire_at,
        )

    def _cancel_continuations(self, state: JobState) -> None:
        try:
            cancelled = self._scheduler.cancel_all(self._job_id)
        except Exception as exc:
            logger.exception("continuation.cancel_failed", extra={"job_id": self._job_id})
            state.last_error = self._detail(exc)
            return
        if cancelled:
            log_event(logger, "continuation.cancelled", job_id=self._job_id, cancelled=cancelled)

    def _detail(self, exc: BaseException, item_id: Optional[str] = None) -> ErrorDetail:
        cause = getattr(exc, "cause", exc)
        transient = self._sink.policy.is_transient(cause)
        return ErrorDetail(
            code=error_code(exc),
            message=str(exc)[:1000],
            failure_class=FailureClass.RETRYABLE if transient else FailureClass.NON_RETRYABLE,
            item_id=item_id,
            observed_at=self._clock().isoformat(),
        )

    def _interval_text(self) -> str:
        return f"{self._config.retry_interval_seconds:g}s"

    def _finish(self, state: JobState, result: RunResult) -> RunResult:
        result.status = state.status
        result.status_message = state.status_message
        return result
