from datetime import timedelta

from report_ingest.engine.errors import (
    ExtractionError,
    ExtractionTimeout,
    FatalWriteError,
    TransientWriteError,
)
from report_ingest.ledger.models import JobState, JobStatus, Outcome
from report_ingest.sources.interfaces import encode_cursor

JOB_ID = "pdf-ingestion"
TRANSIENT = "We're sorry, a server error occurred"


def _fire_due(h):
    h.clock.advance(30)
    return h.scheduler.pop_due(JOB_ID)


def test_scenario_a_two_invocations(make_harness):
    h = make_harness(["a.pdf", "b.pdf", "c.pdf"], item_cost=120)

    first = h.engine.start_fresh()

    assert first.status == JobStatus.WAITING_FOR_CONTINUATION
    assert first.processed == 2
    assert first.continuation is not None
    state = h.states.load()
    assert state.cursor is not None
    assert state.status_message == "Waiting... will continue in 30s"
    assert state.running_since is None
    assert len(h.scheduler.list_pending(JOB_ID)) == 1
    assert h.ledger.get("c.pdf") == Outcome.UNSEEN

    assert len(_fire_due(h)) == 1
    second = h.engine.run()

    assert second.status == JobStatus.COMPLETED
    assert second.processed == 1
    state = h.states.load()
    assert state.cursor is None
    assert state.processed_count == 3
    assert state.status_message == "Completed"
    assert h.scheduler.list_pending(JOB_ID) == []
    assert h.extractor.calls == ["a.pdf", "b.pdf", "c.pdf"]


def test_exhaustiveness_with_repeated_interruptions(make_harness):
    names = [f"pmix-{index}.pdf" for index in range(7)]
    h = make_harness(names, item_cost=100)

    result = h.engine.start_fresh()
    invocations = 1
    while result.status != JobStatus.COMPLETED:
        assert result.status == JobStatus.WAITING_FOR_CONTINUATION
        assert len(h.scheduler.list_pending(JOB_ID)) <= 1
        _fire_due(h)
        result = h.engine.run()
        invocations += 1
        assert invocations <= len(names)

    # 240s usable per invocation at 100s per item: 3 items each
    assert invocations == 3
    assert {entry.outcome for entry in h.ledger.entries()} == {Outcome.SUCCESS}
    assert len(h.ledger.entries()) == len(names)
    assert h.states.load().processed_count == len(names)
    assert h.sink.attempts == names


def test_scenario_b_transient_write_retried(make_harness):
    h = make_harness(["a.pdf"])
    h.sink.failures["a.pdf"] = [TransientWriteError("busy"), TransientWriteError("busy")]

    result = h.engine.start_fresh()

    assert result.status == JobStatus.COMPLETED
    assert h.ledger.get("a.pdf") == Outcome.SUCCESS
    assert h.sink.attempts == ["a.pdf", "a.pdf", "a.pdf"]
    assert h.sleeps == [1.0, 2.0]


def test_retry_exhaustion_marks_timed_out_and_continues(make_harness):
    h = make_harness(["a.pdf", "b.pdf"])
    h.sink.failures["a.pdf"] = [RuntimeError(TRANSIENT) for _ in range(4)]

    result = h.engine.start_fresh()

    assert result.status == JobStatus.COMPLETED
    assert result.timed_out == 1
    assert h.ledger.get("a.pdf") == Outcome.TIMED_OUT
    assert h.ledger.get("b.pdf") == Outcome.SUCCESS
    assert h.sleeps == [1.0, 2.0, 4.0]


def test_scenario_c_empty_extraction_is_failed_parse(make_harness):
    h = make_harness(["a.pdf", "b.pdf"])
    h.extractor.behaviour["a.pdf"] = None

    result = h.engine.start_fresh()

    assert result.status == JobStatus.COMPLETED
    assert result.failed_parse == 1
    assert h.ledger.get("a.pdf") == Outcome.FAILED_PARSE
    assert h.ledger.get("b.pdf") == Outcome.SUCCESS
    assert h.sink.attempts == ["b.pdf"]


def test_item_classification(make_harness):
    h = make_harness(["bad.pdf", "slow.pdf", "quota.pdf", "rejected.pdf", "ok.pdf"])
    h.extractor.behaviour["bad.pdf"] = ExtractionError("not a product mix report")
    h.extractor.behaviour["slow.pdf"] = ExtractionTimeout("extraction of slow.pdf timed out")
    h.extractor.behaviour["quota.pdf"] = RuntimeError("Request timed out after 90s")
    h.sink.failures["rejected.pdf"] = [FatalWriteError("entity too large")]

    result = h.engine.start_fresh()

    assert result.status == JobStatus.COMPLETED
    assert h.ledger.get("bad.pdf") == Outcome.FAILED_PARSE
    assert h.ledger.get("slow.pdf") == Outcome.TIMED_OUT
    assert h.ledger.get("quota.pdf") == Outcome.TIMED_OUT
    assert h.ledger.get("rejected.pdf") == Outcome.FAILED_PARSE
    assert h.ledger.get("ok.pdf") == Outcome.SUCCESS
    assert h.sink.attempts == ["rejected.pdf", "ok.pdf"]
    assert h.states.load().processed_count == 1


def test_scenario_d_transient_setup_error_schedules_retry(make_harness):
    h = make_harness(["a.pdf"])
    h.sink.ready_errors = [RuntimeError(TRANSIENT)]

    result = h.engine.start_fresh()

    assert result.status == JobStatus.RETRY_SCHEDULED
    assert result.error.code == "SYSTEMIC_SETUP"
    pending = h.scheduler.list_pending(JOB_ID)
    assert len(pending) == 1
    assert pending[0].fire_at == (h.clock() + timedelta(seconds=30)).isoformat()
    state = h.states.load()
    assert state.status_message.startswith("Retry scheduled:")
    assert state.last_error.failure_class == "RETRYABLE"
    assert h.extractor.calls == []

    _fire_due(h)
    retried = h.engine.run()

    assert retried.status == JobStatus.COMPLETED
    assert h.ledger.get("a.pdf") == Outcome.SUCCESS


def test_fatal_setup_error_fails_without_continuation(make_harness):
    h = make_harness(["a.pdf"])
    h.sink.ready_errors = [FatalWriteError("authorization failed")]

    result = h.engine.start_fresh()

    assert result.status == JobStatus.FAILED
    assert result.error.code == "FATAL_SETUP"
    assert h.states.load().status_message == "Failed: authorization failed"
    assert h.scheduler.list_pending(JOB_ID) == []
    assert h.states.load().running_since is None


def test_cursor_from_other_source_is_fatal(make_harness):
    h = make_harness(["a.pdf"])
    h.states.save(
        JobState(
            job_id=JOB_ID,
            status=JobStatus.WAITING_FOR_CONTINUATION,
            cursor=encode_cursor("someothersource", {"offset": 1}),
        )
    )

    result = h.engine.run()

    assert result.status == JobStatus.FAILED
    assert "different work source" in result.status_message
    assert h.extractor.calls == []


def test_ledger_skip_prevents_second_write(make_harness):
    h = make_harness(["a.pdf", "b.pdf"])
    h.ledger.set("a.pdf", Outcome.SUCCESS)
    h.states.save(JobState(job_id=JOB_ID, status=JobStatus.WAITING_FOR_CONTINUATION))

    result = h.engine.run()

    assert result.status == JobStatus.COMPLETED
    assert result.skipped == 1
    assert h.sink.attempts == ["b.pdf"]
    assert h.extractor.calls == ["b.pdf"]


def test_unclassified_item_error_is_recorded_and_run_continues(make_harness):
    h = make_harness(["a.pdf", "b.pdf", "c.pdf"])
    h.extractor.behaviour["b.pdf"] = RuntimeError("unexpected layout")

    result = h.engine.start_fresh()

    assert result.status == JobStatus.COMPLETED
    assert result.errors == 1
    assert h.ledger.get("b.pdf") == Outcome.UNSEEN
    assert h.ledger.get("c.pdf") == Outcome.SUCCESS
    state = h.states.load()
    assert state.last_error.item_id == "b.pdf"
    assert state.last_error.message == "unexpected layout"
    assert state.status_message == "Completed with 1 unprocessed file(s); see last error"


def test_consecutive_item_errors_are_treated_as_systemic(make_harness):
    h = make_harness(["a.pdf", "b.pdf", "c.pdf", "d.pdf", "e.pdf"], max_consecutive_item_errors=3)
    for name in ("b.pdf", "c.pdf", "d.pdf"):
        h.extractor.behaviour[name] = [RuntimeError("backend unavailable")]

    result = h.engine.start_fresh()

    assert result.status == JobStatus.RETRY_SCHEDULED
    assert h.extractor.calls == ["a.pdf", "b.pdf", "c.pdf", "d.pdf"]
    assert len(h.scheduler.list_pending(JOB_ID)) == 1
    assert h.ledger.get("b.pdf") == Outcome.UNSEEN

    _fire_due(h)
    retried = h.engine.run()

    assert retried.status == JobStatus.COMPLETED
    assert h.extractor.calls[4:] == ["b.pdf", "c.pdf", "d.pdf", "e.pdf"]
    assert h.states.load().processed_count == 5


def test_persistent_item_errors_stop_retrying_after_cap(make_harness):
    h = make_harness(
        ["a.pdf", "b.pdf", "c.pdf", "d.pdf", "e.pdf"],
        max_consecutive_item_errors=3,
        max_systemic_retries=2,
    )
    for name in ("b.pdf", "c.pdf", "d.pdf"):
        h.extractor.behaviour[name] = [RuntimeError("bug in layout handling")] * 10

    results = [h.engine.start_fresh()]
    for _ in range(10):
        if not _fire_due(h):
            break
        results.append(h.engine.run())

    statuses = [result.status for result in results]
    assert statuses == [JobStatus.RETRY_SCHEDULED, JobStatus.RETRY_SCHEDULED, JobStatus.COMPLETED]
    assert h.extractor.calls.count("b.pdf") == 3
    assert h.extractor.calls[-1] == "e.pdf"
    for name in ("b.pdf", "c.pdf", "d.pdf"):
        assert h.ledger.get(name) == Outcome.FAILED_PARSE
    assert h.ledger.get("e.pdf") == Outcome.SUCCESS
    assert results[-1].failed_parse == 3
    assert results[-1].errors == 0
    assert results[-1].status_message == "Completed"
    state = h.states.load()
    assert state.systemic_retries == 0
    assert state.processed_count == 2
    assert h.scheduler.list_pending(JOB_ID) == []


def test_successful_item_resets_systemic_retries(make_harness):
    h = make_harness(["a.pdf", "b.pdf", "c.pdf", "d.pdf"], max_consecutive_item_errors=2, max_systemic_retries=1)
    h.extractor.behaviour["a.pdf"] = [RuntimeError("backend unavailable")]
    h.extractor.behaviour["b.pdf"] = [RuntimeError("backend unavailable")]

    first = h.engine.start_fresh()

    assert first.status == JobStatus.RETRY_SCHEDULED
    assert h.states.load().systemic_retries == 1

    _fire_due(h)
    second = h.engine.run()

    assert second.status == JobStatus.COMPLETED
    assert h.ledger.get("a.pdf") == Outcome.SUCCESS
    assert h.states.load().systemic_retries == 0


def test_single_pending_continuation_across_resumes(make_harness):
    h = make_harness([f"{index}.pdf" for index in range(9)], item_cost=120)

    h.engine.start_fresh()
    h.engine.run()
    h.engine.run()

    assert len(h.scheduler.scheduled) == 3
    assert len(h.scheduler.list_pending(JOB_ID)) == 1


def test_fresh_start_clears_ledger_and_continuations(make_harness):
    h = make_harness(["a.pdf", "b.pdf", "c.pdf"], item_cost=120)
    h.engine.start_fresh()
    assert len(h.scheduler.list_pending(JOB_ID)) == 1

    result = h.engine.start_fresh()

    assert result.status == JobStatus.WAITING_FOR_CONTINUATION
    assert len(h.scheduler.list_pending(JOB_ID)) == 1
    assert len(h.scheduler.cancelled) >= 1
    assert h.states.load().processed_count == 2
    assert h.extractor.calls == ["a.pdf", "b.pdf", "a.pdf", "b.pdf"]


def test_empty_source_completes(make_harness):
    h = make_harness([])

    result = h.engine.start_fresh()

    assert result.status == JobStatus.COMPLETED
    assert result.status_message == "Completed (no files found)"
    assert h.sink.ready


def test_run_without_active_job_does_nothing(make_harness):
    h = make_harness(["a.pdf"])

    result = h.engine.run()

    assert result.status == JobStatus.IDLE
    assert h.source.enumerations == 0


def test_live_lease_skips_overlapping_invocation(make_harness):
    h = make_harness(["a.pdf"])
    h.states.save(
        JobState(job_id=JOB_ID, status=JobStatus.RUNNING, running_since=h.clock().isoformat())
    )

    assert h.engine.run().overlap
    assert h.engine.start_fresh().overlap
    assert h.extractor.calls == []
    assert h.engine.is_running()

    forced = h.engine.start_fresh(force=True)

    assert forced.status == JobStatus.COMPLETED
    assert h.states.load().running_since is None


def test_stale_lease_is_taken_over(make_harness):
    h = make_harness(["a.pdf"], lease_stale_seconds=900)
    h.states.save(
        JobState(
            job_id=JOB_ID,
            status=JobStatus.RUNNING,
            running_since=(h.clock() - timedelta(seconds=901)).isoformat(),
        )
    )

    result = h.engine.run()

    assert not result.overlap
    assert result.status == JobStatus.COMPLETED


def test_concurrent_state_write_supersedes_run(make_harness, monkeypatch):
    h = make_harness(["a.pdf", "b.pdf"])
    original = h.extractor.extract

    def extract_and_interfere(item):
        other = h.states.load()
        other.status_message = "touched by another invocation"
        h.states.save(other)
        return original(item)

    monkeypatch.setattr(h.extractor, "extract", extract_and_interfere)

    result = h.engine.start_fresh()

    assert result.superseded
    assert h.extractor.calls == ["a.pdf"]
    assert h.states.load().status_message == "touched by another invocation"


def test_ledger_outage_fails_run(make_harness, monkeypatch):
    h = make_harness(["a.pdf", "b.pdf"])
    h.engine.start_fresh()
    h.states.save(JobState(job_id=JOB_ID, status=JobStatus.WAITING_FOR_CONTINUATION))
    original_get = h.store.get

    def flaky_get(scope, key):
        if scope.endswith(".ledger"):
            raise ConnectionError("storage account unreachable")
        return original_get(scope, key)

    monkeypatch.setattr(h.store, "get", flaky_get)

    result = h.engine.run()

    assert result.status == JobStatus.FAILED
    assert result.error.code == "LEDGER_UNAVAILABLE"
    assert h.scheduler.list_pending(JOB_ID) == []
    state = h.states.load()
    assert state.status == JobStatus.FAILED
    assert state.status_message.startswith("Failed: ledger get a.pdf failed")
    assert h.sink.attempts == ["a.pdf", "b.pdf"]


def test_state_load_outage_keeps_saved_progress(make_harness, monkeypatch):
    h = make_harness(["a.pdf", "b.pdf", "c.pdf"], item_cost=120)
    h.engine.start_fresh()
    before = h.states.load()
    assert before.processed_count == 2
    assert before.cursor is not None
    original_get = h.store.get
    failures = ["storage account unreachable"]

    def flaky_get(scope, key):
        if scope.endswith(".state") and failures:
            raise ConnectionError(failures.pop())
        return original_get(scope, key)

    monkeypatch.setattr(h.store, "get", flaky_get)

    result = h.engine.run()

    assert result.status == JobStatus.FAILED
    assert result.error.code == "LEDGER_UNAVAILABLE"
    after = h.states.load()
    assert after.status == JobStatus.WAITING_FOR_CONTINUATION
    assert after.processed_count == 2
    assert after.cursor == before.cursor
    assert len(h.scheduler.list_pending(JOB_ID)) == 1
    assert h.extractor.calls == ["a.pdf", "b.pdf"]


def test_fresh_start_outage_does_not_overwrite_state(make_harness, monkeypatch):
    h = make_harness(["a.pdf", "b.pdf", "c.pdf"], item_cost=120)
    h.engine.start_fresh()
    original_get = h.store.get

    def broken_get(scope, key):
        if scope.endswith(".state"):
            raise ConnectionError("storage account unreachable")
        return original_get(scope, key)

    monkeypatch.setattr(h.store, "get", broken_get)
    result = h.engine.start_fresh(force=True)
    monkeypatch.setattr(h.store, "get", original_get)

    assert result.status == JobStatus.FAILED
    assert h.states.load().processed_count == 2
    assert h.ledger.get("a.pdf") == Outcome.SUCCESS


def test_scheduler_failure_keeps_cursor(make_harness, monkeypatch):
    h = make_harness(["a.pdf", "b.pdf", "c.pdf"], item_cost=120)

    def broken(job_id, delay):
        raise RuntimeError("queue unavailable")

    monkeypatch.setattr(h.scheduler, "schedule_once", broken)

    result = h.engine.start_fresh()

    assert result.status == JobStatus.FAILED
    state = h.states.load()
    assert state.status_message == "Failed: could not schedule continuation: queue unavailable"
    assert state.cursor is not None


def test_continuation_delay_is_retry_interval(make_harness):
    h = make_harness(["a.pdf", "b.pdf", "c.pdf"], item_cost=120, retry_interval_seconds=45)

    result = h.engine.start_fresh()

    assert result.status_message == "Waiting... will continue in 45s"
    pending = h.scheduler.list_pending(JOB_ID)
    assert pending[0].fire_at == (h.clock() + timedelta(seconds=45)).isoformat()
