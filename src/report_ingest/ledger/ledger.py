from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional

from report_ingest.engine.errors import LedgerUnavailable, StateConflict

from .interfaces import KeyValueStore
from .models import JobState, JobStatus, LedgerEntry, Outcome, TERMINAL_OUTCOMES


STATE_KEY = "job"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _store_call(action: str) -> Iterator[None]:
    try:
        yield
    except (LedgerUnavailable, StateConflict):
        raise
    except Exception as exc:
        raise LedgerUnavailable(f"{action} failed: {exc}") from exc


class ProcessingLedger:
    """Durable record of which work items reached which outcome."""

    def __init__(self, store: KeyValueStore, job_id: str, clock: Callable[[], datetime] = _now) -> None:
        self._store = store
        self._scope = f"{job_id}.ledger"
        self._clock = clock

    def get(self, item_id: str) -> str:
        with _store_call(f"ledger get {item_id}"):
            stored = self._store.get(self._scope, item_id)
        if stored is None:
            return Outcome.UNSEEN
        return stored.value.get("outcome", Outcome.UNSEEN)

    def set(self, item_id: str, outcome: str, detail: Optional[str] = None) -> LedgerEntry:
        if outcome not in TERMINAL_OUTCOMES and outcome != Outcome.UNSEEN:
            raise ValueError(f"unknown outcome: {outcome}")
        entry = LedgerEntry(
            item_id=item_id,
            outcome=outcome,
            recorded_at=self._clock().isoformat(),
            detail=detail,
        )
        with _store_call(f"ledger set {item_id}"):
            self._store.set(
                self._scope,
                item_id,
                {"outcome": entry.outcome, "recorded_at": entry.recorded_at, "detail": entry.detail},
            )
        return entry

    def entries(self) -> List[LedgerEntry]:
        with _store_call("ledger list"):
            stored = list(self._store.items(self._scope))
        return [
            LedgerEntry(
                item_id=key,
                outcome=value.value.get("outcome", Outcome.UNSEEN),
                recorded_at=value.value.get("recorded_at", ""),
                detail=value.value.get("detail"),
            )
            for key, value in stored
        ]

    def clear(self) -> int:
        with _store_call("ledger clear"):
            return self._store.delete_all(self._scope)

    def purge_older_than(self, cutoff: datetime) -> List[str]:
        removed: List[str] = []
        for entry in self.entries():
            if not entry.recorded_at:
                continue
            if datetime.fromisoformat(entry.recorded_at) >= cutoff:
                continue
            with _store_call(f"ledger delete {entry.item_id}"):
                self._store.delete(self._scope, entry.item_id)
            removed.append(entry.item_id)
        return removed


class JobStateStore:
    def __init__(self, store: KeyValueStore, job_id: str, clock: Callable[[], datetime] = _now) -> None:
        self._store = store
        self._job_id = job_id
        self._scope = f"{job_id}.state"
        self._clock = clock

    @property
    def job_id(self) -> str:
        return self._job_id

    def load(self) -> JobState:
        with _store_call("state load"):
            stored = self._store.get(self._scope, STATE_KEY)
        if stored is None:
            return JobState(job_id=self._job_id)
        return JobState.from_dict(stored.value, etag=stored.etag)

    def save(self, state: JobState) -> JobState:
        """Persist ``state``; raises ``StateConflict`` if it changed since it was loaded."""
        state.updated_at = self._clock().isoformat()
        with _store_call("state save"):
            state.etag = self._store.set(self._scope, STATE_KEY, state.to_dict(), etag=state.etag)
        return state

    def reset(self) -> JobState:
        now = self._clock().isoformat()
        with _store_call("state reset"):
            current = self._store.get(self._scope, STATE_KEY)
        state = JobState(
            job_id=self._job_id,
            status=JobStatus.STARTING,
            status_message="Starting...",
            processed_count=0,
            last_run_at=now,
            etag=None if current is None else current.etag,
        )
        return self.save(state)
