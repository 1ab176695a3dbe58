from __future__ import annotations

import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from report_ingest.engine.batch import BatchEngine, EngineConfig  # noqa: E402
from report_ingest.engine.retry import RetryingSink, RetryPolicy  # noqa: E402
from report_ingest.extraction.interfaces import StructuredRecord  # noqa: E402
from report_ingest.ledger.ledger import JobStateStore, ProcessingLedger  # noqa: E402
from report_ingest.ledger.memory_store import MemoryKeyValueStore  # noqa: E402
from report_ingest.scheduling.memory import MemoryScheduler  # noqa: E402
from report_ingest.sinks.memory import MemorySink  # noqa: E402
from report_ingest.sources.interfaces import WorkItem  # noqa: E402
from report_ingest.sources.memory import MemoryWorkSource  # noqa: E402

JOB_ID = "pdf-ingestion"
TRANSIENT = "We're sorry, a server error occurred"


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class WallClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedExtractor:
    """Returns a record for every item unless ``behaviour`` says otherwise.

    ``behaviour[item_id]`` may be ``None`` (empty result), an exception to
    raise, or a list of those consumed one call at a time.
    """

    def __init__(self, clock: Optional[FakeMonotonic] = None, cost: float = 0.0) -> None:
        self.clock = clock
        self.cost = cost
        self.behaviour: Dict[str, object] = {}
        self.calls: List[str] = []

    def extract(self, item: WorkItem) -> Optional[StructuredRecord]:
        self.calls.append(item.id)
        if self.clock is not None:
            self.clock.advance(self.cost)
        action = self.behaviour.get(item.id, "record")
        if isinstance(action, list):
            action = action.pop(0) if action else "record"
        if isinstance(action, BaseException):
            raise action
        if action is None:
            return None
        return StructuredRecord(
            record_id=f"2024-02-29-{item.id}",
            item_id=item.id,
            report={"report_date": "2024-02-29"},
            rows=[],
        )


@dataclass
class FlakySink(MemorySink):
    failures: Dict[str, List[Exception]] = field(default_factory=dict)
    ready_errors: List[Exception] = field(default_factory=list)
    attempts: List[str] = field(default_factory=list)

    def ensure_ready(self) -> None:
        if self.ready_errors:
            raise self.ready_errors.pop(0)
        super().ensure_ready()

    def write(self, record: StructuredRecord) -> None:
        self.attempts.append(record.item_id)
        pending = self.failures.get(record.item_id)
        if pending:
            raise pending.pop(0)
        super().write(record)


def make_items(*names: str) -> List[WorkItem]:
    return [WorkItem(id=name, name=name, fetch=lambda: b"%PDF-1.4") for name in names]


@dataclass
class Harness:
    engine: BatchEngine
    source: MemoryWorkSource
    extractor: ScriptedExtractor
    sink: FlakySink
    scheduler: MemoryScheduler
    ledger: ProcessingLedger
    states: JobStateStore
    store: MemoryKeyValueStore
    monotonic: FakeMonotonic
    clock: WallClock
    sleeps: List[float]


@pytest.fixture()
def make_harness() -> Callable[..., Harness]:
    def _make(names: Optional[List[str]] = None, item_cost: float = 0.0, **config) -> Harness:
        monotonic = FakeMonotonic()
        clock = WallClock()
        sleeps: List[float] = []
        store = MemoryKeyValueStore()
        source = MemoryWorkSource(make_items(*(names or [])))
        extractor = ScriptedExtractor(monotonic, item_cost)
        sink = FlakySink()
        scheduler = MemoryScheduler(clock=clock)
        ledger = ProcessingLedger(store, JOB_ID, clock=clock)
        states = JobStateStore(store, JOB_ID, clock=clock)
        policy = RetryPolicy(max_attempts=4, initial_delay=1.0, backoff_multiplier=2.0, transient_signatures=[TRANSIENT])
        engine = BatchEngine(
            job_id=JOB_ID,
            source=source,
            extractor=extractor,
            sink=RetryingSink(sink, policy, sleep=sleeps.append),
            ledger=ledger,
            states=states,
            scheduler=scheduler,
            config=EngineConfig(**config),
            monotonic=monotonic,
            clock=clock,
        )
        return Harness(engine, source, extractor, sink, scheduler, ledger, states, store, monotonic, clock, sleeps)

    return _make
