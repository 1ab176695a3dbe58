from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from .interfaces import ContinuationHandle, Scheduler


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryScheduler(Scheduler):
    def __init__(self, clock: Callable[[], datetime] = _now) -> None:
        self._clock = clock
        self._pending: Dict[str, List[ContinuationHandle]] = {}
        self.scheduled: List[ContinuationHandle] = []
        self.cancelled: List[ContinuationHandle] = []

    def schedule_once(self, job_id: str, delay: timedelta) -> ContinuationHandle:
        now = self._clock()
        handle = ContinuationHandle(
            job_id=job_id,
            handle_id=uuid4().hex,
            fire_at=(now + delay).isoformat(),
            created_at=now.isoformat(),
        )
        self._pending.setdefault(job_id, []).append(handle)
        self.scheduled.append(handle)
        return handle

    def cancel_all(self, job_id: str) -> int:
        handles = self._pending.pop(job_id, [])
        self.cancelled.extend(handles)
        return len(handles)

    def list_pending(self, job_id: str) -> List[ContinuationHandle]:
        return list(self._pending.get(job_id, []))

    def next_due_at(self, job_id: str) -> Optional[datetime]:
        pending = self._pending.get(job_id, [])
        if not pending:
            return None
        return min(datetime.fromisoformat(handle.fire_at) for handle in pending)

    def pop_due(self, job_id: str, now: Optional[datetime] = None) -> List[ContinuationHandle]:
        now = now or self._clock()
        pending = self._pending.get(job_id, [])
        due = [handle for handle in pending if datetime.fromisoformat(handle.fire_at) <= now]
        remaining = [handle for handle in pending if handle not in due]
        if remaining:
            self._pending[job_id] = remaining
        else:
            self._pending.pop(job_id, None)
        return due
