from dataclasses import dataclass
from datetime import timedelta
from typing import List, Protocol


@dataclass
class ContinuationHandle:
    job_id: str
    handle_id: str
    fire_at: str
    created_at: str


class Scheduler(Protocol):
    def schedule_once(self, job_id: str, delay: timedelta) -> ContinuationHandle:
        ...

    def cancel_all(self, job_id: str) -> int:
        ...

    def list_pending(self, job_id: str) -> List[ContinuationHandle]:
        ...
