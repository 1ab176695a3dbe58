from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from report_ingest.engine.errors import ErrorDetail


class Outcome:
    UNSEEN = "UNSEEN"
    SUCCESS = "SUCCESS"
    FAILED_PARSE = "FAILED_PARSE"
    TIMED_OUT = "TIMED_OUT"


TERMINAL_OUTCOMES = {Outcome.SUCCESS, Outcome.FAILED_PARSE, Outcome.TIMED_OUT}


class JobStatus:
    IDLE = "IDLE"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    WAITING_FOR_CONTINUATION = "WAITING_FOR_CONTINUATION"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"


@dataclass
class StoredValue:
    value: Dict[str, Any]
    etag: Optional[str] = None


@dataclass
class LedgerEntry:
    item_id: str
    outcome: str
    recorded_at: str
    detail: Optional[str] = None


@dataclass
class JobState:
    job_id: str
    status: str = JobStatus.IDLE
    status_message: str = "Idle"
    processed_count: int = 0
    systemic_retries: int = 0
    cursor: Optional[str] = None
    last_run_at: Optional[str] = None
    running_since: Optional[str] = None
    last_error: Optional[ErrorDetail] = None
    updated_at: Optional[str] = None
    etag: Optional[str] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "status_message": self.status_message,
            "processed_count": self.processed_count,
            "systemic_retries": self.systemic_retries,
            "cursor": self.cursor,
            "last_run_at": self.last_run_at,
            "running_since": self.running_since,
            "last_error": None if self.last_error is None else self.last_error.to_dict(),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], etag: Optional[str] = None) -> "JobState":
        return cls(
            job_id=data["job_id"],
            status=data.get("status", JobStatus.IDLE),
            status_message=data.get("status_message", "Idle"),
            processed_count=int(data.get("processed_count", 0)),
            systemic_retries=int(data.get("systemic_retries", 0)),
            cursor=data.get("cursor"),
            last_run_at=data.get("last_run_at"),
            running_since=data.get("running_since"),
            last_error=ErrorDetail.from_dict(data.get("last_error")),
            updated_at=data.get("updated_at"),
            etag=etag,
        )
