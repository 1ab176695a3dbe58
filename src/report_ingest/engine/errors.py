from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class ErrorDetail:
    code: str
    message: str
    failure_class: Optional[str] = None
    item_id: Optional[str] = None
    observed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "failure_class": self.failure_class,
            "item_id": self.item_id,
            "observed_at": self.observed_at,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ErrorDetail"]:
        if not data:
            return None
        return cls(
            code=data.get("code", "UNKNOWN"),
            message=data.get("message", ""),
            failure_class=data.get("failure_class"),
            item_id=data.get("item_id"),
            observed_at=data.get("observed_at"),
        )


class FailureClass:
    RETRYABLE = "RETRYABLE"
    NON_RETRYABLE = "NON_RETRYABLE"


class IngestionError(Exception):
    code = "INGESTION_ERROR"


class TransientDownstreamError(IngestionError):
    code = "TRANSIENT_DOWNSTREAM"


class TransientWriteError(TransientDownstreamError):
    code = "TRANSIENT_WRITE"


class FatalWriteError(IngestionError):
    code = "FATAL_WRITE"


class SinkError(IngestionError):
    code = "SINK_ERROR"


class RetryExhausted(SinkError):
    code = "RETRY_EXHAUSTED"

    def __init__(self, last_error: BaseException, attempts: int) -> None:
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"write failed after {attempts} attempts: {last_error}")


class FatalSinkError(SinkError):
    code = "FATAL_SINK"

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(f"write rejected: {cause}")


class ExtractionError(IngestionError):
    code = "EXTRACTION_FAILED"


class ExtractionTimeout(IngestionError):
    code = "EXTRACTION_TIMEOUT"


class LedgerUnavailable(IngestionError):
    code = "LEDGER_UNAVAILABLE"


class StateConflict(IngestionError):
    code = "STATE_CONFLICT"


class CursorMismatch(IngestionError):
    code = "CURSOR_MISMATCH"


class SetupError(IngestionError):
    code = "SETUP_ERROR"

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(str(cause))


class SystemicSetupError(SetupError):
    code = "SYSTEMIC_SETUP"


class FatalSetupError(SetupError):
    code = "FATAL_SETUP"


def error_code(exc: BaseException) -> str:
    return getattr(exc, "code", None) or type(exc).__name__.upper()
