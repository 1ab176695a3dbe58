from datetime import datetime, timedelta, timezone
from typing import Callable, List

from report_ingest.ledger.ledger import ProcessingLedger
from report_ingest.shared.logging import get_logger, log_event


logger = get_logger("report_ingest.sweepers")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerRetentionSweeper:
    """Drops ledger entries older than the retention window.

    A swept item reads as unseen again, so it is only re-processed if it is
    still present in the work source on a later pass.
    """

    def __init__(self, ledger: ProcessingLedger, retention_days: int, clock: Callable[[], datetime] = _now):
        if retention_days < 1:
            raise ValueError("retention_days must be at least 1")
        self._ledger = ledger
        self._retention = timedelta(days=retention_days)
        self._clock = clock

    def sweep(self) -> List[str]:
        cutoff = self._clock() - self._retention
        removed = self._ledger.purge_older_than(cutoff)
        log_event(logger, "ledger.swept", cutoff=cutoff.isoformat(), removed=len(removed))
        return removed
