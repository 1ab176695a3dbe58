from typing import Protocol

from report_ingest.extraction.interfaces import StructuredRecord


class Sink(Protocol):
    def ensure_ready(self) -> None:
        ...

    def write(self, record: StructuredRecord) -> None:
        ...
