from dataclasses import dataclass, field
from typing import Dict, List

from report_ingest.extraction.interfaces import StructuredRecord


@dataclass
class MemorySink:
    records: Dict[str, StructuredRecord] = field(default_factory=dict)
    writes: List[str] = field(default_factory=list)
    ready: bool = False

    def ensure_ready(self) -> None:
        self.ready = True

    def write(self, record: StructuredRecord) -> None:
        self.writes.append(record.record_id)
        self.records[record.record_id] = record
