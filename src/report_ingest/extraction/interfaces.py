from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from report_ingest.sources.interfaces import WorkItem


@dataclass
class StructuredRecord:
    record_id: str
    item_id: str
    report: Dict[str, Any]
    rows: List[Dict[str, Any]] = field(default_factory=list)


class Extractor(Protocol):
    def extract(self, item: WorkItem) -> Optional[StructuredRecord]:
        ...
