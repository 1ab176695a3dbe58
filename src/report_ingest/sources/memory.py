from typing import Iterator, List, Optional

from report_ingest.sources.interfaces import (
    WorkItem,
    WorkPage,
    decode_cursor,
    encode_cursor,
    page_from,
    source_fingerprint,
)


class MemoryEnumeration:
    def __init__(self, fingerprint: str, items: List[WorkItem], offset: int) -> None:
        self._fingerprint = fingerprint
        self._items = items
        self._offset = offset

    def __iter__(self) -> Iterator[WorkItem]:
        return self

    def __next__(self) -> WorkItem:
        if self._offset >= len(self._items):
            raise StopIteration
        item = self._items[self._offset]
        self._offset += 1
        return item

    def has_next(self) -> bool:
        return self._offset < len(self._items)

    def continuation_token(self) -> Optional[str]:
        return encode_cursor(self._fingerprint, {"offset": self._offset})


class MemoryWorkSource:
    def __init__(self, items: Optional[List[WorkItem]] = None, name: str = "memory") -> None:
        self.items: List[WorkItem] = list(items or [])
        self.fingerprint = source_fingerprint({"kind": "memory", "name": name})
        self.enumerations = 0

    def add(self, item: WorkItem) -> None:
        self.items.append(item)

    def enumerate(self, cursor: Optional[str] = None) -> MemoryEnumeration:
        offset = 0
        if cursor:
            offset = int(decode_cursor(cursor, self.fingerprint).get("offset", 0))
        self.enumerations += 1
        return MemoryEnumeration(self.fingerprint, self.items, offset)

    def list_new_since(self, cursor: Optional[str], limit: int) -> WorkPage:
        return page_from(self.enumerate(cursor), limit)
