import base64
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol

from report_ingest.engine.errors import CursorMismatch


@dataclass(frozen=True)
class WorkItem:
    id: str
    name: str
    created_at: Optional[str] = None
    fetch: Callable[[], bytes] = field(default=lambda: b"", repr=False, compare=False)

    def payload(self) -> bytes:
        return self.fetch()


@dataclass
class WorkPage:
    items: List[WorkItem]
    next_cursor: Optional[str]


class WorkEnumeration(Protocol):
    def __iter__(self) -> Iterator[WorkItem]:
        ...

    def __next__(self) -> WorkItem:
        ...

    def has_next(self) -> bool:
        ...

    def continuation_token(self) -> Optional[str]:
        ...


class WorkSource(Protocol):
    def enumerate(self, cursor: Optional[str] = None) -> WorkEnumeration:
        ...

    def list_new_since(self, cursor: Optional[str], limit: int) -> WorkPage:
        ...


def source_fingerprint(config: Dict[str, Any]) -> str:
    canonical = json.dumps(config, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def encode_cursor(fingerprint: str, position: Dict[str, Any]) -> str:
    body = json.dumps({"fp": fingerprint, "pos": position}, sort_keys=True, separators=(",", ":"))
    return base64.urlsafe_b64encode(body.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str, fingerprint: str) -> Dict[str, Any]:
    try:
        body = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8"))
    except (ValueError, UnicodeError) as exc:
        raise CursorMismatch(f"unreadable cursor: {exc}") from exc
    if not isinstance(body, dict) or body.get("fp") != fingerprint:
        raise CursorMismatch("cursor belongs to a different work source configuration")
    position = body.get("pos")
    if not isinstance(position, dict):
        raise CursorMismatch("cursor has no position")
    return position


def page_from(enumeration: WorkEnumeration, limit: int) -> WorkPage:
    items: List[WorkItem] = []
    while len(items) < limit and enumeration.has_next():
        items.append(next(enumeration))
    next_cursor = enumeration.continuation_token() if enumeration.has_next() else None
    return WorkPage(items=items, next_cursor=next_cursor)
