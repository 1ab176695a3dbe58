from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Set, Tuple

from report_ingest.engine.errors import CursorMismatch
from report_ingest.sources.interfaces import (
    WorkItem,
    WorkPage,
    decode_cursor,
    encode_cursor,
    page_from,
    source_fingerprint,
)


_Position = Tuple[int, str]


class DirectoryEnumeration:
    """Iterator over a snapshot of the holding area, ordered by (mtime, name).

    The continuation token records the names already yielded rather than a
    position, so a file deposited during a pause is still picked up on resume
    even when it carries an older mtime (copies that keep the attachment date).
    """

    def __init__(self, source: "DirectoryWorkSource", entries: List[Tuple[_Position, Path]], seen: Set[str]):
        self._source = source
        self._entries = entries
        self._index = 0
        self._seen = set(seen)

    def __iter__(self) -> Iterator[WorkItem]:
        return self

    def __next__(self) -> WorkItem:
        if self._index >= len(self._entries):
            raise StopIteration
        position, path = self._entries[self._index]
        self._index += 1
        self._seen.add(path.name)
        return self._source._item(path, position)

    def has_next(self) -> bool:
        return self._index < len(self._entries)

    def continuation_token(self) -> Optional[str]:
        return encode_cursor(self._source.fingerprint, {"seen": sorted(self._seen)})


class DirectoryWorkSource:
    def __init__(self, root: str, prefix: str = "", suffix: str = ".pdf") -> None:
        self._root = Path(root)
        self._prefix = prefix
        self._suffix = suffix.lower()
        self.fingerprint = source_fingerprint(
            {"kind": "directory", "root": str(self._root.resolve()), "prefix": prefix, "suffix": self._suffix}
        )

    def enumerate(self, cursor: Optional[str] = None) -> DirectoryEnumeration:
        seen = self._seen(cursor)
        if not self._root.is_dir():
            raise FileNotFoundError(f"holding area not found: {self._root}")
        entries: List[Tuple[_Position, Path]] = []
        present: Set[str] = set()
        for path in self._root.iterdir():
            if not path.is_file() or not self._matches(path.name):
                continue
            present.add(path.name)
            if path.name in seen:
                continue
            entries.append(((path.stat().st_mtime_ns, path.name), path))
        entries.sort(key=lambda entry: entry[0])
        # names of files removed from the holding area drop out of the cursor
        return DirectoryEnumeration(self, entries, seen & present)

    def list_new_since(self, cursor: Optional[str], limit: int) -> WorkPage:
        return page_from(self.enumerate(cursor), limit)

    def _seen(self, cursor: Optional[str]) -> Set[str]:
        if not cursor:
            return set()
        names = decode_cursor(cursor, self.fingerprint).get("seen")
        if not isinstance(names, list):
            raise CursorMismatch("directory cursor has no list of yielded files")
        return {str(name) for name in names}

    def _matches(self, name: str) -> bool:
        return name.startswith(self._prefix) and name.lower().endswith(self._suffix)

    def _item(self, path: Path, position: _Position) -> WorkItem:
        created_at = datetime.fromtimestamp(position[0] / 1e9, tz=timezone.utc).isoformat()
        return WorkItem(id=path.name, name=path.name, created_at=created_at, fetch=path.read_bytes)
