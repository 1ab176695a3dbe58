import copy
from typing import Any, Dict, Iterator, Optional, Tuple

from report_ingest.engine.errors import StateConflict

from .interfaces import KeyValueStore
from .models import StoredValue


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self) -> None:
        self._scopes: Dict[str, Dict[str, StoredValue]] = {}

    def get(self, scope: str, key: str) -> Optional[StoredValue]:
        current = self._scopes.get(scope, {}).get(key)
        if current is None:
            return None
        return StoredValue(value=copy.deepcopy(current.value), etag=current.etag)

    def set(self, scope: str, key: str, value: Dict[str, Any], etag: Optional[str] = None) -> str:
        records = self._scopes.setdefault(scope, {})
        current = records.get(key)
        if etag is not None and (current is None or current.etag != etag):
            raise StateConflict(f"etag mismatch for {scope}/{key}")
        next_etag = "1" if current is None else str(int(current.etag or "0") + 1)
        records[key] = StoredValue(value=copy.deepcopy(value), etag=next_etag)
        return next_etag

    def delete(self, scope: str, key: str) -> None:
        self._scopes.get(scope, {}).pop(key, None)

    def delete_all(self, scope: str) -> int:
        removed = self._scopes.pop(scope, {})
        return len(removed)

    def items(self, scope: str) -> Iterator[Tuple[str, StoredValue]]:
        for key, stored in list(self._scopes.get(scope, {}).items()):
            yield key, StoredValue(value=copy.deepcopy(stored.value), etag=stored.etag)
