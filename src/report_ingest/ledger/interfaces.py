from typing import Any, Dict, Iterator, Optional, Protocol, Tuple

from .models import StoredValue


class KeyValueStore(Protocol):
    def get(self, scope: str, key: str) -> Optional[StoredValue]:
        ...

    def set(self, scope: str, key: str, value: Dict[str, Any], etag: Optional[str] = None) -> str:
        ...

    def delete(self, scope: str, key: str) -> None:
        ...

    def delete_all(self, scope: str) -> int:
        ...

    def items(self, scope: str) -> Iterator[Tuple[str, StoredValue]]:
        ...
