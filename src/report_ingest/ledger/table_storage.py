import json
from typing import Any, Dict, Iterator, Optional, Tuple
from urllib.parse import quote, unquote

from azure.core import MatchConditions
from azure.core.exceptions import AzureError, ResourceModifiedError, ResourceNotFoundError
from azure.data.tables import TableClient, TableServiceClient, UpdateMode

from report_ingest.engine.errors import LedgerUnavailable, StateConflict

from .interfaces import KeyValueStore
from .models import StoredValue


def _row_key(key: str) -> str:
    # Table Storage rejects '/', '\\', '#' and '?' in keys.
    return quote(key, safe="")


def _scope_key(scope: str) -> str:
    return quote(scope, safe="")


def _etag(entity: Any) -> Optional[str]:
    metadata = getattr(entity, "metadata", None) or {}
    return metadata.get("etag")


def _stored(entity: Any) -> StoredValue:
    raw = entity.get("value") or "{}"
    return StoredValue(value=json.loads(raw), etag=_etag(entity))


class TableKeyValueStore(KeyValueStore):
    def __init__(self, table_client: TableClient) -> None:
        self._table = table_client

    @classmethod
    def from_service(cls, service_client: TableServiceClient, table_name: str) -> "TableKeyValueStore":
        try:
            table = service_client.create_table_if_not_exists(table_name)
        except AzureError as exc:
            raise LedgerUnavailable(f"table {table_name} unavailable: {exc}") from exc
        return cls(table)

    def get(self, scope: str, key: str) -> Optional[StoredValue]:
        try:
            entity = self._table.get_entity(partition_key=_scope_key(scope), row_key=_row_key(key))
        except ResourceNotFoundError:
            return None
        except AzureError as exc:
            raise LedgerUnavailable(f"get {scope}/{key} failed: {exc}") from exc
        return _stored(entity)

    def set(self, scope: str, key: str, value: Dict[str, Any], etag: Optional[str] = None) -> str:
        entity = {
            "PartitionKey": _scope_key(scope),
            "RowKey": _row_key(key),
            "value": json.dumps(value, sort_keys=True),
        }
        try:
            if etag is None:
                metadata = self._table.upsert_entity(entity, mode=UpdateMode.REPLACE)
            else:
                metadata = self._table.update_entity(
                    entity,
                    mode=UpdateMode.REPLACE,
                    etag=etag,
                    match_condition=MatchConditions.IfNotModified,
                )
        except (ResourceModifiedError, ResourceNotFoundError) as exc:
            raise StateConflict(f"etag mismatch for {scope}/{key}") from exc
        except AzureError as exc:
            raise LedgerUnavailable(f"set {scope}/{key} failed: {exc}") from exc
        return metadata.get("etag", "")

    def delete(self, scope: str, key: str) -> None:
        try:
            self._table.delete_entity(partition_key=_scope_key(scope), row_key=_row_key(key))
        except AzureError as exc:
            raise LedgerUnavailable(f"delete {scope}/{key} failed: {exc}") from exc

    def delete_all(self, scope: str) -> int:
        removed = 0
        for key, _ in list(self.items(scope)):
            self.delete(scope, key)
            removed += 1
        return removed

    def items(self, scope: str) -> Iterator[Tuple[str, StoredValue]]:
        try:
            entities = list(
                self._table.query_entities(
                    query_filter="PartitionKey eq @pk",
                    parameters={"pk": _scope_key(scope)},
                )
            )
        except AzureError as exc:
            raise LedgerUnavailable(f"list {scope} failed: {exc}") from exc
        for entity in entities:
            yield unquote(entity["RowKey"]), _stored(entity)
