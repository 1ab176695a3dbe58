import json
from typing import Any, Dict, List
from urllib.parse import quote

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.data.tables import TableServiceClient, UpdateMode

from report_ingest.engine.errors import FatalWriteError, TransientWriteError
from report_ingest.extraction.interfaces import StructuredRecord


TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}
TRANSACTION_LIMIT = 100


def _entity_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return json.dumps(value, sort_keys=True)


def _entity(partition_key: str, row_key: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    entity = {"PartitionKey": quote(partition_key, safe=""), "RowKey": quote(row_key, safe="")}
    for name, value in fields.items():
        converted = _entity_value(value)
        if converted is not None:
            entity[name] = converted
    return entity


def classify_azure_error(exc: AzureError) -> Exception:
    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return TransientWriteError(str(exc))
    if isinstance(exc, HttpResponseError) and exc.status_code in TRANSIENT_STATUS_CODES:
        return TransientWriteError(str(exc))
    return FatalWriteError(str(exc))


class TableSink:
    """Loads a record into two tables: one report header row, then its metric rows.

    Rows are only written once the header landed. All writes are upserts, so
    retrying a partially written record is harmless.
    """

    def __init__(self, service_client: TableServiceClient, reports_table: str, rows_table: str) -> None:
        self._service = service_client
        self._reports_table_name = reports_table
        self._rows_table_name = rows_table
        self._reports = service_client.get_table_client(reports_table)
        self._rows = service_client.get_table_client(rows_table)

    def ensure_ready(self) -> None:
        try:
            self._reports = self._service.create_table_if_not_exists(self._reports_table_name)
            self._rows = self._service.create_table_if_not_exists(self._rows_table_name)
        except AzureError as exc:
            raise classify_azure_error(exc) from exc

    def write(self, record: StructuredRecord) -> None:
        header = _entity("report", record.record_id, {**record.report, "item_id": record.item_id})
        try:
            self._reports.upsert_entity(header, mode=UpdateMode.REPLACE)
            for batch in self._row_batches(record):
                self._rows.submit_transaction(batch)
        except AzureError as exc:
            raise classify_azure_error(exc) from exc

    def _row_batches(self, record: StructuredRecord) -> List[List[Any]]:
        operations = []
        for index, row in enumerate(record.rows):
            row_key = str(row.get("row_id") or f"{record.record_id}-{index:05d}")
            entity = _entity(record.record_id, row_key, row)
            operations.append(("upsert", entity, {"mode": UpdateMode.REPLACE}))
        return [operations[i : i + TRANSACTION_LIMIT] for i in range(0, len(operations), TRANSACTION_LIMIT)]
