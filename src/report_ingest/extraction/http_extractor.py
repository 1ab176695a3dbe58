import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema
import requests

from report_ingest.engine.errors import ExtractionError, ExtractionTimeout, TransientDownstreamError
from report_ingest.shared.logging import get_logger
from report_ingest.sources.interfaces import WorkItem

from .interfaces import StructuredRecord


logger = get_logger("report_ingest.extraction")

SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "extraction-result.v1.schema.json"
REPORT_TYPE = "PRODUCT_MIX"
METRIC_FIELDS = ("quantity_sold", "net_sales", "discounts")

_schema_cache: Dict[str, Dict[str, Any]] = {}


def load_schema(path: Path = SCHEMA_PATH) -> Dict[str, Any]:
    cache_key = str(path)
    if cache_key not in _schema_cache:
        with path.open("r", encoding="utf-8") as handle:
            _schema_cache[cache_key] = json.load(handle)
    return _schema_cache[cache_key]


def _metric_id(record_id: str, metric: str, item_name: str) -> str:
    return f"{record_id}-{metric}-{re.sub(r'[^a-zA-Z0-9]', '', item_name)}"


def build_record(item: WorkItem, payload: Optional[Dict[str, Any]]) -> Optional[StructuredRecord]:
    """Turn a validated extraction payload into a record; ``None`` when it carries no report."""
    if not payload or not payload.get("reportData"):
        return None
    report_data = payload["reportData"]
    record_id = f"{report_data['report_date']}-{item.id}"
    report = {
        "report_id": record_id,
        "report_type": REPORT_TYPE,
        "report_date": report_data["report_date"],
        "location": report_data.get("location"),
        "created_at": item.created_at,
    }
    rows: List[Dict[str, Any]] = []
    for line in payload.get("metricsData") or []:
        dimensions = {"category": line.get("category"), "item_name": line["item_name"]}
        for metric in METRIC_FIELDS:
            rows.append(
                {
                    "row_id": _metric_id(record_id, metric, line["item_name"]),
                    "report_id": record_id,
                    "metric_name": metric,
                    "metric_value": line.get(metric),
                    "dimensions": json.dumps(dimensions, sort_keys=True),
                }
            )
    return StructuredRecord(record_id=record_id, item_id=item.id, report=report, rows=rows)


class HttpExtractor:
    def __init__(self, url: str, timeout: float = 90.0, session: Optional[requests.Session] = None) -> None:
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()
        self._schema = load_schema()

    def extract(self, item: WorkItem) -> Optional[StructuredRecord]:
        try:
            response = self._session.post(
                self._url,
                files={"file": (item.name, item.payload(), "application/pdf")},
                data={"item_id": item.id},
                timeout=self._timeout,
            )
        except requests.Timeout as exc:
            raise ExtractionTimeout(f"extraction of {item.name} timed out") from exc
        except requests.ConnectionError as exc:
            raise TransientDownstreamError(f"extractor unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise TransientDownstreamError(f"extractor error {response.status_code}: {response.text[:200]}")
        if response.status_code >= 400:
            raise ExtractionError(f"extractor rejected {item.name}: {response.status_code} {response.text[:200]}")
        if response.status_code == 204 or not response.content:
            return None

        try:
            payload = response.json()
        except ValueError as exc:
            raise ExtractionError(f"extractor returned invalid JSON for {item.name}") from exc
        if payload is None:
            return None
        try:
            jsonschema.validate(instance=payload, schema=self._schema)
        except jsonschema.ValidationError as exc:
            raise ExtractionError(f"extraction result for {item.name} invalid: {exc.message}") from exc

        record = build_record(item, payload)
        if record is None:
            logger.info("extraction.empty", extra={"item_id": item.id, "item_name": item.name})
        return record
