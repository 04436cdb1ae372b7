"""Loki push client: shapes records into label streams and POSTs them."""

import json
import logging
from dataclasses import dataclass, field
from urllib.parse import urlsplit, urlunsplit

import httpx

from logtrace.models import LogRecord

logger = logging.getLogger(__name__)


class SinkError(Exception):
    """Delivery to the log store failed."""

    def __init__(self, message: str, status: int | None = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


@dataclass
class StreamGroup:
    """Records sharing one label set in the outbound payload."""

    labels: dict
    records: list = field(default_factory=list)


def group_records(records: list[LogRecord]) -> list[StreamGroup]:
    """Partition records by service + environment + trace id.

    Each group is labelled from its first record; order of first
    appearance is preserved for groups and for records within a group.
    """
    groups: dict[str, StreamGroup] = {}
    for record in records:
        group = groups.get(record.stream_key)
        if group is None:
            group = StreamGroup(labels={
                "service": record.service_name,
                "environment": record.environment,
                "trace_id": record.trace_id,
            })
            groups[record.stream_key] = group
        group.records.append(record)
    return list(groups.values())


def _values(records) -> list[list[str]]:
    return [[str(r.unix_nanos), r.to_json().decode("utf-8")] for r in records]


class LokiClient:
    """Sends log records to the Loki push API."""

    def __init__(self, url: str, timeout: float = 10.0, http_client: httpx.Client | None = None):
        self._url = url
        self._client = http_client or httpx.Client(timeout=timeout)

    @property
    def url(self) -> str:
        return self._url

    def send_batch(self, groups: list[StreamGroup]) -> None:
        """Push all groups in a single request. Raises SinkError on failure."""
        streams = [
            {"stream": dict(group.labels), "values": _values(group.records)}
            for group in groups
            if group.records
        ]
        if not streams:
            return
        self._push({"streams": streams})

    def send_one(self, record: LogRecord) -> None:
        """Push a single record with its full label set."""
        labels = {
            "service": record.service_name,
            "environment": record.environment,
            "trace_id": record.trace_id,
            "method": record.method,
            "status": str(record.status),
        }
        self._push({"streams": [{"stream": labels, "values": _values([record])}]})

    def check_ready(self) -> None:
        """GET the /ready endpoint next to the push URL. Raises SinkError."""
        parts = urlsplit(self._url)
        ready_url = urlunsplit((parts.scheme, parts.netloc, "/ready", "", ""))
        try:
            response = self._client.get(ready_url)
        except httpx.HTTPError as exc:
            raise SinkError(f"log store not reachable at {ready_url}: {exc}") from exc
        if response.status_code >= 400:
            raise SinkError(
                f"log store not ready: {response.status_code}",
                status=response.status_code,
                body=response.text,
            )

    def close(self) -> None:
        self._client.close()

    def _push(self, payload: dict) -> None:
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        try:
            response = self._client.post(
                self._url,
                content=body,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise SinkError(f"failed to send request to log store: {exc}") from exc

        if response.status_code >= 400:
            raise SinkError(
                f"log store returned error status: {response.status_code}, body: {response.text}",
                status=response.status_code,
                body=response.text,
            )
