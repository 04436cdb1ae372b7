"""Log record model and its JSON wire codec."""

import datetime
import json
from dataclasses import dataclass, field, asdict

# Keys dropped from the wire form when empty.
_OPTIONAL_KEYS = ("request_body", "response_body", "headers", "error")

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


class RecordDecodeError(ValueError):
    """Raised when a queue payload cannot be turned back into a LogRecord."""


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(frozen=True)
class LogRecord:
    """One structured log entry for a single request/response cycle."""

    trace_id: str
    span_id: str = ""
    timestamp: datetime.datetime = field(default_factory=_utcnow)
    method: str = ""
    path: str = ""
    status: int = 0
    latency_ms: float = 0.0
    client_ip: str = ""
    user_agent: str = ""
    request_body: str = ""
    response_body: str = ""
    headers: dict = field(default_factory=dict)
    service_name: str = ""
    environment: str = ""
    error: str = ""

    @property
    def unix_nanos(self) -> int:
        """Nanoseconds since the Unix epoch (microsecond resolution)."""
        ts = self.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=datetime.timezone.utc)
        return (ts - _EPOCH) // datetime.timedelta(microseconds=1) * 1000

    @property
    def stream_key(self) -> str:
        """Grouping key used when shaping outbound label streams."""
        return f"{self.service_name}-{self.environment}-{self.trace_id}"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        for key in _OPTIONAL_KEYS:
            if not data[key]:
                del data[key]
        return data

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes | str) -> "LogRecord":
        """Decode a payload produced by :meth:`to_json`.

        Only the shape needed to rebuild the record is checked; unknown
        keys are ignored and missing optional fields take empty defaults.
        """
        try:
            obj = json.loads(data)
        except (UnicodeDecodeError, ValueError) as exc:
            raise RecordDecodeError(f"invalid JSON payload: {exc}") from exc
        if not isinstance(obj, dict):
            raise RecordDecodeError("payload is not a JSON object")

        trace_id = obj.get("trace_id")
        if not isinstance(trace_id, str) or not trace_id:
            raise RecordDecodeError("missing trace_id")

        try:
            timestamp = datetime.datetime.fromisoformat(obj["timestamp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise RecordDecodeError(f"invalid timestamp: {exc}") from exc

        status = obj.get("status", 0)
        if isinstance(status, bool) or not isinstance(status, int):
            raise RecordDecodeError(f"invalid status: {status!r}")

        headers = obj.get("headers")
        if headers is None:
            headers = {}
        elif not isinstance(headers, dict):
            raise RecordDecodeError("headers is not an object")

        try:
            latency = float(obj.get("latency_ms", 0.0))
        except (TypeError, ValueError) as exc:
            raise RecordDecodeError(f"invalid latency_ms: {exc}") from exc

        return cls(
            trace_id=trace_id,
            span_id=str(obj.get("span_id", "")),
            timestamp=timestamp,
            method=str(obj.get("method", "")),
            path=str(obj.get("path", "")),
            status=status,
            latency_ms=latency,
            client_ip=str(obj.get("client_ip", "")),
            user_agent=str(obj.get("user_agent", "")),
            request_body=str(obj.get("request_body", "")),
            response_body=str(obj.get("response_body", "")),
            headers={str(k): str(v) for k, v in headers.items()},
            service_name=str(obj.get("service_name", "")),
            environment=str(obj.get("environment", "")),
            error=str(obj.get("error", "")),
        )
