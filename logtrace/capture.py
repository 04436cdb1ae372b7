"""Flask extension that turns every request/response exchange into a LogRecord.

The record is published to the durable queue under ``logs.<service>``.
Publishing happens inline on the request thread; a failure is logged and
never changes the response.
"""

import datetime
import logging
import time
import uuid
from dataclasses import dataclass, field

from flask import g, got_request_exception, request
from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.trace import (
    INVALID_SPAN_ID,
    INVALID_TRACE_ID,
    SpanKind,
    Status,
    StatusCode,
    format_span_id,
    format_trace_id,
)

from logtrace.broker import QueueError
from logtrace.models import LogRecord

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"
MAX_BODY_CHARS = 10_000
TRUNCATION_MARKER = "... (truncated)"

BINARY_CONTENT_TYPES = (
    "image/",
    "video/",
    "audio/",
    "application/octet-stream",
    "application/pdf",
    "application/zip",
)

_STATE_KEY = "_logtrace_state"


def is_binary_content(content_type: str | None) -> bool:
    """Case-sensitive substring check against known binary media types."""
    if not content_type:
        return False
    return any(marker in content_type for marker in BINARY_CONTENT_TYPES)


def truncate_body(body: str, limit: int = MAX_BODY_CHARS) -> str:
    if len(body) > limit:
        return body[:limit] + TRUNCATION_MARKER
    return body


def attach_error(message: str) -> None:
    """Attach an error message to the log record of the current request."""
    state = g.get(_STATE_KEY)
    if state is not None:
        state.errors.append(str(message))


@dataclass
class _RequestState:
    start: float
    trace_id: str
    span_id: str
    request_content_type: str
    request_body: bytes = b""
    span: object = None
    token: object = None
    errors: list = field(default_factory=list)


class _BodyTee:
    """Iterable that yields a streamed body unchanged and keeps a copy.

    *on_close* receives the mirrored bytes the first time the response
    is closed.
    """

    def __init__(self, iterable, on_close):
        self._iterable = iterable
        self._on_close = on_close
        self._buffer = bytearray()
        self._closed = False

    def __iter__(self):
        for chunk in self._iterable:
            if isinstance(chunk, str):
                self._buffer.extend(chunk.encode("utf-8"))
            else:
                self._buffer.extend(chunk)
            yield chunk

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            close = getattr(self._iterable, "close", None)
            if close is not None:
                close()
        finally:
            self._on_close(bytes(self._buffer))


class LogCapture:
    """Capture hook around each request of a Flask app."""

    def __init__(self, app=None, *, publisher=None, service_name: str = "microservice",
                 environment: str = "development", tracer_provider=None, propagator=None):
        self._publisher = publisher
        self.service_name = service_name
        self.environment = environment
        self._tracer = (
            tracer_provider.get_tracer(__name__) if tracer_provider is not None else None
        )
        self._propagator = propagator
        if app is not None:
            self.init_app(app)

    @property
    def subject(self) -> str:
        return f"logs.{self.service_name}"

    def init_app(self, app) -> None:
        # Run before any other before_request hook, and after_request last.
        app.before_request_funcs.setdefault(None, []).insert(0, self._before_request)
        app.after_request_funcs.setdefault(None, []).insert(0, self._after_request)
        app.teardown_request(self._teardown_request)
        got_request_exception.connect(self._on_exception, app, weak=False)
        app.extensions["logtrace"] = self

    # ------------------------------------------------------------------
    # Flask hooks
    # ------------------------------------------------------------------

    def _before_request(self):
        span, token, span_context = self._start_span()

        if span_context.trace_id != INVALID_TRACE_ID:
            trace_id = format_trace_id(span_context.trace_id)
        else:
            trace_id = str(uuid.uuid4())
        span_id = (
            format_span_id(span_context.span_id)
            if span_context.span_id != INVALID_SPAN_ID
            else ""
        )

        content_type = request.headers.get("Content-Type", "")
        body = b""
        if "multipart/form-data" not in content_type and not is_binary_content(content_type):
            # cache=True keeps the body readable for the view.
            body = request.get_data(cache=True)

        setattr(g, _STATE_KEY, _RequestState(
            start=time.perf_counter(),
            trace_id=trace_id,
            span_id=span_id,
            request_content_type=content_type,
            request_body=body,
            span=span,
            token=token,
        ))

    def _on_exception(self, sender, exception, **extra):
        state = g.get(_STATE_KEY)
        if state is None:
            return
        state.errors.append(f"{type(exception).__name__}: {exception}")
        if state.span is not None:
            state.span.record_exception(exception)
            state.span.set_status(Status(StatusCode.ERROR, str(exception)))

    def _after_request(self, response):
        state = g.get(_STATE_KEY)
        if state is None:
            return response

        response.headers[TRACE_HEADER] = state.trace_id
        if state.span is not None:
            state.span.set_attribute("http.status_code", response.status_code)
            if response.status_code >= 500:
                state.span.set_status(Status(StatusCode.ERROR))

        fields = self._request_fields(state, response.status_code)
        capture_response = not (
            is_binary_content(state.request_content_type)
            or is_binary_content(response.headers.get("Content-Type"))
        )

        if (capture_response and response.is_streamed and response.status_code >= 400
                and not response.direct_passthrough):
            # Error pages built from HTTPExceptions arrive as iterators.
            response.make_sequence()

        if capture_response and response.is_streamed:
            response.response = _BodyTee(
                response.response,
                lambda body: self._publish(state, fields, body),
            )
        else:
            body = response.get_data() if capture_response else b""
            self._publish(state, fields, body)
        return response

    def _teardown_request(self, exc):
        state = g.get(_STATE_KEY)
        if state is None or state.span is None:
            return
        if state.token is not None:
            otel_context.detach(state.token)
            state.token = None
        state.span.end()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start_span(self):
        """Start the request span. Returns (span, context token, span context)."""
        parent = (
            self._propagator.extract(carrier=request.headers)
            if self._propagator is not None
            else None
        )
        if self._tracer is None:
            span_context = trace.get_current_span().get_span_context()
            if not span_context.is_valid and parent is not None:
                span_context = trace.get_current_span(parent).get_span_context()
            return None, None, span_context

        rule = request.url_rule.rule if request.url_rule is not None else request.path
        span = self._tracer.start_span(
            f"{request.method} {rule}",
            context=parent,
            kind=SpanKind.SERVER,
            attributes={"http.method": request.method, "http.target": request.path},
        )
        token = otel_context.attach(trace.set_span_in_context(span, parent))
        return span, token, span.get_span_context()

    def _request_fields(self, state: _RequestState, status: int) -> dict:
        headers: dict[str, str] = {}
        for name, value in request.headers.items():
            headers.setdefault(name, value)

        request_body = ""
        if state.request_body and not is_binary_content(state.request_content_type):
            request_body = truncate_body(state.request_body.decode("utf-8", errors="replace"))

        return {
            "trace_id": state.trace_id,
            "span_id": state.span_id,
            "method": request.method,
            "path": request.path,
            "status": status,
            "client_ip": _client_ip(),
            "user_agent": request.headers.get("User-Agent", ""),
            "request_body": request_body,
            "headers": headers,
            "service_name": self.service_name,
            "environment": self.environment,
            "error": "; ".join(state.errors),
        }

    def _publish(self, state: _RequestState, fields: dict, response_body: bytes) -> None:
        record = LogRecord(
            timestamp=datetime.datetime.now(datetime.timezone.utc),
            latency_ms=max((time.perf_counter() - state.start) * 1000.0, 0.0),
            response_body=truncate_body(response_body.decode("utf-8", errors="replace")),
            **fields,
        )
        try:
            payload = record.to_json()
        except (TypeError, ValueError) as exc:
            logger.warning("Could not serialize log entry for trace %s: %s", record.trace_id, exc)
            return

        if self._publisher is None:
            return
        try:
            self._publisher.publish(self.subject, payload)
        except QueueError as exc:
            logger.warning("Failed to publish log entry for trace %s: %s", record.trace_id, exc)


def _client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-Ip", "").strip()
    return real_ip or (request.remote_addr or "")
