from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any


_TRACEPARENT_RE = re.compile(r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$")
_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16


def _new_trace_id() -> str:
    return secrets.token_hex(16)


def _new_span_id() -> str:
    return secrets.token_hex(8)


@dataclass(frozen=True)
class CorrelationContext:
    """Trace/span identifiers for one request.

    Passed by value down the request path so every log record and store call
    can be attributed to the request that caused it. The request-level span
    (``transaction_id``) stays fixed while child spans get their own ``span_id``.
    """

    trace_id: str
    span_id: str
    transaction_id: str
    parent_id: str | None = None
    name: str = "request"
    started_at: float = field(default_factory=perf_counter, compare=False)

    @classmethod
    def new(cls, name: str = "request") -> CorrelationContext:
        span_id = _new_span_id()
        return cls(trace_id=_new_trace_id(), span_id=span_id, transaction_id=span_id, name=name)

    @classmethod
    def from_traceparent(cls, header: str | None, name: str = "request") -> CorrelationContext:
        """Continue the caller's trace when ``header`` is a valid W3C traceparent."""

        parsed = parse_traceparent(header)
        if parsed is None:
            return cls.new(name=name)

        trace_id, parent_id = parsed
        span_id = _new_span_id()
        return cls(trace_id=trace_id, span_id=span_id, transaction_id=span_id, parent_id=parent_id, name=name)

    def child(self, name: str) -> CorrelationContext:
        return CorrelationContext(
            trace_id=self.trace_id,
            span_id=_new_span_id(),
            transaction_id=self.transaction_id,
            parent_id=self.span_id,
            name=name,
        )

    def elapsed_ms(self) -> float:
        return (perf_counter() - self.started_at) * 1000.0

    def log_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "trace.id": self.trace_id,
            "transaction.id": self.transaction_id,
        }
        if self.span_id != self.transaction_id:
            fields["span.id"] = self.span_id
        return fields

    def traceparent(self) -> str:
        return f"00-{self.trace_id}-{self.span_id}-01"


def parse_traceparent(header: str | None) -> tuple[str, str] | None:
    if not header:
        return None

    match = _TRACEPARENT_RE.match(header.strip().lower())
    if not match:
        return None

    version, trace_id, parent_id, _flags = match.groups()
    # Version ff is reserved as invalid by W3C trace-context.
    if version == "ff":
        return None
    if trace_id == _ZERO_TRACE_ID or parent_id == _ZERO_SPAN_ID:
        return None
    return trace_id, parent_id
