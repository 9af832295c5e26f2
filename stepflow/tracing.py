"""Trace context propagated to child processes through TRACEPARENT."""

import secrets


class TraceContext:
    """W3C trace context for one stepflow run."""

    def __init__(self, trace_id: str = ""):
        self.trace_id = trace_id or secrets.token_hex(16)

    def new_span_id(self) -> str:
        return secrets.token_hex(8)

    def get_propagation_env(self):
        """Environment variables for a child process, with a fresh span id."""
        traceparent = f"00-{self.trace_id}-{self.new_span_id()}-01"
        return {
            "TRACEPARENT": traceparent,
            "OTEL_TRACE_PARENT": traceparent,
        }
