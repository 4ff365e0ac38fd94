from __future__ import annotations

from typing import Any

from fastapi import Request

from greeter.observability.tracing import CorrelationContext


def get_correlation(request: Request) -> CorrelationContext:
    ctx = getattr(request.state, "correlation", None)
    if ctx is None:
        # Only reachable when the app runs without CorrelationMiddleware.
        ctx = CorrelationContext.new()
        request.state.correlation = ctx
    return ctx


def get_app_logger(request: Request) -> Any:
    return request.app.state.logger
