from __future__ import annotations

from typing import Any, Callable

from starlette.datastructures import Headers, MutableHeaders

from greeter.observability.tracing import CorrelationContext


class CorrelationMiddleware:
    """Derives a CorrelationContext per request and logs access.

    The context is stored on request.state and echoed back as the ``X-Trace-ID``
    and ``traceparent`` response headers.
    """

    def __init__(self, app: Callable[..., Any], logger: Any) -> None:
        self.app = app
        self.logger = logger

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        ctx = CorrelationContext.from_traceparent(headers.get("traceparent"), name=f"{scope.get('method')} {scope.get('path')}")
        scope.setdefault("state", {})["correlation"] = ctx

        status_code: int = 500

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code

            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 500))
                response_headers = MutableHeaders(scope=message)
                response_headers["X-Trace-ID"] = ctx.trace_id
                response_headers["traceparent"] = ctx.traceparent()

            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            self.logger.info(
                "http_request",
                path=scope.get("path"),
                method=scope.get("method"),
                status_code=status_code,
                elapsed_ms=round(ctx.elapsed_ms(), 2),
                **ctx.log_fields(),
            )
