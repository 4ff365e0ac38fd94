from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from greeter.db.session import get_db
from greeter.observability.tracing import CorrelationContext
from greeter.services.guest_service import replace_guest
from greeter.services.request_dependencies import get_app_logger, get_correlation

DEFAULT_NAME = "Guest"

router = APIRouter(tags=["greet"])


class GreetingResponse(PlainTextResponse):
    """Plain-text response that logs, rather than raises, a failed or timed-out body write."""

    def __init__(
        self,
        content: str,
        *,
        log: Any,
        ctx: CorrelationContext,
        write_timeout: float | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(content, **kwargs)
        self._log = log
        self._ctx = ctx
        self._write_timeout = write_timeout

    async def __call__(self, scope, receive, send) -> None:
        try:
            await asyncio.wait_for(super().__call__(scope, receive, send), timeout=self._write_timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            self._log.error("response.write_failed", error=repr(exc), **self._ctx.log_fields())


def render_greeting(name: str) -> str:
    return f"Hello, {name}\n"


def get_name(request: Request, ctx: CorrelationContext, log: Any) -> str:
    span = ctx.child('query.get("name")')
    values = request.query_params.getlist("name")
    name = values[0] if values else ""
    if not name:
        name = DEFAULT_NAME

    log.debug("received request for", name=name, **span.log_fields())
    return name


@router.get("/", response_class=PlainTextResponse)
@router.get("/hi", response_class=PlainTextResponse)
def greet(
    request: Request,
    db: Session | None = Depends(get_db),
    ctx: CorrelationContext = Depends(get_correlation),
    log: Any = Depends(get_app_logger),
) -> GreetingResponse:
    name = get_name(request, ctx, log)
    if db is not None:
        replace_guest(db, name, ctx, log)
    settings = request.app.state.settings
    return GreetingResponse(render_greeting(name), log=log, ctx=ctx, write_timeout=settings.write_timeout)
