from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from greeter.api.greet import router as greet_router
from greeter.config import Settings
from greeter.db.session import GuestStore
from greeter.observability.middleware import CorrelationMiddleware
from greeter.services.request_dependencies import get_correlation


def create_app(settings: Settings, *, logger: Any, store: GuestStore | None = None) -> FastAPI:
    """Build the app around an already-open logger and (optional) guest store.

    Both are owned by the caller, which closes them at shutdown.
    """

    app = FastAPI(
        title="Greeter",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        # "/hi/" is an unknown route, not a redirect to "/hi".
        redirect_slashes=False,
    )
    app.state.settings = settings
    app.state.logger = logger
    app.state.store = store if settings.persist_guests else None

    app.include_router(greet_router)
    app.add_middleware(CorrelationMiddleware, logger=logger)

    @app.exception_handler(StarletteHTTPException)
    async def not_found(request: Request, exc: StarletteHTTPException) -> Response:
        if exc.status_code != 404:
            return await http_exception_handler(request, exc)

        ctx = get_correlation(request)
        logger.error("unknown route error", path=request.url.path, method=request.method, **ctx.log_fields())
        return Response(status_code=404)

    return app
