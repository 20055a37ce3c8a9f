from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exception_handlers import (
    http_exception_handler,
    request_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from relaylb.core.errors import RouterError, dashboard_error, openai_error

logger = logging.getLogger(__name__)


def add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RouterError)
    async def router_error_handler(request: Request, exc: RouterError) -> Response:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> Response:
        if request.url.path.startswith("/api/"):
            return JSONResponse(
                status_code=422,
                content=dashboard_error("validation_error", "Invalid request payload"),
            )
        if request.url.path.startswith("/v1/"):
            error = openai_error("invalid_request", "Invalid request payload", error_type="invalid_request_error")
            if exc.errors():
                first = exc.errors()[0]
                loc = first.get("loc", [])
                if isinstance(loc, (list, tuple)):
                    param = ".".join(str(part) for part in loc if part != "body")
                    if param:
                        error["error"]["param"] = param
            return JSONResponse(status_code=400, content=error)
        return await request_validation_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(
        request: Request,
        exc: StarletteHTTPException,
    ) -> Response:
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
        if request.url.path.startswith("/api/"):
            return JSONResponse(
                status_code=exc.status_code,
                content=dashboard_error(f"http_{exc.status_code}", detail),
            )
        if request.url.path.startswith("/v1/"):
            error_type = "server_error" if exc.status_code >= 500 else "invalid_request_error"
            code = "not_found" if exc.status_code == 404 else f"http_{exc.status_code}"
            return JSONResponse(status_code=exc.status_code, content=openai_error(code, detail, error_type=error_type))
        return await http_exception_handler(request, exc)

    @app.middleware("http")
    async def api_unhandled_error_middleware(request: Request, call_next) -> Response:
        try:
            return await call_next(request)
        except Exception:
            if request.url.path.startswith("/api/"):
                logger.exception("Unhandled API error path=%s", request.url.path)
                return JSONResponse(
                    status_code=500,
                    content=dashboard_error("internal_error", "Unexpected error"),
                )
            raise
