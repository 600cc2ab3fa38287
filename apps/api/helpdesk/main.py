from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from helpdesk.core.config import get_settings
from helpdesk.core.errors import InvalidPayloadError, NotFoundError, PermissionDeniedError
from helpdesk.core.metrics import observe_http_request
from helpdesk.core.middleware import (
    build_request_id,
    log_json,
    log_request_completion,
    now_ts,
    request_id_ctx,
)
from helpdesk.routers.categories import router as categories_router
from helpdesk.routers.health import router as health_router
from helpdesk.routers.me import router as me_router
from helpdesk.routers.tickets import router as tickets_router

logger = logging.getLogger("helpdesk.api")


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PermissionDeniedError)
    async def _forbidden(request: Request, exc: PermissionDeniedError) -> JSONResponse:
        # Scope details stay in the log; clients only learn that the action was refused.
        log_json(
            logger,
            logging.WARNING,
            "authz.denied",
            method=request.method,
            path=request.url.path,
            required_permission=exc.required_permission,
            resource_type=exc.resource_type,
            context=exc.context,
        )
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": "Forbidden"})

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": f"{exc.resource_type} not found"},
        )

    @app.exception_handler(InvalidPayloadError)
    async def _invalid(request: Request, exc: InvalidPayloadError) -> JSONResponse:
        return JSONResponse(
            status_code=422, content={"detail": str(exc)}
        )


def create_app() -> FastAPI:
    app = FastAPI(title="Helpdesk API")

    settings = get_settings()

    @app.middleware("http")
    async def add_request_context(request, call_next):  # type: ignore[no-untyped-def]
        request_id = build_request_id(request, header_name=settings.REQUEST_ID_HEADER)
        token = request_id_ctx.set(request_id)
        start_ts = now_ts()
        method = request.method
        path = request.url.path
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[settings.REQUEST_ID_HEADER] = request_id
            return response
        finally:
            duration_ms = int((now_ts() - start_ts) * 1000)
            log_request_completion(
                request_id=request_id,
                method=method,
                path=path,
                status_code=status_code,
                duration_ms=duration_ms,
            )
            if settings.ENABLE_PROMETHEUS_METRICS:
                observe_http_request(
                    method=method,
                    path=_route_template(request),
                    status_code=status_code,
                    duration_ms=duration_ms,
                )
            request_id_ctx.reset(token)

    _install_error_handlers(app)

    if settings.ENABLE_PROMETHEUS_METRICS:

        @app.get(settings.PROMETHEUS_METRICS_PATH, include_in_schema=False)
        def metrics() -> Response:
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(health_router)
    app.include_router(me_router)
    app.include_router(tickets_router)
    app.include_router(categories_router)
    return app


app = create_app()
