from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from structlog.contextvars import bind_contextvars, reset_contextvars

from influencer_finder.api.routes import CACHE_STATUS_HEADER, health_check, router
from influencer_finder.dependencies import get_settings, get_telemetry
from influencer_finder.logging_config import configure_application_logging
from influencer_finder.models.search_contracts import HealthResponse
from influencer_finder.services.candidates import SearchMode

REQUEST_ID_HEADER = "X-Request-ID"

_SEARCH_MODE_BY_PATH: dict[str, SearchMode] = {
    "/search/influencers": "channels",
    "/search/videos": "videos",
}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    configure_application_logging(get_settings())
    yield


def _request_id(request: Request) -> str:
    supplied = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    return supplied or f"req_{uuid4().hex}"


async def search_request_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Bind a request id to every log line and report one telemetry event per request."""
    request_id = _request_id(request)
    search_mode = _SEARCH_MODE_BY_PATH.get(request.url.path)
    context_tokens = bind_contextvars(
        request_id=request_id,
        http_path=request.url.path,
        search_mode=search_mode,
    )
    started_at = perf_counter()
    outcome: dict[str, object] = {}
    try:
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        outcome["status_code"] = response.status_code
        if search_mode is not None:
            outcome["cache_hit"] = response.headers.get(CACHE_STATUS_HEADER) == "HIT"
        return response
    except Exception as exc:
        outcome["error_type"] = type(exc).__name__
        raise
    finally:
        get_telemetry().emit(
            "api.request",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            search_mode=search_mode,
            duration_ms=int((perf_counter() - started_at) * 1000),
            **outcome,
        )
        reset_contextvars(**context_tokens)


def create_app() -> FastAPI:
    app = FastAPI(title="Influencer Finder API", version="0.1.0", lifespan=app_lifespan)
    app.middleware("http")(search_request_middleware)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        response_model=HealthResponse,
        tags=["system"],
        operation_id="health_check",
    )
    return app


app = create_app()
