from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import APIRouter, FastAPI, Request, Response, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from referral_relay.app.models import (
    EndpointNotFoundResponse,
    ErrorResponse,
    HealthResponse,
    to_body,
    utc_now,
)
from referral_relay.app.observability import RelayMetrics, configure_logging, observe_request
from referral_relay.app.services.crm import GoHighLevelClient
from referral_relay.app.services.rate_limiter import SlidingWindowRateLimiter
from referral_relay.app.services.referrals import ContactGateway, ReferralIncrementHandler
from referral_relay.app.settings import Settings, load_settings

logger = logging.getLogger("referral_relay")

REFERRAL_ROUTE = "/increment-referral"
AVAILABLE_ENDPOINTS = [
    "GET /increment-referral?contactId=<id>",
    "GET /health",
    "GET /metrics",
]
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "same-origin",
}


def create_app(
    settings: Optional[Settings] = None,
    crm_client: Optional[ContactGateway] = None,
    rate_limiter: Optional[SlidingWindowRateLimiter] = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    app = FastAPI(title="GoHighLevel Referral Relay", version="0.1.0")
    if crm_client is None:
        crm_client = GoHighLevelClient(
            api_key=settings.ghl_api_key,
            base_url=settings.ghl_api_base,
            api_version=settings.ghl_api_version,
            timeout=settings.ghl_timeout_seconds,
        )
    if rate_limiter is None:
        rate_limiter = SlidingWindowRateLimiter(
            window_ms=settings.rate_limit_window_ms,
            max_requests=settings.rate_limit_max_requests,
        )
    app.state.settings = settings
    app.state.rate_limiter = rate_limiter
    app.state.metrics = RelayMetrics()
    app.state.referral_handler = ReferralIncrementHandler(
        settings=settings,
        crm_client=crm_client,
        rate_limiter=rate_limiter,
        metrics=app.state.metrics,
    )
    app.state.started_at = time.monotonic()

    @app.middleware("http")
    async def response_headers_middleware(request: Request, call_next):
        if request.method == "OPTIONS":
            response: Response = Response(status_code=status.HTTP_200_OK)
        else:
            response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        response.headers.update(SECURITY_HEADERS)
        return response

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(Exception, handle_unexpected_exception)
    app.include_router(build_router())
    return app


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> RelayMetrics:
    return request.app.state.metrics


def get_referral_handler(request: Request) -> ReferralIncrementHandler:
    return request.app.state.referral_handler


def first_query_value(request: Request, name: str) -> Optional[str]:
    values = request.query_params.getlist(name)
    return values[0] if values else None


def client_key_for(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",", 1)[0].strip()
    if first_hop:
        return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> Response:
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        body = EndpointNotFoundResponse(available_endpoints=AVAILABLE_ENDPOINTS)
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=to_body(body))
    return await http_exception_handler(request, exc)


async def handle_unexpected_exception(request: Request, exc: Exception) -> Response:
    logger.error(
        "unhandled_error method=%s path=%s error=%s",
        request.method,
        request.url.path,
        exc,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=to_body(ErrorResponse(error="Internal server error")),
        headers={**CORS_HEADERS, **SECURITY_HEADERS},
    )


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health(request: Request) -> dict:
        settings = get_settings(request)
        uptime = time.monotonic() - request.app.state.started_at
        return to_body(
            HealthResponse(
                timestamp=utc_now(),
                uptime_seconds=round(uptime, 3),
                environment=settings.app_env,
            )
        )

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        limiter: SlidingWindowRateLimiter = request.app.state.rate_limiter
        return PlainTextResponse(registry.render(tracked_clients=limiter.tracked_keys()))

    @router.get(REFERRAL_ROUTE)
    def increment_referral(request: Request) -> Response:
        handler = get_referral_handler(request)
        outcome = handler.handle(
            first_query_value(request, "contactId"),
            client_key_for(request),
        )
        return JSONResponse(status_code=outcome.status_code, content=outcome.body)

    @router.api_route(REFERRAL_ROUTE, methods=["POST", "PUT", "PATCH", "DELETE", "HEAD"])
    def referral_method_not_allowed() -> Response:
        return JSONResponse(
            status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
            content=to_body(ErrorResponse(error="Method not allowed")),
        )

    return router
