from __future__ import annotations

import logging
from typing import Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response

from gemini_key_proxy.credentials import CredentialPool
from gemini_key_proxy.errors import AuthError, ConfigurationError, ProxyError
from gemini_key_proxy.gateway.auth import AuthGate
from gemini_key_proxy.gateway.cors import apply_cors, preflight_response
from gemini_key_proxy.proxy import RequestContext, UpstreamDispatcher, to_fastapi_response
from gemini_key_proxy.retry import RetryOrchestrator
from gemini_key_proxy.settings import Settings, get_settings

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]

app = FastAPI(
    title="Gemini Key Proxy",
    description="Authenticating reverse proxy that spreads requests over a pool of Gemini API keys.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


def _error_response(exc: ProxyError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthError) else None
    return JSONResponse(
        status_code=exc.status_code,
        headers=headers,
        content={
            "error": {
                "code": exc.status_code,
                "message": exc.message,
                "type": exc.error_type,
            },
        },
    )


@app.middleware("http")
async def cors_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if request.method == "OPTIONS":
        return preflight_response()

    try:
        response = await call_next(request)
    except Exception:
        logger.exception(
            "proxy_unhandled_error method=%s path=%s",
            request.method,
            request.url.path,
        )
        response = JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": status.HTTP_500_INTERNAL_SERVER_ERROR,
                    "message": "Internal server error.",
                    "type": "internal_error",
                },
            },
        )
    return apply_cors(response)


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    return _error_response(exc)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    app.state.settings = settings
    app.state.auth_gate = AuthGate(settings)
    app.state.dispatcher = UpstreamDispatcher(settings)
    if not settings.api_keys_list or not settings.expected_auth_code:
        logger.error(
            "config_error api_keys=%d auth_code_set=%s; proxied requests will fail with 500",
            len(settings.api_keys_list),
            bool(settings.expected_auth_code),
        )
    logger.info(
        "startup complete upstream=%s api_keys=%d max_retries=%d",
        settings.upstream_origin,
        len(settings.api_keys_list),
        settings.retry_budget,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    dispatcher: UpstreamDispatcher | None = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.close()
    logger.info("shutdown complete")


@app.get("/healthz")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy(request: Request) -> Response:
    settings: Settings = app.state.settings
    auth_gate: AuthGate = app.state.auth_gate
    dispatcher: UpstreamDispatcher = app.state.dispatcher

    request_id = request.headers.get("x-request-id") or uuid4().hex[:12]
    try:
        auth_gate.verify(request.headers)
    except ConfigurationError as exc:
        logger.error("config_error request_id=%s message=%s", request_id, exc.message)
        raise
    except AuthError:
        logger.info(
            "auth_rejected request_id=%s method=%s path=%s",
            request_id,
            request.method,
            request.url.path,
        )
        raise

    context = await RequestContext.from_request(request, request_id)
    orchestrator = RetryOrchestrator(
        dispatcher=dispatcher,
        pool=CredentialPool(settings.api_keys_list),
        max_retries=settings.retry_budget,
        is_disconnected=request.is_disconnected,
    )
    outcome = await orchestrator.run(context)
    return to_fastapi_response(outcome)


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "gemini_key_proxy.main:app",
        host=_settings.proxy_host,
        port=_settings.proxy_port,
        log_level=_settings.log_level,
        reload=False,
    )
