from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Mapping

import httpx
from fastapi.responses import Response, StreamingResponse
from starlette.requests import Request

from gemini_key_proxy.credentials import mask_credential
from gemini_key_proxy.errors import (
    ProxyError,
    RetryableUpstreamError,
    TerminalUpstreamError,
)
from gemini_key_proxy.gateway.auth import API_KEY_HEADER
from gemini_key_proxy.settings import Settings

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
}
CALLER_AUTH_HEADERS = {"authorization", API_KEY_HEADER}
API_CLIENT_HEADER = "x-goog-api-client"
RETRYABLE_STATUSES = {401, 429}

logger = logging.getLogger("uvicorn.error")


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass(slots=True, frozen=True)
class RequestContext:
    method: str
    headers: Mapping[str, str]
    path: str
    query: str
    body: bytes
    request_id: str = "-"

    @classmethod
    async def from_request(cls, request: Request, request_id: str) -> RequestContext:
        raw_path = request.scope.get("raw_path")
        path = raw_path.decode("latin-1") if raw_path else request.url.path
        return cls(
            method=request.method,
            headers=request.headers,
            path=path,
            query=request.url.query,
            body=await request.body(),
            request_id=request_id,
        )


@dataclass(slots=True)
class AttemptOutcome:
    kind: OutcomeKind
    credential_hint: str
    status_code: int | None = None
    upstream: httpx.Response | None = None
    error: ProxyError | None = None
    exception: Exception | None = None

    @property
    def retryable(self) -> bool:
        return self.kind is OutcomeKind.RETRYABLE


def classify_status(status_code: int) -> OutcomeKind:
    if status_code in RETRYABLE_STATUSES or status_code >= 500:
        return OutcomeKind.RETRYABLE
    if status_code < 400:
        return OutcomeKind.SUCCESS
    return OutcomeKind.TERMINAL


def build_upstream_headers(
    incoming_headers: Mapping[str, str],
    credential: str,
    has_body: bool,
    api_client: str,
) -> list[tuple[str, str]]:
    # a list keeps repeated header lines intact
    headers: list[tuple[str, str]] = []
    for name, value in incoming_headers.items():
        lower = name.lower()
        if lower in HOP_BY_HOP_HEADERS or lower in CALLER_AUTH_HEADERS:
            continue
        headers.append((name, value))

    present = {name.lower() for name, _ in headers}
    headers.append((API_KEY_HEADER, credential))
    if has_body and "content-type" not in present:
        headers.append(("Content-Type", "application/json"))
    if API_CLIENT_HEADER not in present:
        headers.append((API_CLIENT_HEADER, api_client))
    # bodies are relayed raw, so never ask for an encoding the caller did not
    if "accept-encoding" not in present:
        headers.append(("Accept-Encoding", "identity"))
    return headers


def _filter_response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    return [
        (name, value)
        for name, value in headers.multi_items()
        if name.lower() not in HOP_BY_HOP_HEADERS
    ]


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    return {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__ or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


class UpstreamDispatcher:
    """Sends exactly one upstream attempt per call and classifies the result."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.origin = settings.upstream_origin
        self.api_client = settings.default_api_client
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=max(0.1, settings.upstream_connect_timeout_seconds),
                read=max(0.1, settings.upstream_read_timeout_seconds),
                write=max(0.1, settings.upstream_write_timeout_seconds),
                pool=max(0.1, settings.upstream_pool_timeout_seconds),
            ),
            limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
            follow_redirects=True,
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    def build_target_url(self, path: str, query: str) -> str:
        if not path.startswith("/"):
            path = f"/{path}"
        url = f"{self.origin}{path}"
        if query:
            url = f"{url}?{query}"
        return url

    async def dispatch(self, context: RequestContext, credential: str) -> AttemptOutcome:
        hint = mask_credential(credential)
        headers = build_upstream_headers(
            context.headers,
            credential=credential,
            has_body=bool(context.body),
            api_client=self.api_client,
        )
        request = self.client.build_request(
            method=context.method,
            url=self.build_target_url(context.path, context.query),
            content=context.body or None,
            headers=headers,
        )
        attempt_started = time.perf_counter()
        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "proxy_request_error request_id=%s key=%s error_type=%s timeout=%s error=%s",
                context.request_id,
                hint,
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            return AttemptOutcome(
                kind=OutcomeKind.RETRYABLE,
                credential_hint=hint,
                error=RetryableUpstreamError(
                    f"Upstream request failed ({details['error_type']}): {details['error']}"
                ),
                exception=exc,
            )

        logger.info(
            "proxy_upstream_connected request_id=%s key=%s connect_ms=%.2f status=%d",
            context.request_id,
            hint,
            (time.perf_counter() - attempt_started) * 1000.0,
            upstream.status_code,
        )
        kind = classify_status(upstream.status_code)
        message = (
            f"Google API returned status {upstream.status_code}: "
            f"{upstream.reason_phrase}"
        )
        if kind is OutcomeKind.RETRYABLE:
            # the body must be consumed before the connection can be reused
            try:
                await upstream.aread()
            except httpx.RequestError as exc:
                details = _request_error_details(exc)
                logger.warning(
                    "proxy_drain_error request_id=%s key=%s status=%d error_type=%s error=%s",
                    context.request_id,
                    hint,
                    upstream.status_code,
                    details["error_type"],
                    details["error"],
                )
            finally:
                await upstream.aclose()
            return AttemptOutcome(
                kind=kind,
                credential_hint=hint,
                status_code=upstream.status_code,
                error=RetryableUpstreamError(message, upstream.status_code),
            )
        if kind is OutcomeKind.TERMINAL:
            return AttemptOutcome(
                kind=kind,
                credential_hint=hint,
                status_code=upstream.status_code,
                upstream=upstream,
                error=TerminalUpstreamError(message, upstream.status_code),
            )
        return AttemptOutcome(
            kind=kind,
            credential_hint=hint,
            status_code=upstream.status_code,
            upstream=upstream,
        )


def to_fastapi_response(outcome: AttemptOutcome) -> Response:
    upstream = outcome.upstream
    if upstream is None:
        raise ValueError("Only success or terminal outcomes carry an upstream response.")

    async def stream_generator() -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        finally:
            await upstream.aclose()

    response = StreamingResponse(
        content=stream_generator(),
        status_code=upstream.status_code,
    )
    # keep repeated upstream headers such as set-cookie
    response.raw_headers = [
        (name.encode("latin-1"), value.encode("latin-1"))
        for name, value in _filter_response_headers(upstream.headers)
    ]
    return response
