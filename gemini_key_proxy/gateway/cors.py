from __future__ import annotations

from fastapi.responses import Response

ALLOW_ORIGIN_HEADER = "Access-Control-Allow-Origin"
PREFLIGHT_HEADERS = {
    ALLOW_ORIGIN_HEADER: "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Max-Age": "86400",
}


def apply_cors(response: Response) -> Response:
    response.headers[ALLOW_ORIGIN_HEADER] = "*"
    return response


def preflight_response() -> Response:
    return Response(status_code=200, headers=dict(PREFLIGHT_HEADERS))
