from __future__ import annotations

from typing import Any

import pytest
from starlette.datastructures import Headers

from gemini_key_proxy.errors import AuthError, ConfigurationError
from gemini_key_proxy.gateway.auth import AuthGate, extract_client_code
from gemini_key_proxy.settings import Settings
from tests.client_test_utils import TEST_AUTH_CODE, RecordingUpstream, build_test_client


def _gate(keys: str = "k1,k2", auth_code: str | None = "secret") -> AuthGate:
    return AuthGate(Settings(google_gemini_api_keys=keys, auth_code=auth_code))


def test_extract_prefers_api_key_header() -> None:
    headers = Headers({"x-goog-api-key": "from-header", "authorization": "Bearer from-bearer"})
    assert extract_client_code(headers) == "from-header"


def test_extract_falls_back_to_bearer_token() -> None:
    assert extract_client_code(Headers({"Authorization": "Bearer abc"})) == "abc"
    assert extract_client_code(Headers({"Authorization": "bearer abc"})) == "abc"


def test_extract_ignores_other_schemes_and_blank_values() -> None:
    assert extract_client_code(Headers({"Authorization": "Basic abc"})) is None
    assert extract_client_code(Headers({"Authorization": "Bearer "})) is None
    assert extract_client_code(Headers({})) is None


def test_verify_accepts_matching_code() -> None:
    _gate().verify(Headers({"x-goog-api-key": "secret"}))


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"x-goog-api-key": "wrong"},
        {"Authorization": "Bearer wrong"},
        {"Authorization": "Bearer secret-but-longer"},
    ],
)
def test_verify_rejects_missing_or_mismatched_code(headers: dict[str, str]) -> None:
    with pytest.raises(AuthError) as exc_info:
        _gate().verify(Headers(headers))
    assert exc_info.value.status_code == 401


def test_verify_reports_missing_keys_before_auth() -> None:
    with pytest.raises(ConfigurationError, match="GOOGLE_GEMINI_API_KEYS"):
        _gate(keys=" , ").verify(Headers({}))


def test_verify_reports_missing_auth_code() -> None:
    with pytest.raises(ConfigurationError, match="AUTH_CODE"):
        _gate(auth_code="").verify(Headers({"x-goog-api-key": "anything"}))


def test_request_without_code_is_rejected_without_upstream_call(monkeypatch: Any) -> None:
    upstream = RecordingUpstream()
    with build_test_client(monkeypatch, upstream) as client:
        response = client.post("/v1beta/models/gemini-pro:generateContent", json={})

    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"
    assert response.headers["access-control-allow-origin"] == "*"
    assert response.json()["error"]["type"] == "authentication_error"
    assert upstream.requests == []


def test_request_with_wrong_bearer_is_rejected(monkeypatch: Any) -> None:
    upstream = RecordingUpstream()
    with build_test_client(monkeypatch, upstream) as client:
        response = client.get(
            "/v1beta/models", headers={"Authorization": "Bearer not-the-code"}
        )

    assert response.status_code == 401
    assert upstream.requests == []


def test_request_with_bearer_code_is_accepted(monkeypatch: Any) -> None:
    upstream = RecordingUpstream()
    with build_test_client(monkeypatch, upstream) as client:
        response = client.get(
            "/v1beta/models", headers={"Authorization": f"Bearer {TEST_AUTH_CODE}"}
        )

    assert response.status_code == 200
    assert len(upstream.requests) == 1


def test_missing_configuration_returns_500(monkeypatch: Any) -> None:
    upstream = RecordingUpstream()
    with build_test_client(monkeypatch, upstream, AUTH_CODE=None) as client:
        response = client.get(
            "/v1beta/models", headers={"x-goog-api-key": TEST_AUTH_CODE}
        )

    assert response.status_code == 500
    assert response.json()["error"]["type"] == "configuration_error"
    assert response.headers["access-control-allow-origin"] == "*"
    assert upstream.requests == []
