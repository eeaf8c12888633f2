from __future__ import annotations

import secrets
from typing import Mapping

from gemini_key_proxy.errors import AuthError, ConfigurationError
from gemini_key_proxy.settings import Settings

API_KEY_HEADER = "x-goog-api-key"


def extract_client_code(headers: Mapping[str, str]) -> str | None:
    api_key = headers.get(API_KEY_HEADER, "").strip()
    if api_key:
        return api_key

    auth_header = headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthGate:
    def __init__(self, settings: Settings):
        self.api_keys = settings.api_keys_list
        self.expected_code = settings.expected_auth_code

    def verify(self, headers: Mapping[str, str]) -> None:
        if not self.api_keys:
            raise ConfigurationError(
                "Server misconfiguration: GOOGLE_GEMINI_API_KEYS is not set or empty."
            )
        if not self.expected_code:
            raise ConfigurationError("Server misconfiguration: AUTH_CODE is not set.")

        client_code = extract_client_code(headers)
        if client_code is None or not secrets.compare_digest(
            client_code.encode("utf-8"), self.expected_code.encode("utf-8")
        ):
            raise AuthError("Unauthorized: Invalid authorization code.")
