from __future__ import annotations

import random
from typing import Sequence

from gemini_key_proxy.errors import ConfigurationError, CredentialPoolExhausted

MASKED_SUFFIX_LENGTH = 5


def mask_credential(credential: str) -> str:
    if len(credential) <= MASKED_SUFFIX_LENGTH:
        return "..."
    return f"...{credential[-MASKED_SUFFIX_LENGTH:]}"


class CredentialPool:
    """Upstream API keys available to a single inbound request.

    Each draw removes a uniformly chosen key, so a pool never hands out the
    same entry twice. Pools are cheap and meant to be rebuilt per request.
    """

    def __init__(
        self,
        credentials: Sequence[str],
        rng: random.Random | None = None,
    ) -> None:
        if not credentials:
            raise ConfigurationError(
                "Server misconfiguration: GOOGLE_GEMINI_API_KEYS is not set or empty."
            )
        self._remaining = list(credentials)
        self._rng = rng or random.Random()
        self.initial_size = len(self._remaining)

    def __len__(self) -> int:
        return len(self._remaining)

    @property
    def exhausted(self) -> bool:
        return not self._remaining

    def draw(self) -> str:
        if not self._remaining:
            raise CredentialPoolExhausted("credential pool is exhausted")
        index = self._rng.randrange(len(self._remaining))
        last = len(self._remaining) - 1
        # swap-remove keeps the draw O(1)
        self._remaining[index], self._remaining[last] = (
            self._remaining[last],
            self._remaining[index],
        )
        return self._remaining.pop()
