from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from fastapi import status

from gemini_key_proxy.credentials import CredentialPool
from gemini_key_proxy.errors import (
    ClientDisconnectedError,
    CredentialPoolExhausted,
    ExhaustionError,
    ProxyError,
)
from gemini_key_proxy.proxy import (
    AttemptOutcome,
    OutcomeKind,
    RequestContext,
    UpstreamDispatcher,
)

logger = logging.getLogger("uvicorn.error")

DisconnectCheck = Callable[[], Awaitable[bool]]


class RetryPhase(str, Enum):
    DRAWING = "drawing"
    DISPATCHING = "dispatching"
    TERMINAL_SUCCESS = "terminal_success"
    TERMINAL_ERROR = "terminal_error"


@dataclass(slots=True)
class RetryState:
    max_attempts: int
    remaining: int
    attempts_made: int = 0
    last_error: ProxyError | None = None
    phase: RetryPhase = RetryPhase.DRAWING

    @property
    def budget_spent(self) -> bool:
        return self.attempts_made >= self.max_attempts


class RetryOrchestrator:
    """Drives sequential failover across a per-request credential pool.

    Retryable outcomes are absorbed here and only the last one is reported,
    wrapped in an ExhaustionError, once the attempt budget or the pool runs
    out. Success and terminal outcomes are returned untouched so their
    upstream body can be relayed as is.
    """

    def __init__(
        self,
        *,
        dispatcher: UpstreamDispatcher,
        pool: CredentialPool,
        max_retries: int,
        is_disconnected: DisconnectCheck | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._pool = pool
        self._is_disconnected = is_disconnected
        self.state = RetryState(max_attempts=max(1, max_retries), remaining=len(pool))

    async def run(self, context: RequestContext) -> AttemptOutcome:
        state = self.state
        while True:
            if self._is_disconnected is not None and await self._is_disconnected():
                state.phase = RetryPhase.TERMINAL_ERROR
                logger.info(
                    "proxy_client_disconnected request_id=%s attempts=%d phase=%s",
                    context.request_id,
                    state.attempts_made,
                    state.phase.value,
                )
                raise ClientDisconnectedError(
                    "Client disconnected before the upstream call completed."
                )

            try:
                credential = self._pool.draw()
            except CredentialPoolExhausted:
                state.phase = RetryPhase.TERMINAL_ERROR
                raise self._exhausted(
                    context,
                    status_code=(
                        state.last_error.status_code
                        if state.last_error is not None
                        else status.HTTP_503_SERVICE_UNAVAILABLE
                    ),
                )
            state.remaining = len(self._pool)
            state.phase = RetryPhase.DISPATCHING

            logger.info(
                "proxy_attempt request_id=%s attempt=%d/%d method=%s path=%s remaining_keys=%d",
                context.request_id,
                state.attempts_made + 1,
                min(state.max_attempts, self._pool.initial_size),
                context.method,
                context.path,
                state.remaining,
            )
            outcome = await self._dispatcher.dispatch(context, credential)

            if not outcome.retryable:
                state.phase = (
                    RetryPhase.TERMINAL_SUCCESS
                    if outcome.kind is OutcomeKind.SUCCESS
                    else RetryPhase.TERMINAL_ERROR
                )
                logger.info(
                    "proxy_response request_id=%s key=%s status=%s phase=%s attempts=%d error=%s",
                    context.request_id,
                    outcome.credential_hint,
                    outcome.status_code,
                    state.phase.value,
                    state.attempts_made + 1,
                    outcome.error.message if outcome.error is not None else "-",
                )
                return outcome

            state.attempts_made += 1
            state.last_error = outcome.error
            logger.warning(
                "proxy_retry request_id=%s attempt=%d key=%s status=%s error_type=%s error=%s",
                context.request_id,
                state.attempts_made,
                outcome.credential_hint,
                outcome.status_code,
                (
                    outcome.exception.__class__.__name__
                    if outcome.exception is not None
                    else "upstream_status"
                ),
                outcome.error.message if outcome.error is not None else "-",
            )
            if state.budget_spent or self._pool.exhausted:
                state.phase = RetryPhase.TERMINAL_ERROR
                raise self._exhausted(
                    context, status_code=status.HTTP_503_SERVICE_UNAVAILABLE
                )
            state.phase = RetryPhase.DRAWING

    def _exhausted(self, context: RequestContext, *, status_code: int) -> ExhaustionError:
        state = self.state
        last_message = (
            state.last_error.message if state.last_error is not None else "no attempt was made"
        )
        logger.error(
            "proxy_exhausted request_id=%s phase=%s attempts=%d remaining_keys=%d status=%d last_error=%s",
            context.request_id,
            state.phase.value,
            state.attempts_made,
            len(self._pool),
            status_code,
            last_message,
        )
        return ExhaustionError(
            f"All {state.attempts_made} upstream attempts exhausted: {last_message}",
            status_code,
            attempts=state.attempts_made,
            last_error=state.last_error,
        )
