"""Robust HTTP request execution for the chat transport.

Retry Strategy:
--------------
The chat service is a plain request/response website, so every request is
routed through RequestExecutor, which hides its rough edges:

1. Request failures (connection resets, timeouts, redirect loops, bodies that
   fail to decompress) are retried immediately and count against the attempt
   budget.

2. HTTP 409 is the service's "you are doing that too fast" answer. The body
   says how long to wait; the executor waits at least that long (and longer
   for each consecutive 409) and retries without spending an attempt.

3. HTTP 429 means the server is overloaded; wait a fixed delay and retry,
   again without spending an attempt.

4. HTTP 404 is never retried. It is handed back to the caller, which knows
   whether it means "no such room" or "no such message".

5. Unexpected status codes and bodies that should be JSON but are not (the
   service sometimes serves an HTML error page) spend an attempt and back off.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Collection, Dict, Optional

import httpx
import trio

from core.errors import MalformedResponseError, RequestFailedError
from core.retry import (
    HTTP_CONFLICT,
    HTTP_NOT_FOUND,
    HTTP_TOO_MANY_REQUESTS,
    RetryPolicy,
    RetryState,
)
from utils.parsing import parse_wait_seconds

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class ChatResponse:
    """Normalized response handed back by the executor.

    Attributes:
        status_code: HTTP status code
        body: Response body text
        data: Decoded JSON body when JSON was requested, else None
    """
    status_code: int
    body: str
    data: Any = None

    @property
    def is_not_found(self) -> bool:
        return self.status_code == HTTP_NOT_FOUND


class RequestExecutor:
    """
    Sends requests through an httpx.AsyncClient, retrying per a RetryPolicy.
    The sleep function is injectable so tests can observe delays.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: Optional[RetryPolicy] = None,
        sleep: Sleep = trio.sleep,
    ) -> None:
        self._client = client
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def execute(
        self,
        method: str,
        url: str,
        *,
        data: Optional[Dict[str, Any]] = None,
        attempts: Optional[int] = None,
        status_codes: Optional[Collection[int]] = None,
        expect_json: bool = False,
    ) -> ChatResponse:
        """Send a request, retrying until it succeeds or the budget runs out.

        Args:
            method: HTTP method
            url: Absolute request URL
            data: Form fields to send in the body
            attempts: Attempt budget, defaults to the policy's max_attempts
            status_codes: Accepted status codes, None to accept any
            expect_json: Whether the body must decode to a JSON object

        Returns:
            The response (possibly a 404, which is never retried)

        Raises:
            RequestFailedError: if the attempt budget was exhausted
        """
        max_attempts = attempts if attempts is not None else self.policy.max_attempts
        description = f"request-method={method}; request-URI={url}"
        state = RetryState()
        delay = 0.0

        while not state.exhausted(max_attempts):
            if delay > 0:
                logger.info("Sleeping for %.1fs before resending the request...", delay)
                await self._sleep(delay)
                delay = 0.0

            try:
                response = await self._client.request(method, url, data=data)
            except httpx.RequestError as e:
                state = state.after_transport_error()
                logger.warning(
                    "%s raised by request (attempt %s/%s) [%s]: %s",
                    type(e).__name__, state.attempts, max_attempts, description, e,
                )
                continue

            status = response.status_code
            body = response.text

            if status == HTTP_CONFLICT:
                state = state.after_rate_limit()
                delay = state.rate_limit_delay(self.policy, parse_wait_seconds(body))
                logger.warning(
                    "HTTP 409 response (#%s), retrying in %.1fs [%s]: %s",
                    state.rate_limited, delay, description, body,
                )
                continue

            if status == HTTP_TOO_MANY_REQUESTS:
                state = state.after_overload()
                delay = self.policy.overload_delay
                logger.warning(
                    "HTTP 429 response, retrying in %.1fs [%s]", delay, description
                )
                continue

            if status == HTTP_NOT_FOUND:
                logger.error("404 response received [%s]", description)
                return ChatResponse(status_code=status, body=body)

            if status_codes is not None and status not in status_codes:
                state = state.after_bad_response()
                delay = state.backoff(self.policy)
                logger.error(
                    "Expected status code %s, but was %s (attempt %s/%s) [%s]",
                    sorted(status_codes), status, state.attempts, max_attempts, description,
                )
                continue

            parsed = None
            if expect_json:
                try:
                    parsed = _decode_json_object(body)
                except MalformedResponseError as e:
                    state = state.after_bad_response()
                    delay = state.backoff(self.policy)
                    logger.error(
                        "Could not parse the response as a JSON object "
                        "(attempt %s/%s) [%s]: %s",
                        state.attempts, max_attempts, description, e,
                    )
                    continue

            logger.debug("Received response [status=%s; %s]", status, description)
            return ChatResponse(status_code=status, body=body, data=parsed)

        raise RequestFailedError(description, state.attempts)


def _decode_json_object(body: str) -> Dict[str, Any]:
    try:
        value = json.loads(body)
    except ValueError as e:
        raise MalformedResponseError(f"Body is not JSON: {body[:100]!r}") from e
    if not isinstance(value, dict):
        raise MalformedResponseError(f"Body is not a JSON object: {body[:100]!r}")
    return value
