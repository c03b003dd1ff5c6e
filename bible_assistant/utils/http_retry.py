# utils/http_retry.py
"""
Retry with exponential backoff for remote provider calls.

Usage:
    from bible_assistant.utils.http_retry import RetryPolicy, execute_with_retry

    outcome = execute_with_retry(
        lambda attempt: provider.stream_completion(messages, 1500, on_token),
        policy=RetryPolicy(max_attempts=5),
        on_retry=lambda attempt, max_attempts: print(f"retry {attempt}/{max_attempts}"),
        cancel_token=token,
    )
    text = outcome.value

The operation raises AssistantError subclasses; the `retryable` flag on the
error decides whether the loop backs off or gives up. Transport exceptions
from requests are treated as retryable network errors.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, FrozenSet, Optional

import requests

from .errors import (
    AssistantError,
    AuthError,
    CancelledError,
    InvalidResponseError,
    NetworkError,
    RateLimitedError,
    RetryExhaustedError,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504, 520, 521, 522, 523, 524})


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0      # seconds
    max_delay: float = 16.0      # ceiling for a single wait
    retryable_status_codes: FrozenSet[int] = field(default_factory=lambda: DEFAULT_RETRYABLE_STATUS_CODES)

    def delay(self, attempt: int) -> float:
        """Backoff before the retry that follows `attempt` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def is_retryable_status(self, status_code: int) -> bool:
        return status_code in self.retryable_status_codes


class CancelToken:
    """Cooperative cancellation flag shared between a caller and a worker."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError("Request cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)


@dataclass
class RetryOutcome:
    value: Any
    attempts: int


def execute_with_retry(
    operation: Callable[[int], Any],
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[Callable[[int, int], None]] = None,
    cancel_token: Optional[CancelToken] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> RetryOutcome:
    """
    Run `operation(attempt)` until it succeeds, a terminal error is raised,
    or attempts run out.

    Args:
        operation: Callable receiving the 1-based attempt number
        policy: Backoff settings (defaults to RetryPolicy())
        on_retry: Observer called as on_retry(failed_attempt, max_attempts)
            before each backoff wait
        cancel_token: Checked before every attempt and after every wait
        sleep: Replacement for the backoff wait (tests pass a no-op)

    Returns:
        RetryOutcome with the operation's value and the attempt count

    Raises:
        CancelledError: cancellation was requested
        AssistantError: a terminal (non-retryable) error
        RetryExhaustedError: every attempt failed with a retryable error
    """
    policy = policy or RetryPolicy()
    last_error: Optional[Exception] = None

    for attempt in range(1, policy.max_attempts + 1):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        try:
            return RetryOutcome(value=operation(attempt), attempts=attempt)
        except CancelledError:
            raise
        except AssistantError as e:
            if not e.retryable:
                raise
            last_error = e
        except requests.RequestException as e:
            last_error = NetworkError(str(e))

        # A failure after cancellation is reported as the cancellation
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        if attempt >= policy.max_attempts:
            break

        wait = policy.delay(attempt)
        if isinstance(last_error, RateLimitedError) and last_error.retry_after:
            wait = min(max(wait, last_error.retry_after), policy.max_delay)

        if on_retry:
            on_retry(attempt, policy.max_attempts)

        logger.warning(
            f"Retry {attempt}/{policy.max_attempts} after {wait}s delay. Error: {last_error}"
        )

        if sleep is not None:
            sleep(wait)
        elif cancel_token is not None:
            cancel_token.wait(wait)
        else:
            time.sleep(wait)

    logger.error(f"Giving up after {policy.max_attempts} attempts: {last_error}")
    raise RetryExhaustedError(policy.max_attempts, last_error)


def raise_for_provider_status(response: requests.Response, policy: Optional[RetryPolicy] = None) -> None:
    """
    Translate an HTTP status from a provider into a typed AssistantError.

    2xx returns silently. 401 is terminal, 429 and the policy's retryable
    codes are retryable, any other 4xx is terminal.
    """
    policy = policy or RetryPolicy()
    status = response.status_code
    if status < 400:
        return

    try:
        error_data = response.json()
        error_msg = error_data.get("error", {}).get("message", response.reason)
    except (ValueError, AttributeError):
        error_msg = response.reason or f"HTTP {status}"

    if status == 401:
        raise AuthError(f"Authentication failed: {error_msg}")

    if status == 429:
        retry_after = response.headers.get("retry-after")
        try:
            wait = float(retry_after) if retry_after else None
        except ValueError:
            wait = None
        raise RateLimitedError(f"Rate limited: {error_msg}", retry_after=wait)

    error = NetworkError(f"API error {status}: {error_msg}", status_code=status)
    error.retryable = policy.is_retryable_status(status)
    raise error


def post_with_retry(
    url: str,
    json: dict,
    headers: dict,
    timeout: float = 30,
    policy: Optional[RetryPolicy] = None,
    cancel_token: Optional[CancelToken] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> dict:
    """
    POST a JSON payload and return the decoded JSON body, retrying rate
    limits, server errors, timeouts and malformed bodies per `policy`.
    """
    policy = policy or RetryPolicy()

    def _attempt(attempt: int) -> dict:
        try:
            response = requests.post(url, json=json, headers=headers, timeout=timeout)
        except requests.Timeout:
            raise NetworkError(f"Request to {url} timed out after {timeout}s")
        except requests.ConnectionError as e:
            raise NetworkError(f"Connection to {url} failed: {e}")

        raise_for_provider_status(response, policy)
        try:
            return response.json()
        except ValueError:
            raise InvalidResponseError(f"Malformed JSON from {url}")

    return execute_with_retry(_attempt, policy=policy, cancel_token=cancel_token, sleep=sleep).value
