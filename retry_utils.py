import logging
import random
import time
from typing import Callable, Optional, TypeVar

import requests
from selenium.common.exceptions import WebDriverException

from scheduler_errors import TransportError

T = TypeVar("T")

SOCKET_ERROR_MARKERS = (
    "socket hang up",
    "net::err_",
    "econnreset",
    "econnrefused",
    "etimedout",
    "aborted",
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "connection aborted",
    "failed to fetch",
    "protocol error",
    "remote end closed",
    "execution context was destroyed",
)

SOCKET_BASE_DELAY_SECONDS = 5.0
SOCKET_MAX_DELAY_SECONDS = 60.0
OTHER_BASE_DELAY_SECONDS = 1.0
OTHER_MAX_DELAY_SECONDS = 10.0
MAX_JITTER_SECONDS = 2.0

RETRYABLE_EXCEPTIONS = (requests.RequestException, WebDriverException, TransportError, OSError)


def is_socket_error(exc: BaseException) -> bool:
    if isinstance(exc, TransportError) and exc.socket_error:
        return True
    if isinstance(exc, (requests.ConnectionError, requests.Timeout, ConnectionError, TimeoutError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in SOCKET_ERROR_MARKERS)


def base_retry_delay(attempt: int, *, socket_error: bool) -> float:
    exponent = max(0, attempt - 1)
    if socket_error:
        return min(SOCKET_BASE_DELAY_SECONDS * (2 ** exponent), SOCKET_MAX_DELAY_SECONDS)
    return min(OTHER_BASE_DELAY_SECONDS * (2 ** exponent), OTHER_MAX_DELAY_SECONDS)


def compute_retry_delay(
    attempt: int,
    *,
    socket_error: bool,
    rng: Optional[random.Random] = None,
) -> float:
    return base_retry_delay(attempt, socket_error=socket_error) + (rng or random).uniform(0, MAX_JITTER_SECONDS)


class RetryPolicy:
    """Retries transport calls with class-dependent exponential backoff.

    Socket-class failures (resets, refusals, timeouts) usually mean the far end
    is soft-blocking us, so they wait much longer than other failures.
    """

    def __init__(self, max_retries: int = 3, *, rng: Optional[random.Random] = None) -> None:
        self.max_retries = max(1, max_retries)
        self._rng = rng

    def call(
        self,
        operation: Callable[[], T],
        *,
        description: str = "request",
        sleep: Callable[[float], Optional[bool]] = time.sleep,
    ) -> T:
        last_exc: Optional[BaseException] = None
        socket_error = False
        attempt = 0

        while attempt < self.max_retries:
            attempt += 1
            logging.debug("%s [attempt %s/%s]", description, attempt, self.max_retries)
            try:
                return operation()
            except RETRYABLE_EXCEPTIONS as exc:
                last_exc = exc
                socket_error = is_socket_error(exc)
                if attempt >= self.max_retries:
                    break
                delay = compute_retry_delay(attempt, socket_error=socket_error, rng=self._rng)
                logging.warning(
                    "Request failed (%s). Retry %s/%s in %ss...",
                    exc,
                    attempt,
                    self.max_retries,
                    round(delay),
                )
                if sleep(delay) is False:
                    logging.debug("Retry wait for %s interrupted; giving up", description)
                    break

        message = f"{description} failed after {attempt} attempt(s): {last_exc}"
        raise TransportError(
            message,
            socket_error=socket_error,
            retries_exhausted=attempt >= self.max_retries,
            attempts=attempt,
        ) from last_exc
