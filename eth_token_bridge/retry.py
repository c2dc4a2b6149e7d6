"""Retry transient RPC failures.

Centralised backoff loop for all endpoint calls.
"""

import logging
import time
from typing import Callable, TypeVar

import requests

from eth_token_bridge.config import BackoffPolicy
from eth_token_bridge.errors import TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Exceptions we consider a flaky node rather than a real failure
TRANSIENT_EXCEPTIONS = (
    TransientNetworkError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    ConnectionError,
    TimeoutError,
)


def retry_transient(
    func: Callable[[], T],
    policy: BackoffPolicy,
    description: str = "RPC call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` and retry it on transient network failures.

    :param func:
        Zero argument callable doing the RPC work

    :param policy:
        How many attempts and how long to sleep between them

    :param description:
        For log messages

    :param sleep:
        Sleep function, replaceable in tests

    :raise TransientNetworkError:
        When all attempts failed
    """
    delays = list(policy.delays())
    last_error = None
    for attempt in range(policy.max_attempts):
        try:
            return func()
        except TRANSIENT_EXCEPTIONS as e:
            last_error = e
            if attempt < len(delays):
                delay = delays[attempt]
                logger.warning(
                    "Attempt %d/%d of %s failed: %s. Retrying in %.1fs...",
                    attempt + 1,
                    policy.max_attempts,
                    description,
                    e,
                    delay,
                )
                sleep(delay)

    raise TransientNetworkError(f"{description} failed after {policy.max_attempts} attempts: {last_error}") from last_error
