"""
Retry with exponential backoff for unreliable outbound calls.

- RetryPolicy: attempts, delays, growth factor, jitter, retry predicate
- is_retryable_error: default transient-failure classifier
- PRESETS: per-provider policies (twilio, chat_push, weather, store)
- RetryExecutor: runs an async callable under a policy via tenacity

An error is retried only when BOTH the policy's retry_condition accepts it
AND the default classifier deems it transient. On exhaustion the last error
is re-raised unchanged.
"""
from __future__ import annotations

import asyncio
import dataclasses
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from channels.base import ChannelError

logger = structlog.get_logger()

RetryCondition = Callable[[BaseException], bool]
OnRetry = Callable[[BaseException, int, float], Any]


def _always(error: BaseException) -> bool:
    return True


@dataclass
class RetryPolicy:
    max_retries: int = 3            # total attempts = max_retries + 1
    initial_delay: float = 1.0      # seconds
    max_delay: float = 30.0
    factor: float = 2.0
    jitter: bool = True             # multiply delay by uniform [0.5, 1.5)
    retry_condition: RetryCondition = field(default=_always)

    def with_overrides(self, **overrides: Any) -> RetryPolicy:
        known = {f.name for f in dataclasses.fields(self)}
        return dataclasses.replace(self, **{k: v for k, v in overrides.items() if k in known})


def compute_delay(attempt: int, policy: RetryPolicy, rng: Callable[[], float] = random.random) -> float:
    """Delay before retry `attempt` (1-based)."""
    delay = min(policy.initial_delay * policy.factor ** (attempt - 1), policy.max_delay)
    if policy.jitter:
        delay *= 0.5 + rng()
    return delay


class wait_backoff_jitter(wait_base):
    """tenacity wait strategy implementing compute_delay."""

    def __init__(self, policy: RetryPolicy, rng: Callable[[], float] = random.random):
        self.policy = policy
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        return compute_delay(retry_state.attempt_number, self.policy, self.rng)


# ══════════════════════════════════════════════════════════════
#  CLASSIFICATION
# ══════════════════════════════════════════════════════════════

RETRYABLE_STATUS = frozenset({408, 429})
RETRYABLE_ERROR_TYPES = frozenset({"api_connection_error", "api_error", "rate_limit_error"})
RETRYABLE_OS_CODES = frozenset({"ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND", "ECONNRESET"})


def error_status(error: BaseException) -> Optional[int]:
    """HTTP status carried by an error, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_retryable_error(error: BaseException) -> bool:
    """Default classifier: True for failures worth another attempt."""
    if isinstance(error, ChannelError):
        return error.retryable
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True

    status = error_status(error)
    if status is not None and (status >= 500 or status in RETRYABLE_STATUS):
        return True

    code = getattr(error, "code", None)
    if isinstance(code, int) and 20000 <= code <= 20999:      # Twilio transient range
        return True
    if isinstance(code, str) and code in RETRYABLE_OS_CODES:
        return True

    return getattr(error, "type", None) in RETRYABLE_ERROR_TYPES


# ── Preset predicates ─────────────────────────────────────────

def _not_auth_failure(error: BaseException) -> bool:
    return error_status(error) not in (401, 403)


def _not_unauthorized(error: BaseException) -> bool:
    return error_status(error) != 401


PRESETS: dict[str, RetryPolicy] = {
    "twilio": RetryPolicy(max_retries=3, initial_delay=2.0, max_delay=10.0, factor=2.0,
                          retry_condition=_not_auth_failure),
    "chat_push": RetryPolicy(max_retries=2, initial_delay=1.0, max_delay=5.0, factor=2.0,
                             retry_condition=_not_unauthorized),
    "weather": RetryPolicy(max_retries=5, initial_delay=0.5, max_delay=10.0, factor=1.5),
    "store": RetryPolicy(max_retries=3, initial_delay=0.1, max_delay=2.0, factor=2.0),
}


def get_preset(name: str, overrides: Optional[dict[str, Any]] = None) -> RetryPolicy:
    if name not in PRESETS:
        raise KeyError(f"Unknown retry preset: {name}")
    policy = PRESETS[name]
    return policy.with_overrides(**overrides) if overrides else policy


# ══════════════════════════════════════════════════════════════
#  EXECUTOR
# ══════════════════════════════════════════════════════════════

class RetryExecutor:
    """
    Runs async callables under a RetryPolicy.

    `sleep` is injectable (pass VirtualClock.sleep in tests) and `rng`
    feeds the jitter.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = None,
        rng: Callable[[], float] = random.random,
        overrides: Optional[dict[str, dict[str, Any]]] = None,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep
        self._rng = rng
        self._overrides = overrides or {}

    def preset(self, name: str) -> RetryPolicy:
        """Named preset with any configured overrides applied."""
        return get_preset(name, self._overrides.get(name))

    async def execute(
        self,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        policy: Optional[RetryPolicy] = None,
        on_retry: Optional[OnRetry] = None,
        operation: str = "",
        **kwargs: Any,
    ) -> Any:
        policy = policy or self.policy
        operation = operation or getattr(fn, "__name__", "call")

        def _should_retry(error: BaseException) -> bool:
            return policy.retry_condition(error) and is_retryable_error(error)

        def _before_sleep(retry_state: RetryCallState):
            error = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "retry_scheduled", operation=operation,
                attempt=retry_state.attempt_number, delay_s=round(delay, 3),
                error=str(error),
            )
            if on_retry:
                on_retry(error, retry_state.attempt_number, delay)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_retries + 1),
            wait=wait_backoff_jitter(policy, self._rng),
            retry=retry_if_exception(_should_retry),
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    result = await fn(*args, **kwargs)
        except Exception as e:
            logger.error(
                "retry_gave_up", operation=operation,
                attempts=retrying.statistics.get("attempt_number", 1),
                retryable=is_retryable_error(e), error=str(e),
            )
            raise
        return result
