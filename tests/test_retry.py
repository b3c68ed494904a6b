"""Tests for RetryExecutor, the error classifier and the provider presets."""
from unittest.mock import AsyncMock

import httpx
import pytest

from channels.base import ChannelError, ProviderAuthError, ProviderValidationError, TransientProviderError
from utils.retry import (
    PRESETS, RetryExecutor, RetryPolicy, compute_delay, get_preset, is_retryable_error,
)


class FakeProviderError(Exception):
    def __init__(self, status_code=None, code=None, type=None):
        super().__init__(f"status={status_code} code={code} type={type}")
        self.status_code = status_code
        self.code = code
        self.type = type


# ──────────────────────────────────────────────────────────────
#  Backoff
# ──────────────────────────────────────────────────────────────

class TestComputeDelay:
    def test_exponential_capped(self):
        policy = RetryPolicy(initial_delay=2.0, max_delay=10.0, factor=2.0, jitter=False)
        assert [compute_delay(n, policy) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 10.0]

    def test_jitter_bounds(self):
        policy = RetryPolicy(initial_delay=2.0, max_delay=10.0, factor=2.0, jitter=True)
        assert compute_delay(1, policy, rng=lambda: 0.0) == pytest.approx(1.0)
        assert compute_delay(1, policy, rng=lambda: 0.5) == pytest.approx(2.0)
        assert compute_delay(1, policy, rng=lambda: 0.999) < 3.0


# ──────────────────────────────────────────────────────────────
#  Classification
# ──────────────────────────────────────────────────────────────

class TestIsRetryableError:
    def test_channel_errors_follow_their_flag(self):
        assert is_retryable_error(TransientProviderError("timeout"))
        assert not is_retryable_error(ProviderAuthError("bad token"))
        assert not is_retryable_error(ProviderValidationError("bad number"))
        assert is_retryable_error(ChannelError("x", retryable=True))

    def test_network_errors(self):
        assert is_retryable_error(httpx.ConnectError("refused"))
        assert is_retryable_error(ConnectionError("reset"))
        assert is_retryable_error(TimeoutError())

    @pytest.mark.parametrize("status,retryable", [
        (500, True), (503, True), (429, True), (408, True),
        (400, False), (401, False), (403, False), (404, False),
    ])
    def test_http_status(self, status, retryable):
        assert is_retryable_error(FakeProviderError(status_code=status)) is retryable

    def test_http_status_error(self):
        request = httpx.Request("GET", "https://weather.example/observations/a")
        response = httpx.Response(502, request=request)
        error = httpx.HTTPStatusError("bad gateway", request=request, response=response)
        assert is_retryable_error(error)

    def test_provider_codes(self):
        assert is_retryable_error(FakeProviderError(code=20003))
        assert not is_retryable_error(FakeProviderError(code=21211))
        assert is_retryable_error(FakeProviderError(code="ECONNRESET"))

    def test_error_types(self):
        assert is_retryable_error(FakeProviderError(type="rate_limit_error"))
        assert is_retryable_error(FakeProviderError(type="api_connection_error"))
        assert not is_retryable_error(FakeProviderError(type="card_error"))

    def test_plain_errors_are_not_retried(self):
        assert not is_retryable_error(ValueError("bug"))


# ──────────────────────────────────────────────────────────────
#  Executor
# ──────────────────────────────────────────────────────────────

class TestRetryExecutor:
    @pytest.mark.asyncio
    async def test_fail_fail_succeed(self, retry, clock):
        fn = AsyncMock(side_effect=[TransientProviderError("a"), TransientProviderError("b"), "ok"])
        policy = RetryPolicy(max_retries=3, initial_delay=1.0, factor=2.0)

        result = await retry.execute(fn, "arg", policy=policy)

        assert result == "ok"
        assert fn.await_count == 3
        fn.assert_awaited_with("arg")
        # rng fixed at 0.5 → jitter multiplier 1.0
        assert clock.slept == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_runs_once(self, retry):
        fn = AsyncMock(side_effect=ProviderValidationError("bad number"))
        with pytest.raises(ProviderValidationError):
            await retry.execute(fn, policy=RetryPolicy(max_retries=3))
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self, retry):
        errors = [TransientProviderError(f"fail {n}") for n in range(3)]
        fn = AsyncMock(side_effect=errors)
        with pytest.raises(TransientProviderError, match="fail 2"):
            await retry.execute(fn, policy=RetryPolicy(max_retries=2, initial_delay=0.1))
        assert fn.await_count == 3

    @pytest.mark.asyncio
    async def test_preset_condition_blocks_retry(self, retry):
        # Retryable by flag, but the twilio preset never retries auth failures
        fn = AsyncMock(side_effect=ChannelError("denied", retryable=True, status_code=401))
        with pytest.raises(ChannelError):
            await retry.execute(fn, policy=retry.preset("twilio"))
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_on_retry_callback(self, retry):
        seen = []
        fn = AsyncMock(side_effect=[TransientProviderError("a"), TransientProviderError("b"), 42])
        await retry.execute(
            fn, policy=RetryPolicy(max_retries=3, initial_delay=1.0),
            on_retry=lambda error, attempt, delay: seen.append((attempt, delay)),
        )
        assert seen == [(1, 1.0), (2, 2.0)]

    @pytest.mark.asyncio
    async def test_kwargs_forwarded(self, retry):
        fn = AsyncMock(return_value="done")
        assert await retry.execute(fn, 1, policy=RetryPolicy(), to="+81") == "done"
        fn.assert_awaited_once_with(1, to="+81")


class TestPresets:
    def test_known_presets(self):
        assert set(PRESETS) == {"twilio", "chat_push", "weather", "store"}
        twilio = get_preset("twilio")
        assert (twilio.max_retries, twilio.initial_delay, twilio.max_delay, twilio.factor) == (3, 2.0, 10.0, 2.0)
        weather = get_preset("weather")
        assert (weather.max_retries, weather.initial_delay, weather.factor) == (5, 0.5, 1.5)

    def test_unknown_preset(self):
        with pytest.raises(KeyError):
            get_preset("carrier_pigeon")

    def test_overrides_from_config(self, clock):
        executor = RetryExecutor(sleep=clock.sleep, overrides={"twilio": {"max_retries": 1, "bogus": 9}})
        policy = executor.preset("twilio")
        assert policy.max_retries == 1
        assert policy.initial_delay == 2.0
        assert PRESETS["twilio"].max_retries == 3

    def test_chat_push_allows_forbidden_retry(self):
        policy = get_preset("chat_push")
        assert not policy.retry_condition(FakeProviderError(status_code=401))
        assert policy.retry_condition(FakeProviderError(status_code=403))
