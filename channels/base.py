"""
Channel Adapters — shared infrastructure for all outbound channels.

Provides:
- ChannelError: structured error hierarchy (auth / validation / transient)
- error_from_response: maps a provider HTTP response to the right error
- ChannelMetrics: per-channel sent/stubbed/failed counters
- SendResult: what an adapter returns for an accepted send
- MessageDeduplicator: TTL seen-set for at-least-once inbound callbacks
- ChannelAdapter: abstract base (configuration, stub mode, health)
- ChannelRegistry: adapter lookup and lifecycle

Retries are not done here: callers wrap sends in utils.retry.RetryExecutor.
"""
from __future__ import annotations

import abc
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import structlog

from models.schemas import NotificationChannel

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(
        self,
        message: str,
        channel: str = "",
        retryable: bool = False,
        status_code: Optional[int] = None,
        code: Any = None,
    ):
        self.channel = channel
        self.retryable = retryable
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class ProviderAuthError(ChannelError):
    """Credentials rejected (401/403). Never retried."""

    def __init__(self, message: str, channel: str = "", status_code: int = 401, code: Any = None):
        super().__init__(message, channel, retryable=False, status_code=status_code, code=code)


class ProviderValidationError(ChannelError):
    """Request rejected as malformed (bad number, unknown user). Never retried."""

    def __init__(self, message: str, channel: str = "", status_code: int = 400, code: Any = None):
        super().__init__(message, channel, retryable=False, status_code=status_code, code=code)


class TransientProviderError(ChannelError):
    """Timeout, 5xx, throttling or a provider-declared transient code."""

    def __init__(self, message: str, channel: str = "", status_code: Optional[int] = None, code: Any = None):
        super().__init__(message, channel, retryable=True, status_code=status_code, code=code)


def _provider_code(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        return None
    return body.get("code") if isinstance(body, dict) else None


def error_from_response(response: httpx.Response, channel: str) -> ChannelError:
    """Classify a non-2xx provider response."""
    status = response.status_code
    code = _provider_code(response)
    message = f"{channel} provider returned {status}: {response.text[:200]}"

    if status in (401, 403):
        return ProviderAuthError(message, channel, status_code=status, code=code)
    if status >= 500 or status in (408, 429):
        return TransientProviderError(message, channel, status_code=status, code=code)
    if isinstance(code, int) and 20000 <= code <= 20999:
        return TransientProviderError(message, channel, status_code=status, code=code)
    return ProviderValidationError(message, channel, status_code=status, code=code)


def error_from_transport(exc: httpx.TransportError, channel: str) -> TransientProviderError:
    return TransientProviderError(f"{channel} transport failure: {exc}", channel)


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

@dataclass
class ChannelMetrics:
    """Send counters for one adapter, reported by /health."""

    channel: NotificationChannel
    messages_sent: int = 0
    messages_stubbed: int = 0
    messages_failed: int = 0
    last_error: str = ""
    last_error_type: str = ""
    slowest_send_ms: float = 0.0

    def record_send(self, latency_ms: float = 0.0, stub: bool = False):
        self.messages_sent += 1
        if stub:
            self.messages_stubbed += 1
        self.slowest_send_ms = max(self.slowest_send_ms, latency_ms)

    def record_failure(self, error: Exception):
        self.messages_failed += 1
        self.last_error = str(error)[:200]
        self.last_error_type = type(error).__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "sent": self.messages_sent,
            "stubbed": self.messages_stubbed,
            "failed": self.messages_failed,
            "last_error": self.last_error or None,
            "last_error_type": self.last_error_type or None,
            "slowest_send_ms": round(self.slowest_send_ms, 1),
        }


@dataclass
class SendResult:
    provider_id: str
    status: str = "queued"
    stub: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


# ══════════════════════════════════════════════════════════════
#  MESSAGE DEDUPLICATOR
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL-based seen-set for suppressing redelivered callbacks."""

    def __init__(self, ttl_seconds: float = 3600.0, max_size: int = 10000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        self._prune()
        if key in self._seen:
            return True
        self._seen[key] = time.monotonic()
        return False

    def forget(self, key: str):
        """Drop a key so its next delivery is processed."""
        self._seen.pop(key, None)

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]
        if len(self._seen) > self.max_size:
            oldest = sorted(self._seen, key=self._seen.get)[: len(self._seen) - self.max_size]
            for k in oldest:
                del self._seen[k]


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    An adapter without credentials runs in stub mode: sends are accepted,
    logged and counted, and return a `stub_` provider id without touching
    the network. Subclasses raise ChannelError subclasses on failure.
    """

    channel: NotificationChannel

    def __init__(self):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self.metrics = ChannelMetrics(self.channel)

    @abc.abstractmethod
    async def initialize(self, config: dict[str, Any]) -> None:
        ...

    @property
    @abc.abstractmethod
    def is_configured(self) -> bool:
        ...

    @property
    def stub_mode(self) -> bool:
        return not self.is_configured

    def _stub_result(self, prefix: str, **details: Any) -> SendResult:
        provider_id = f"stub_{prefix}_{uuid.uuid4().hex[:12]}"
        logger.info("channel_stub_send", channel=self.channel.value, provider_id=provider_id, **details)
        self.metrics.record_send(stub=True)
        return SendResult(provider_id=provider_id, status="queued", stub=True)

    def _record(self, started: float, error: Optional[Exception] = None):
        if error is None:
            self.metrics.record_send((time.monotonic() - started) * 1000)
        else:
            self.metrics.record_failure(error)

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "initialized": self._initialized,
            "stub_mode": self.stub_mode,
            "metrics": self.metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self, *adapters: ChannelAdapter):
        self._adapters: dict[NotificationChannel, ChannelAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ChannelAdapter):
        self._adapters[adapter.channel] = adapter

    def get(self, channel: NotificationChannel) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel)

    def require(self, channel: NotificationChannel) -> ChannelAdapter:
        adapter = self._adapters.get(channel)
        if adapter is None:
            raise ChannelError(f"No adapter registered for {channel.value}", channel.value)
        return adapter

    def get_available(self) -> list[NotificationChannel]:
        return list(self._adapters.keys())

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await a.health_check() for ch, a in self._adapters.items()}

    async def initialize_all(self, configs: dict[str, Any]):
        for ch, adapter in self._adapters.items():
            try:
                ch_cfg = configs.get(ch.value, {})
                # ChannelConfig dataclass → dict so adapters can call .get()
                if hasattr(ch_cfg, "credentials"):
                    ch_cfg = ch_cfg.credentials if ch_cfg.enabled else {}
                await adapter.initialize(ch_cfg)
            except Exception as e:
                logger.error("channel_init_failed", channel=ch.value, error=str(e))

    async def shutdown_all(self):
        for ch, a in self._adapters.items():
            try:
                await a.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed", channel=ch.value, error=str(e))
