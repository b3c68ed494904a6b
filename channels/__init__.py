"""Outbound channel adapters: voice calls, SMS and chat push."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelError,
    ChannelMetrics,
    MessageDeduplicator,
    ProviderAuthError,
    ProviderValidationError,
    SendResult,
    TransientProviderError,
)
from channels.voice_adapter import VoiceAdapter
from channels.sms_adapter import SMSAdapter
from channels.push_adapter import ChatPushAdapter

__all__ = [
    "ChannelAdapter", "ChannelRegistry", "ChannelError", "ChannelMetrics",
    "MessageDeduplicator", "SendResult",
    "ProviderAuthError", "ProviderValidationError", "TransientProviderError",
    "VoiceAdapter", "SMSAdapter", "ChatPushAdapter",
]
