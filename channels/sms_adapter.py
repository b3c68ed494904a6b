"""
SMS Channel Adapter — Twilio SMS for reminders and fallback notices.

Provides:
- GSM-7 vs Unicode detection for accurate segment counting
- Automatic message truncation to max segment limit
- Reason-keyed message bodies (reminder, fallback, family/neighbor notices)
- Stub mode when Twilio credentials are absent
- Status webhook parsing (sent, delivered, failed)
"""
from __future__ import annotations

import time
from typing import Any, Optional

import structlog

from channels.base import ChannelAdapter, ProviderValidationError, SendResult
from channels.telephony.twilio_client import TwilioClient
from models.schemas import NotificationChannel
from utils.idempotency import generate_idempotency_key

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  GSM-7 CHARACTER SET & SEGMENT COUNTING
# ══════════════════════════════════════════════════════════════

# GSM-7 basic character set (includes space, digits, common punctuation, Latin letters)
_GSM7_CHARS = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)

# Extended GSM-7 (takes 2 bytes each): ^{}[~]|\€
_GSM7_EXTENDED = set("^{}[]~|\\€")


def is_gsm7(text: str) -> bool:
    return all(c in _GSM7_CHARS or c in _GSM7_EXTENDED for c in text)


def segment_count(text: str) -> int:
    """
    SMS segment count for a body.

    GSM-7: 160 chars single / 153 chars per segment (7 chars for UDH header)
    Unicode: 70 chars single / 67 chars per segment
    """
    if not text:
        return 0

    if is_gsm7(text):
        char_count = sum(2 if c in _GSM7_EXTENDED else 1 for c in text)
        if char_count <= 160:
            return 1
        return (char_count + 152) // 153
    if len(text) <= 70:
        return 1
    return (len(text) + 66) // 67


def truncate_to_segments(content: str, max_segments: int) -> str:
    if segment_count(content) <= max_segments:
        return content
    if is_gsm7(content):
        max_chars = 153 * max_segments - 3   # room for "..."
    else:
        max_chars = 67 * max_segments - 3
    return content[:max_chars] + "..."


# ══════════════════════════════════════════════════════════════
#  MESSAGE BODIES
# ══════════════════════════════════════════════════════════════

_BODIES = {
    "unanswered_1": (
        "HeatWatch: we called {name} about today's heat ({level}) but got no answer. "
        "Please drink water, cool down, and call back if you need help."
    ),
    "reminder": (
        "HeatWatch reminder for {name}: heat level is {level}. "
        "Please rest somewhere cool and drink water. We will call again shortly."
    ),
    "family_unanswered": (
        "HeatWatch: {name} has not answered our heat-safety calls today ({level}). "
        "Please check on them."
    ),
    "family_tired": (
        "HeatWatch: {name} reported feeling tired during today's heat ({level}). "
        "Please check on them."
    ),
    "neighbor_check": (
        "HeatWatch: could you check on your neighbor {name}? "
        "They have not answered our heat-safety calls today."
    ),
    "help_requested": (
        "HeatWatch URGENT: {name} asked for help during today's heat ({level}). "
        "Please go to them or call emergency services."
    ),
}


def render_sms(reason: str, data: dict[str, Any]) -> str:
    template = _BODIES.get(reason, "HeatWatch notice for {name}: heat level {level}.")
    return template.format(name=data.get("name", "the resident"), level=data.get("level", "high"))


# ══════════════════════════════════════════════════════════════
#  SMS ADAPTER
# ══════════════════════════════════════════════════════════════

class SMSAdapter(ChannelAdapter):
    """
    SMS adapter with segment awareness.

    Messages longer than `max_segments` are truncated before sending.
    """

    channel = NotificationChannel.SMS

    def __init__(self):
        super().__init__()
        self._client: Optional[TwilioClient] = None
        self._max_segments: int = 3
        self._webhook_base_url: str = ""

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config or {}
        self._max_segments = int(self._config.get("max_segments", 3))
        self._webhook_base_url = (self._config.get("webhook_base_url") or "").rstrip("/")
        sid = self._config.get("account_sid", "")
        token = self._config.get("auth_token", "")
        if sid and token:
            self._client = TwilioClient(sid, token, self._config.get("from_number", ""), channel="sms")
        self._initialized = True
        logger.info("sms_adapter_initialized", stub_mode=self.stub_mode)

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    # ── Send ──────────────────────────────────────────────────

    async def send_sms(self, to: str, body: str, alert_id: str = "", idempotency_key: str = "") -> SendResult:
        if not to:
            raise ProviderValidationError("No SMS number", self.channel.value)

        body = truncate_to_segments(body, self._max_segments)
        segments = segment_count(body)

        if self.stub_mode:
            return self._stub_result("sms", to=to, segments=segments, alert_id=alert_id)

        status_callback = f"{self._webhook_base_url}/webhooks/twilio/sms-status" if self._webhook_base_url else ""
        started = time.monotonic()
        try:
            result = await self._client.create_message(
                to=to, body=body, status_callback=status_callback,
                idempotency_key=idempotency_key or generate_idempotency_key("sms"),
            )
        except Exception as e:
            self._record(started, e)
            raise
        self._record(started)
        logger.info("sms_sent", to=to, segments=segments, msg_sid=result["sid"], alert_id=alert_id)
        return SendResult(provider_id=result["sid"], status=result["status"], raw=result)

    # ── Status webhook ────────────────────────────────────────

    @staticmethod
    def parse_status_webhook(data: dict[str, Any]) -> dict[str, Any]:
        return TwilioClient.parse_status_webhook(data)

    async def shutdown(self) -> None:
        if self._client:
            await self._client.close()
