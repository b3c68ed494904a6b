"""
Voice Channel Adapter — automated IVR wellness calls over Twilio.

Provides:
- Outbound call placement with Idempotency-Key and ring timeout
- TwiML rendering for the keypress prompt (1 ok / 2 tired / 3 help)
- TwiML rendering for the reply spoken after a keypress
- Stub mode when Twilio credentials are absent
"""
from __future__ import annotations

import time
from typing import Any, Optional
from urllib.parse import urlencode
from xml.sax.saxutils import escape, quoteattr

import structlog

from channels.base import ChannelAdapter, ProviderValidationError, SendResult
from channels.telephony.twilio_client import TwilioClient
from models.schemas import AlertStatus, NotificationChannel, status_for_keypress
from utils.idempotency import generate_idempotency_key

logger = structlog.get_logger()

VOICE = "alice"
LANGUAGE = "en-US"

_PROMPT = (
    "Hello {name}, this is HeatWatch checking on you because it is very hot today. "
    "If you are feeling fine, press 1. If you are feeling tired, press 2. "
    "If you need help, press 3."
)
_REPEAT = "We did not receive your answer. {prompt}"
_NO_INPUT = "We could not hear your answer. We will call again soon. Goodbye."

_KEYPRESS_REPLIES = {
    AlertStatus.OK: "Thank you. Please stay cool and keep drinking water. Goodbye.",
    AlertStatus.TIRED: "Thank you for letting us know. Please rest somewhere cool. We will let your family know.",
    AlertStatus.HELP: "Help is on the way. We are contacting your family and neighbors now. Please stay on the line if you can.",
    AlertStatus.UNANSWERED: "Sorry, we did not understand. We will call again soon. Goodbye.",
}


def _say(text: str) -> str:
    return f'<Say voice="{VOICE}" language="{LANGUAGE}">{escape(text)}</Say>'


class VoiceAdapter(ChannelAdapter):
    """Places keypress wellness calls and renders the IVR script."""

    channel = NotificationChannel.PHONE

    def __init__(self):
        super().__init__()
        self._client: Optional[TwilioClient] = None
        self._webhook_base_url: str = ""
        self._ring_timeout: int = 30

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config or {}
        self._webhook_base_url = (self._config.get("webhook_base_url") or "").rstrip("/")
        self._ring_timeout = int(self._config.get("ring_timeout", 30))
        sid = self._config.get("account_sid", "")
        token = self._config.get("auth_token", "")
        if sid and token:
            self._client = TwilioClient(sid, token, self._config.get("from_number", ""), channel="phone")
        self._initialized = True
        logger.info("voice_adapter_initialized", stub_mode=self.stub_mode)

    @property
    def is_configured(self) -> bool:
        return self._client is not None and bool(self._webhook_base_url)

    # ── Outbound ──────────────────────────────────────────────

    def twiml_url(self, alert_id: str, name: str, attempt: int) -> str:
        query = urlencode({"alert_id": alert_id, "name": name, "attempt": attempt})
        return f"{self._webhook_base_url}/webhooks/twilio/twiml?{query}"

    async def place_call(
        self, to: str, alert_id: str, household_name: str = "", attempt: int = 1,
        idempotency_key: str = "",
    ) -> SendResult:
        """Place one IVR call. Retries of the same call must pass the same idempotency_key."""
        if not to:
            raise ProviderValidationError("No phone number", self.channel.value)

        if self.stub_mode:
            return self._stub_result("call", to=to, alert_id=alert_id, attempt=attempt)

        started = time.monotonic()
        try:
            result = await self._client.create_call(
                to=to,
                url=self.twiml_url(alert_id, household_name, attempt),
                status_callback=f"{self._webhook_base_url}/webhooks/twilio/status",
                ring_timeout=self._ring_timeout,
                idempotency_key=idempotency_key or generate_idempotency_key(f"call{attempt}"),
            )
        except Exception as e:
            self._record(started, e)
            raise
        self._record(started)
        logger.info("voice_call_placed", to=to, call_sid=result["sid"], alert_id=alert_id, attempt=attempt)
        return SendResult(provider_id=result["sid"], status=result["status"], raw=result)

    # ── IVR script ────────────────────────────────────────────

    def render_gather_twiml(self, alert_id: str, name: str = "", attempt: int = 1) -> str:
        """Keypress prompt, asked twice before giving up."""
        prompt = _PROMPT.format(name=name or "there")
        action = quoteattr(
            f"{self._webhook_base_url}/webhooks/twilio/gather?"
            + urlencode({"alert_id": alert_id, "attempt": attempt})
        )
        gather = (
            f'<Gather input="dtmf" numDigits="1" timeout="10" action={action} method="POST">'
            f"{_say(prompt)}</Gather>"
        )
        retry = (
            f'<Gather input="dtmf" numDigits="1" timeout="10" action={action} method="POST">'
            f"{_say(_REPEAT.format(prompt=prompt))}</Gather>"
        )
        return (
            '<?xml version="1.0" encoding="UTF-8"?>'
            f"<Response>{gather}{retry}{_say(_NO_INPUT)}<Hangup/></Response>"
        )

    def validate_request(self, url: str, params: dict[str, Any], signature: str) -> bool:
        """Check X-Twilio-Signature. False when no auth token is configured."""
        token = self._config.get("auth_token", "")
        if not token or not signature:
            return False
        return TwilioClient.validate_signature(token, url, params, signature)

    @staticmethod
    def render_keypress_reply(digits: Optional[str]) -> str:
        status = status_for_keypress(digits)
        return (
            '<?xml version="1.0" encoding="UTF-8"?>'
            f"<Response>{_say(_KEYPRESS_REPLIES[status])}<Hangup/></Response>"
        )

    async def shutdown(self) -> None:
        if self._client:
            await self._client.close()
