"""
Twilio REST client for voice calls and SMS.

Call flow:
1. create_call() → Twilio dials the household via PSTN
2. On answer, Twilio fetches TwiML from `url` (keypress prompt)
3. The keypress is posted to the gather webhook
4. Status webhooks arrive at status_callback

Every create carries an Idempotency-Key header so a retried request cannot
place a second call or send a second message.

API Docs: https://www.twilio.com/docs/voice/api
"""
from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog

from channels.base import error_from_response, error_from_transport
from utils.idempotency import IDEMPOTENCY_HEADER, generate_idempotency_key

logger = structlog.get_logger()


class TwilioClient:
    """Twilio REST API client for call and message creation."""

    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"

    def __init__(self, account_sid: str, auth_token: str, from_number: str, channel: str = "phone"):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.channel = channel
        self.base_url = f"{self.BASE_URL}/{account_sid}"
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                auth=(self.account_sid, self.auth_token),
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        return self._client

    async def _request(
        self, method: str, path: str, idempotency_key: str = "", **kwargs,
    ) -> dict[str, Any]:
        client = await self._get_client()
        url = f"{self.base_url}{path}.json"
        headers = kwargs.pop("headers", {})
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key
        try:
            resp = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise error_from_transport(e, self.channel) from e
        if resp.status_code >= 400:
            logger.error(
                "twilio_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                path=path,
            )
            raise error_from_response(resp, self.channel)
        return resp.json()

    # ── Calls ───────────────────────────────────────────────

    async def create_call(
        self,
        to: str,
        url: str,
        status_callback: str = "",
        ring_timeout: int = 30,
        idempotency_key: str = "",
    ) -> dict[str, Any]:
        """
        Place an outbound call.

        Args:
            to: Destination phone number (E.164)
            url: TwiML URL returning the keypress <Gather>
            status_callback: Webhook URL for call status events
            ring_timeout: Seconds to wait for answer
        """
        # Twilio uses form-encoded POST, not JSON
        payload = {
            "From": self.from_number,
            "To": to,
            "Url": url,
            "Timeout": str(ring_timeout),
        }
        if status_callback:
            payload["StatusCallback"] = status_callback
            payload["StatusCallbackEvent"] = "completed"
            payload["StatusCallbackMethod"] = "POST"

        logger.info("twilio_create_call", to=to)
        result = await self._request(
            "POST", "/Calls", data=payload,
            idempotency_key=idempotency_key or generate_idempotency_key("call"),
        )
        return {"sid": result.get("sid", ""), "status": result.get("status", "queued")}

    # ── Messages ────────────────────────────────────────────

    async def create_message(
        self,
        to: str,
        body: str,
        status_callback: str = "",
        idempotency_key: str = "",
    ) -> dict[str, Any]:
        payload = {"From": self.from_number, "To": to, "Body": body}
        if status_callback:
            payload["StatusCallback"] = status_callback

        logger.info("twilio_create_message", to=to, length=len(body))
        result = await self._request(
            "POST", "/Messages", data=payload,
            idempotency_key=idempotency_key or generate_idempotency_key("sms"),
        )
        return {"sid": result.get("sid", ""), "status": result.get("status", "queued")}

    # ── Webhook Parsing ─────────────────────────────────────

    STATUS_MAP = {
        "queued": "queued",
        "initiated": "queued",
        "ringing": "ringing",
        "in-progress": "in-progress",
        "completed": "completed",
        "busy": "busy",
        "no-answer": "no-answer",
        "failed": "failed",
        "canceled": "canceled",
        "sent": "sent",
        "delivered": "delivered",
        "undelivered": "failed",
    }

    @classmethod
    def parse_status_webhook(cls, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Normalize a Twilio call or message status webhook.

        Calls send CallSid/CallStatus/CallDuration; messages send
        MessageSid/MessageStatus/ErrorCode.
        """
        provider_id = payload.get("CallSid") or payload.get("MessageSid") or payload.get("SmsSid", "")
        status_raw = (
            payload.get("CallStatus")
            or payload.get("MessageStatus")
            or payload.get("SmsStatus")
            or ""
        ).lower()
        return {
            "provider_id": provider_id,
            "status": cls.STATUS_MAP.get(status_raw, status_raw),
            "duration": int(payload.get("CallDuration", payload.get("Duration", 0)) or 0),
            "error_code": payload.get("ErrorCode", ""),
            "timestamp": payload.get("Timestamp", datetime.now(timezone.utc).isoformat()),
        }

    # ── Signatures ──────────────────────────────────────────

    @staticmethod
    def compute_signature(auth_token: str, url: str, params: dict[str, Any]) -> str:
        """X-Twilio-Signature: base64(HMAC-SHA1(url + sorted key/value pairs))."""
        data = url + "".join(f"{k}{params[k]}" for k in sorted(params))
        digest = hmac.new(auth_token.encode(), data.encode(), hashlib.sha1).digest()
        return base64.b64encode(digest).decode()

    @classmethod
    def validate_signature(cls, auth_token: str, url: str, params: dict[str, Any], signature: str) -> bool:
        if not auth_token or not signature:
            return False
        expected = cls.compute_signature(auth_token, url, params)
        return hmac.compare_digest(expected, signature)

    # ── Helpers ─────────────────────────────────────────────

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
