"""
Chat Push Adapter — LINE Messaging API push and reply.

Family and neighbors receive a text message with quick-reply postback
buttons. Each button posts back `action=<action>&alert_id=<id>`, which the
inbound webhook turns into a PostbackEvent.

Provides:
- Template rendering (family_unanswered, family_tired, neighbor_check,
  urgent_incident, in_progress)
- push() with X-Line-Retry-Key so a retried push is delivered once
- reply() for postback acknowledgements
- validate_signature() for X-Line-Signature (HMAC-SHA256, base64)
- Stub mode when no channel access token is configured
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import time
import uuid
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
import structlog

from channels.base import (
    ChannelAdapter,
    ProviderValidationError,
    SendResult,
    error_from_response,
    error_from_transport,
)
from models.schemas import NotificationChannel
from utils.idempotency import IDEMPOTENCY_HEADER, generate_idempotency_key

logger = structlog.get_logger()

API_BASE = "https://api.line.me/v2/bot"

_BUTTON_LABELS = {
    "view_detail": "View details",
    "call": "Call them",
    "take_care": "I'll check on them",
    "done": "All fine now",
    "mark_resolved": "Resolved",
}

_TEMPLATES: dict[str, tuple[str, list[str]]] = {
    "family_unanswered": (
        "[HeatWatch] {name} has not answered our heat-safety calls today "
        "(level: {level}). Please check on them.",
        ["view_detail", "call", "take_care", "mark_resolved"],
    ),
    "family_tired": (
        "[HeatWatch] {name} said they feel tired in today's heat (level: {level}). "
        "Please check on them.",
        ["view_detail", "call", "take_care", "mark_resolved"],
    ),
    "neighbor_check": (
        "[HeatWatch] Could you check on your neighbor {name}? They have not "
        "answered our heat-safety calls today.",
        ["take_care", "done"],
    ),
    "urgent_incident": (
        "[HeatWatch URGENT] {name} pressed the HELP button during today's heat "
        "(level: {level}). Please go to them now or call emergency services.",
        ["take_care", "call", "done"],
    ),
    "in_progress": (
        "[HeatWatch] {responder} is checking on {name}.",
        ["done"],
    ),
}


def postback_data(action: str, alert_id: str) -> str:
    return urlencode({"action": action, "alert_id": alert_id})


def render_template(template: str, params: dict[str, Any]) -> dict[str, Any]:
    """Build a LINE text message with quick-reply postback buttons."""
    if template not in _TEMPLATES:
        raise ProviderValidationError(f"Unknown chat template: {template}", NotificationChannel.CHAT_PUSH.value)
    text, actions = _TEMPLATES[template]
    alert_id = params.get("alert_id", "")
    return {
        "type": "text",
        "text": text.format(
            name=params.get("name", "the resident"),
            level=params.get("level", "high"),
            responder=params.get("responder", "Someone"),
        ),
        "quickReply": {
            "items": [
                {
                    "type": "action",
                    "action": {
                        "type": "postback",
                        "label": _BUTTON_LABELS[action],
                        "data": postback_data(action, alert_id),
                        "displayText": _BUTTON_LABELS[action],
                    },
                }
                for action in actions
            ]
        },
    }


class ChatPushAdapter(ChannelAdapter):
    """LINE push/reply adapter."""

    channel = NotificationChannel.CHAT_PUSH

    def __init__(self):
        super().__init__()
        self._token: str = ""
        self._secret: str = ""
        self._client: Optional[httpx.AsyncClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config or {}
        self._token = self._config.get("channel_access_token", "")
        self._secret = self._config.get("channel_secret", "")
        self._initialized = True
        logger.info("chat_push_adapter_initialized", stub_mode=self.stub_mode)

    @property
    def is_configured(self) -> bool:
        return bool(self._token)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=API_BASE,
                headers={"Authorization": f"Bearer {self._token}"},
                timeout=httpx.Timeout(15.0, connect=5.0),
            )
        return self._client

    async def _post(self, path: str, payload: dict[str, Any], idempotency_key: str = "") -> dict[str, Any]:
        client = await self._get_client()
        headers = {}
        if idempotency_key:
            # LINE wants a UUID retry key, derived from the idempotency key so retries share it
            headers["X-Line-Retry-Key"] = str(uuid.uuid5(uuid.NAMESPACE_URL, idempotency_key))
            headers[IDEMPOTENCY_HEADER] = idempotency_key
        try:
            resp = await client.post(path, json=payload, headers=headers)
        except httpx.TransportError as e:
            raise error_from_transport(e, self.channel.value) from e
        if resp.status_code >= 400:
            logger.error("line_api_error", status=resp.status_code, body=resp.text[:500], path=path)
            raise error_from_response(resp, self.channel.value)
        return {"request_id": resp.headers.get("x-line-request-id", "")}

    # ── Send ──────────────────────────────────────────────────

    async def push(
        self, to: str, template: str, params: dict[str, Any], idempotency_key: str = "",
    ) -> SendResult:
        if not to:
            raise ProviderValidationError("No chat handle", self.channel.value)
        message = render_template(template, params)

        if self.stub_mode:
            return self._stub_result("push", to=to, template=template, alert_id=params.get("alert_id", ""))

        started = time.monotonic()
        try:
            result = await self._post(
                "/message/push", {"to": to, "messages": [message]},
                idempotency_key=idempotency_key or generate_idempotency_key("push"),
            )
        except Exception as e:
            self._record(started, e)
            raise
        self._record(started)
        logger.info("chat_push_sent", to=to, template=template, request_id=result["request_id"])
        return SendResult(provider_id=result["request_id"], status="sent", raw=result)

    async def reply(self, reply_token: str, text: str) -> Optional[SendResult]:
        """Acknowledge a postback. Reply tokens are single-use."""
        if not reply_token:
            return None
        if self.stub_mode:
            return self._stub_result("reply", reply_token=reply_token)
        result = await self._post(
            "/message/reply",
            {"replyToken": reply_token, "messages": [{"type": "text", "text": text}]},
        )
        return SendResult(provider_id=result["request_id"], status="sent", raw=result)

    # ── Signatures ────────────────────────────────────────────

    @staticmethod
    def compute_signature(secret: str, body: bytes) -> str:
        digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def validate_signature(self, body: bytes, signature: str) -> bool:
        if not self._secret or not signature:
            return False
        return hmac.compare_digest(self.compute_signature(self._secret, body), signature)

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
