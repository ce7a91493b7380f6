"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Phone number normalization
- Webhook verification (hub.verify_token challenge)
- Outbound: free-form text through the Graph API messages endpoint;
  without an access token the send is logged and reported as mock_sent
- Inbound: text, interactive (button_reply, list_reply), media placeholders
"""
from __future__ import annotations

import hashlib
import hmac
import re
import uuid
import structlog
from typing import Any, Optional

import httpx

from channels.base import ChannelAdapter, TokenBucketRateLimiter, TransientDeliveryError

logger = structlog.get_logger()

GRAPH_API_URL = "https://graph.facebook.com/v18.0"


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone or "")


class WhatsAppAdapter(ChannelAdapter):
    """WhatsApp Business Cloud API adapter."""

    channel_name = "whatsapp"

    def __init__(self):
        super().__init__()
        self._phone_number_id: str = ""
        self._access_token: str = ""
        self._verify_token: str = ""
        self._app_secret: str = ""
        self._api_url: str = GRAPH_API_URL
        self._client: Optional[httpx.AsyncClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._phone_number_id = config.get("phone_number_id", "")
        self._access_token = config.get("access_token", "")
        self._verify_token = config.get("verify_token", "")
        self._app_secret = config.get("app_secret", "")
        self._api_url = config.get("api_url", GRAPH_API_URL)
        rate = config.get("rate_per_second", 80)
        burst = config.get("burst", 100)
        if rate > 0:
            self._rate_limiter = TokenBucketRateLimiter(rate=rate, burst=burst)
        self._initialized = True
        logger.info("whatsapp_adapter_initialized",
                    live=bool(self._access_token and self._phone_number_id))

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self._verify_token and token == self._verify_token:
            return challenge
        return None

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        """Check X-Hub-Signature-256. Always true when no app_secret is configured."""
        if not self._app_secret:
            return True
        expected = "sha256=" + hmac.new(
            self._app_secret.encode(), body, hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature or "")

    # ── Send ──────────────────────────────────────────────────

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._api_url,
                headers={"Authorization": f"Bearer {self._access_token}"},
                timeout=15.0,
            )
        return self._client

    async def _do_send(self, phone: str, content: str, metadata: dict[str, Any]) -> dict[str, Any]:
        phone = normalize_phone(phone)
        if not phone:
            return {"status": "failed", "error": "No WhatsApp number"}
        if not content:
            return {"status": "failed", "error": "Empty message"}

        if not (self._access_token and self._phone_number_id):
            msg_id = f"wamid.{uuid.uuid4().hex[:20]}"
            logger.info("whatsapp_text_sent", to=phone, msg_id=msg_id, mock=True)
            return {"status": "mock_sent", "channel_message_id": msg_id}

        client = await self._get_client()
        response = await client.post(
            f"/{self._phone_number_id}/messages",
            json={
                "messaging_product": "whatsapp",
                "to": phone,
                "type": "text",
                "text": {"body": content},
            },
        )
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDeliveryError(f"HTTP {response.status_code}")
        if response.status_code >= 400:
            return {"status": "failed", "error": f"HTTP {response.status_code}: {response.text[:200]}"}

        data = response.json()
        msg_id = (data.get("messages") or [{}])[0].get("id", "")
        logger.info("whatsapp_text_sent", to=phone, msg_id=msg_id)
        return {"status": "sent", "channel_message_id": msg_id}

    # ── Inbound parsing ───────────────────────────────────────

    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Parse WhatsApp Cloud API webhook payload."""
        try:
            entry = raw_payload.get("entry", [{}])[0]
            changes = entry.get("changes", [{}])[0]
            value = changes.get("value", {})
        except (IndexError, KeyError, AttributeError):
            return None

        # Status updates (delivered/read) — not messages
        messages = value.get("messages", [])
        if not messages:
            return None

        msg = messages[0]
        sender = normalize_phone(msg.get("from", ""))
        msg_type = msg.get("type", "text")
        msg_id = msg.get("id", "")

        contacts = value.get("contacts", [])
        sender_name = contacts[0].get("profile", {}).get("name", "") if contacts else ""

        if msg_type == "text":
            content = msg.get("text", {}).get("body", "")
        elif msg_type == "interactive":
            interactive = msg.get("interactive", {})
            reply = interactive.get(interactive.get("type", ""), {})
            content = reply.get("title", "")
        elif msg_type == "button":
            content = msg.get("button", {}).get("text", "")
        elif msg_type in ("image", "video", "document"):
            media = msg.get(msg_type, {})
            content = media.get("caption", f"[{msg_type}]")
        else:
            content = f"[{msg_type}]"

        return {
            "sender_address": sender,
            "content": content,
            "metadata": {
                "channel": "whatsapp",
                "channel_message_id": msg_id,
                "sender_name": sender_name,
                "message_type": msg_type,
                "phone_number_id": value.get("metadata", {}).get("phone_number_id", ""),
            },
        }

    async def shutdown(self) -> None:
        if self._client:
            await self._client.aclose()
