"""
External Action Gateway — the single exit point for node side effects.

Every outbound effect a handler performs (message delivery, tagging,
contact/record updates, escalation, closing the conversation, generic HTTP
integrations) is an `invoke(kind, payload)` call returning a GatewayResult.
The gateway never raises: failures come back as `ok=False` with an error
string, which handlers copy into the Execution Log and then carry on.
"""
from __future__ import annotations

import abc
import json
import structlog
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from backend.connector import BackendConnector
from channels.base import ChannelAdapter, DELIVERED_STATUSES

logger = structlog.get_logger()


class ActionKind(str, Enum):
    SEND_MESSAGE = "send_message"
    GET_CONTACT = "get_contact"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_CONTACT = "update_contact"
    UPDATE_PROPERTY = "update_property"
    ESCALATE = "escalate"
    CLOSE_CONVERSATION = "close_conversation"
    SET_AUTOMATION = "set_automation"
    HTTP_REQUEST = "http_request"


@dataclass
class GatewayResult:
    ok: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    duration_ms: int = 0

    def to_log(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": self.ok}
        if self.data:
            out["data"] = self.data
        if self.error:
            out["error"] = self.error
        return out


class ActionGateway(abc.ABC):
    """Uniform contract: invoke(kind, payload) → GatewayResult. Never raises."""

    @abc.abstractmethod
    async def invoke(self, kind: ActionKind, payload: dict[str, Any]) -> GatewayResult:
        ...

    async def send_message(self, phone: str, text: str) -> GatewayResult:
        return await self.invoke(ActionKind.SEND_MESSAGE, {"phone": phone, "text": text})


class ExternalActionGateway(ActionGateway):
    """
    Routes actions to the messaging channel, the backend connector, or a
    plain HTTP call for integration nodes.
    """

    def __init__(
        self,
        backend: BackendConnector,
        channel: ChannelAdapter,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.backend = backend
        self.channel = channel
        self._http_transport = http_transport
        self._routes: dict[ActionKind, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            ActionKind.SEND_MESSAGE: self._send_message,
            ActionKind.GET_CONTACT: self._get_contact,
            ActionKind.ADD_TAG: lambda p: self.backend.add_tag(p["phone"], p["tag_id"]),
            ActionKind.REMOVE_TAG: lambda p: self.backend.remove_tag(p["phone"], p["tag_id"]),
            ActionKind.UPDATE_CONTACT: lambda p: self.backend.update_contact(p["phone"], p["fields"]),
            ActionKind.UPDATE_PROPERTY: lambda p: self.backend.update_property(p["phone"], p["fields"]),
            ActionKind.ESCALATE: lambda p: self.backend.escalate_conversation(
                p["conversation_id"], p.get("department", ""),
                p.get("priority", "medium"), p.get("reason", ""),
            ),
            ActionKind.CLOSE_CONVERSATION: lambda p: self.backend.close_conversation(
                p["conversation_id"], p.get("reason", ""),
            ),
            ActionKind.SET_AUTOMATION: lambda p: self.backend.set_automation(p["phone"], p["enabled"]),
            ActionKind.HTTP_REQUEST: self._http_request,
        }

    async def invoke(self, kind: ActionKind, payload: dict[str, Any]) -> GatewayResult:
        route = self._routes.get(kind)
        if route is None:
            return GatewayResult(ok=False, error=f"unsupported action '{kind}'")

        start = time.monotonic()
        try:
            data = await route(payload) or {}
        except _GatewayFailure as e:
            result = GatewayResult(ok=False, data=e.data, error=str(e))
        except Exception as e:
            result = GatewayResult(ok=False, error=f"{type(e).__name__}: {e}")
        else:
            result = GatewayResult(ok=True, data=data)
        result.duration_ms = int((time.monotonic() - start) * 1000)

        if not result.ok:
            logger.warning("gateway_call_failed", kind=kind.value, error=result.error)
        return result

    # ── Routes ────────────────────────────────────────────────

    async def _send_message(self, payload: dict[str, Any]) -> dict[str, Any]:
        result = await self.channel.send_message(payload["phone"], payload["text"])
        if result.get("status") not in DELIVERED_STATUSES:
            raise _GatewayFailure(result.get("error") or result.get("status", "not delivered"), result)
        return {
            "delivered": True,
            "delivery_id": result.get("channel_message_id", ""),
            "status": result.get("status"),
        }

    async def _get_contact(self, payload: dict[str, Any]) -> dict[str, Any]:
        contact = await self.backend.get_contact(payload["phone"])
        if contact is None:
            raise _GatewayFailure("contact not found")
        return contact

    async def _http_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        method = payload.get("method", "POST").upper()
        headers = {"Content-Type": "application/json", **(payload.get("headers") or {})}
        body = payload.get("body") or None
        if method in ("GET", "DELETE", "HEAD"):
            body = None

        async with httpx.AsyncClient(
            timeout=payload.get("timeout", 10.0), transport=self._http_transport,
        ) as client:
            response = await client.request(method, payload["url"], headers=headers, content=body)

        try:
            parsed: Any = response.json()
        except (json.JSONDecodeError, ValueError):
            parsed = response.text
        data = {"status_code": response.status_code, "body": parsed}
        if response.status_code >= 400:
            raise _GatewayFailure(f"HTTP {response.status_code}", data)
        return data


class _GatewayFailure(Exception):
    """A route completed but the outcome is a failure; carries the response data."""

    def __init__(self, message: str, data: Optional[dict[str, Any]] = None):
        self.data = data or {}
        super().__init__(message)
