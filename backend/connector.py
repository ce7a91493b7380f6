"""
Backend Connector — Generic adapter for the CRM / messaging backend.

Everything the engine changes outside its own store goes through here:
contact tags and fields, property-record updates, conversation escalation
and closure, and the per-contact automation flag. The connector is
configured via settings.yaml and provides a uniform interface; the
ActionGateway in core/gateway.py wraps it so failures never reach node
handlers as exceptions.
"""
from __future__ import annotations

import abc
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from config.settings import BackendConfig, get_settings

logger = structlog.get_logger()


class TransientBackendError(Exception):
    """A backend response worth retrying: 429 or 5xx."""

    def __init__(self, status_code: int, url: str):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code} from {url}")


# 4xx responses are final; retrying a rejected POST would repeat the mutation
RETRYABLE_ERRORS = (TransientBackendError, httpx.TransportError)


# Named endpoints used when settings.yaml does not override them.
DEFAULT_ENDPOINTS = {
    "get_contact": "/contacts/{phone}",
    "add_tag": "/contacts/{phone}/tags",
    "remove_tag": "/contacts/{phone}/tags/{tag_id}",
    "update_contact": "/contacts/{phone}",
    "update_property": "/properties/interest",
    "set_automation": "/contacts/{phone}/automation",
    "escalate_conversation": "/conversations/{conversation_id}/escalate",
    "close_conversation": "/conversations/{conversation_id}/close",
}


class BackendConnector(abc.ABC):
    """Abstract base for all backend connectors."""

    @abc.abstractmethod
    async def get_contact(self, phone: str) -> Optional[dict[str, Any]]:
        """Fetch a contact by phone identity. None when unknown or unreachable."""
        ...

    @abc.abstractmethod
    async def add_tag(self, phone: str, tag_id: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def remove_tag(self, phone: str, tag_id: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def update_contact(self, phone: str, fields: dict[str, Any]) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def update_property(self, phone: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Mutate an external CRM/property record on behalf of the contact."""
        ...

    @abc.abstractmethod
    async def escalate_conversation(
        self, conversation_id: str, department: str, priority: str, reason: str = "",
    ) -> dict[str, Any]:
        """Reassign the conversation for human handling with a priority tag."""
        ...

    @abc.abstractmethod
    async def close_conversation(self, conversation_id: str, reason: str = "") -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def set_automation(self, phone: str, enabled: bool) -> dict[str, Any]:
        """Flip the contact's "automation enabled" flag (ai_handling)."""
        ...

    async def is_automation_enabled(self, phone: str) -> bool:
        contact = await self.get_contact(phone)
        if not contact:
            return True
        return bool(contact.get("ai_handling", True))


class RESTBackendConnector(BackendConnector):
    """
    REST API backend connector.
    Calls configured endpoints. Transport errors, 429 and 5xx are retried with
    exponential backoff; any other error status raises httpx.HTTPStatusError at once.
    """

    max_attempts: int = 3
    retry_backoff: float = 1.0

    def __init__(self, config: BackendConfig = None):
        self.config = config or get_settings().backend
        self.endpoints = {**DEFAULT_ENDPOINTS, **self.config.endpoints}
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=30.0,
            )
        return self.client

    async def _request(self, method: str, endpoint: str, **kwargs) -> dict[str, Any]:
        url = self.endpoints.get(endpoint, endpoint)
        for k, v in kwargs.pop("path_params", {}).items():
            url = url.replace(f"{{{k}}}", str(v))

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=10),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            reraise=True,
        ):
            with attempt:
                return await self._send(method, url, **kwargs)
        return {}

    async def _send(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.request(method, url, **kwargs)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientBackendError(response.status_code, url)
        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()

    async def get_contact(self, phone: str) -> Optional[dict[str, Any]]:
        try:
            return await self._request("GET", "get_contact", path_params={"phone": phone})
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                logger.debug("backend_contact_not_found", phone=phone)
                return None
            logger.error("backend_fetch_contact_failed", phone=phone, error=str(e))
            return None
        except Exception as e:
            logger.error("backend_fetch_contact_failed", phone=phone, error=str(e))
            return None

    async def add_tag(self, phone: str, tag_id: str) -> dict[str, Any]:
        return await self._request(
            "POST", "add_tag", path_params={"phone": phone}, json={"tag_id": tag_id},
        )

    async def remove_tag(self, phone: str, tag_id: str) -> dict[str, Any]:
        return await self._request(
            "DELETE", "remove_tag", path_params={"phone": phone, "tag_id": tag_id},
        )

    async def update_contact(self, phone: str, fields: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "PATCH", "update_contact", path_params={"phone": phone}, json=fields,
        )

    async def update_property(self, phone: str, fields: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST", "update_property", json={"phone": phone, **fields},
        )

    async def escalate_conversation(
        self, conversation_id: str, department: str, priority: str, reason: str = "",
    ) -> dict[str, Any]:
        return await self._request(
            "POST", "escalate_conversation",
            path_params={"conversation_id": conversation_id},
            json={
                "department": department, "priority": priority, "reason": reason,
                "tags": [f"priority:{priority}", "escalated"], "status": "pending",
            },
        )

    async def close_conversation(self, conversation_id: str, reason: str = "") -> dict[str, Any]:
        return await self._request(
            "POST", "close_conversation",
            path_params={"conversation_id": conversation_id},
            json={"reason": reason},
        )

    async def set_automation(self, phone: str, enabled: bool) -> dict[str, Any]:
        return await self._request(
            "PUT", "set_automation", path_params={"phone": phone},
            json={"ai_handling": enabled},
        )

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockBackendConnector(BackendConnector):
    """
    Mock backend for development and testing.
    Keeps contacts, conversations and property records in memory so tests
    can assert on the side effects a flow produced.
    """

    def __init__(self, contacts: dict[str, dict[str, Any]] = None):
        self.contacts: dict[str, dict[str, Any]] = {
            "5511999990001": {
                "phone": "5511999990001", "name": "Maria Souza",
                "email": "maria@example.com", "tags": [], "ai_handling": True,
            },
        }
        if contacts is not None:
            self.contacts = contacts
        self.conversations: dict[str, dict[str, Any]] = {}
        self.property_records: list[dict[str, Any]] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def _contact(self, phone: str) -> dict[str, Any]:
        return self.contacts.setdefault(
            phone, {"phone": phone, "name": "", "tags": [], "ai_handling": True},
        )

    def _conversation(self, conversation_id: str) -> dict[str, Any]:
        return self.conversations.setdefault(conversation_id, {
            "id": conversation_id, "status": "open", "department": "",
            "priority": "", "tags": [], "close_reason": "",
        })

    def _record(self, op: str, **payload) -> None:
        self.calls.append((op, payload))
        logger.info("mock_backend_call", op=op, **{k: v for k, v in payload.items() if k != "fields"})

    async def get_contact(self, phone: str) -> Optional[dict[str, Any]]:
        return self.contacts.get(phone)

    async def add_tag(self, phone: str, tag_id: str) -> dict[str, Any]:
        self._record("add_tag", phone=phone, tag_id=tag_id)
        tags = self._contact(phone)["tags"]
        if tag_id not in tags:
            tags.append(tag_id)
        return {"status": "ok", "tags": list(tags)}

    async def remove_tag(self, phone: str, tag_id: str) -> dict[str, Any]:
        self._record("remove_tag", phone=phone, tag_id=tag_id)
        tags = self._contact(phone)["tags"]
        if tag_id in tags:
            tags.remove(tag_id)
        return {"status": "ok", "tags": list(tags)}

    async def update_contact(self, phone: str, fields: dict[str, Any]) -> dict[str, Any]:
        self._record("update_contact", phone=phone, fields=fields)
        contact = self._contact(phone)
        contact.update({k: v for k, v in fields.items() if v not in (None, "")})
        return {"status": "ok", "contact": dict(contact)}

    async def update_property(self, phone: str, fields: dict[str, Any]) -> dict[str, Any]:
        self._record("update_property", phone=phone, fields=fields)
        record = {"phone": phone, **fields,
                  "updated_at": datetime.now(timezone.utc).isoformat()}
        self.property_records.append(record)
        return {"status": "ok", "record": record}

    async def escalate_conversation(
        self, conversation_id: str, department: str, priority: str, reason: str = "",
    ) -> dict[str, Any]:
        self._record("escalate_conversation", conversation_id=conversation_id,
                     department=department, priority=priority)
        conv = self._conversation(conversation_id)
        conv.update({"status": "pending", "priority": priority, "escalation_reason": reason})
        if department:
            conv["department"] = department
        for tag in (f"priority:{priority}", "escalated"):
            if tag not in conv["tags"]:
                conv["tags"].append(tag)
        return {"status": "ok", "conversation": dict(conv)}

    async def close_conversation(self, conversation_id: str, reason: str = "") -> dict[str, Any]:
        self._record("close_conversation", conversation_id=conversation_id, reason=reason)
        conv = self._conversation(conversation_id)
        conv.update({"status": "closed", "close_reason": reason})
        return {"status": "ok", "conversation": dict(conv)}

    async def set_automation(self, phone: str, enabled: bool) -> dict[str, Any]:
        self._record("set_automation", phone=phone, enabled=enabled)
        self._contact(phone)["ai_handling"] = enabled
        return {"status": "ok", "ai_handling": enabled}


def create_backend_connector(config: BackendConfig = None) -> BackendConnector:
    """Factory function to create the appropriate backend connector."""
    config = config or get_settings().backend
    if config.type == "rest" and config.base_url:
        return RESTBackendConnector(config)
    logger.warning("using_mock_backend", reason="no backend configured or base_url empty")
    return MockBackendConnector()
