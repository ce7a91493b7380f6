"""
Tests for channel adapters.

Coverage:
  Base:      tenacity retries, rate limiting, circuit breaker, stats, inbound hygiene
  WhatsApp:  mock send, Graph API send, webhook verification, signature, inbound parse
"""
import asyncio
import hashlib
import hmac
import json
import httpx
import pytest

from channels.base import (
    BreakerState, ChannelAdapter, CircuitBreaker, MessageDeduplicator,
    TokenBucketRateLimiter, clean_text,
)
from channels.whatsapp_adapter import WhatsAppAdapter, normalize_phone


class FlakyChannel(ChannelAdapter):
    channel_name = "flaky"
    retry_backoff = 0.0

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def initialize(self, config):
        self._initialized = True

    async def _do_send(self, phone, content, metadata):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("socket closed")
        return {"status": "sent", "channel_message_id": "m1"}


def wa_payload(text="Oi", msg_id="wamid.1", sender="+55 11 99999-0001", msg_type="text"):
    message = {"from": sender, "id": msg_id, "type": msg_type}
    if msg_type == "text":
        message["text"] = {"body": text}
    elif msg_type == "interactive":
        message["interactive"] = {"type": "button_reply", "button_reply": {"id": "b1", "title": text}}
    return {"entry": [{"changes": [{"value": {
        "metadata": {"phone_number_id": "123"},
        "contacts": [{"profile": {"name": "Maria"}}],
        "messages": [message],
    }}]}]}


# ══════════════════════════════════════════════════════════════
#  BASE
# ══════════════════════════════════════════════════════════════

class TestTokenBucketRateLimiter:
    @pytest.mark.asyncio
    async def test_acquire_within_burst(self):
        rl = TokenBucketRateLimiter(rate=10, burst=5)
        for _ in range(5):
            assert await rl.acquire(timeout=0.1) is True

    @pytest.mark.asyncio
    async def test_acquire_exceeds_burst(self):
        rl = TokenBucketRateLimiter(rate=10, burst=2)
        assert await rl.acquire(timeout=0.1) is True
        assert await rl.acquire(timeout=0.1) is True
        assert await rl.acquire(timeout=0.05) is False

    @pytest.mark.asyncio
    async def test_refill(self):
        rl = TokenBucketRateLimiter(rate=100, burst=1)
        assert await rl.acquire(timeout=0.01) is True
        await asyncio.sleep(0.02)
        assert await rl.acquire(timeout=0.01) is True


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        cb = CircuitBreaker(failure_threshold=3, recovery_timeout=60)
        for _ in range(3):
            cb.record_failure()
        assert cb.is_open

    def test_half_open_after_timeout(self):
        now = [0.0]
        cb = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=lambda: now[0])
        cb.record_failure()
        assert cb.state is BreakerState.OPEN
        now[0] = 30.0
        assert cb.state == "half_open"
        cb.record_success()
        assert cb.state is BreakerState.CLOSED

    def test_failed_probe_reopens(self):
        now = [0.0]
        cb = CircuitBreaker(failure_threshold=3, recovery_timeout=30, clock=lambda: now[0])
        for _ in range(3):
            cb.record_failure()
        now[0] = 31.0
        cb.record_failure()
        assert cb.is_open
        assert cb.stats["total_failures"] == 4

    def test_success_resets_count(self):
        cb = CircuitBreaker(failure_threshold=2)
        cb.record_failure()
        cb.record_success()
        cb.record_failure()
        assert not cb.is_open


class TestChannelAdapterSend:
    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        channel = FlakyChannel(failures=2)
        result = await channel.send_message("5511", "oi")
        assert result["status"] == "sent"
        assert result["attempts"] == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        channel = FlakyChannel(failures=10)
        result = await channel.send_message("5511", "oi")
        assert result["status"] == "failed"
        assert "socket closed" in result["error"]
        assert channel.attempts == channel.max_retries

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits(self):
        channel = FlakyChannel(failures=0)
        for _ in range(5):
            channel._breaker.record_failure()
        result = await channel.send_message("5511", "oi")
        assert result["status"] == "circuit_open"
        assert channel.attempts == 0

    @pytest.mark.asyncio
    async def test_returned_failure_is_not_retried(self):
        class Rejecting(FlakyChannel):
            async def _do_send(self, phone, content, metadata):
                self.attempts += 1
                return {"status": "failed", "error": "invalid recipient"}

        channel = Rejecting(failures=0)
        result = await channel.send_message("5511", "oi")
        assert result["status"] == "failed"
        assert channel.attempts == 1

    @pytest.mark.asyncio
    async def test_metrics(self):
        channel = FlakyChannel(failures=0)
        await channel.send_message("5511", "oi")
        health = await channel.health_check()
        assert health["metrics"]["sent"] == 1
        assert health["circuit_breaker"]["state"] == "closed"


class TestInboundHygiene:
    def test_deduplicator(self):
        dedup = MessageDeduplicator(ttl_seconds=60)
        assert not dedup.is_duplicate("wamid.1")
        assert dedup.is_duplicate("wamid.1")

    def test_deduplicator_forgets_after_ttl(self):
        now = [0.0]
        dedup = MessageDeduplicator(ttl_seconds=60, clock=lambda: now[0])
        dedup.is_duplicate("wamid.1")
        now[0] = 61.0
        assert not dedup.is_duplicate("wamid.1")

    def test_deduplicator_bounded(self):
        dedup = MessageDeduplicator(max_size=2)
        for key in ("a", "b", "c"):
            dedup.is_duplicate(key)
        assert not dedup.is_duplicate("a")

    def test_clean_text_strips_control_chars(self):
        assert clean_text("  oi\x00\x07 tudo bem\n ") == "oi tudo bem"

    def test_clean_text_keeps_newlines(self):
        assert clean_text("linha 1\nlinha 2") == "linha 1\nlinha 2"

    def test_clean_text_truncates(self):
        assert clean_text("abcdefgh", max_length=5) == "abcde…"


# ══════════════════════════════════════════════════════════════
#  WHATSAPP
# ══════════════════════════════════════════════════════════════

class TestWhatsAppSend:
    def test_normalize_phone(self):
        assert normalize_phone("+55 (11) 99999-0001") == "5511999990001"
        assert normalize_phone(None) == ""

    @pytest.mark.asyncio
    async def test_mock_send_without_token(self):
        wa = WhatsAppAdapter()
        await wa.initialize({})
        result = await wa.send_message("+55 11 99999-0001", "Olá")
        assert result["status"] == "mock_sent"
        assert result["channel_message_id"].startswith("wamid.")

    @pytest.mark.asyncio
    async def test_graph_api_send(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.ABC"}]})

        wa = WhatsAppAdapter()
        await wa.initialize({"phone_number_id": "123", "access_token": "tok"})
        wa._client = httpx.AsyncClient(base_url="https://graph.test/v18.0",
                                       transport=httpx.MockTransport(handler))
        result = await wa.send_message("5511999990001", "Olá")
        assert result["status"] == "sent"
        assert result["channel_message_id"] == "wamid.ABC"
        assert captured["path"] == "/v18.0/123/messages"
        assert captured["body"]["text"] == {"body": "Olá"}

    @pytest.mark.asyncio
    async def test_client_error_is_definitive(self):
        wa = WhatsAppAdapter()
        await wa.initialize({"phone_number_id": "123", "access_token": "tok"})
        wa._client = httpx.AsyncClient(base_url="https://graph.test",
                                       transport=httpx.MockTransport(lambda r: httpx.Response(400, text="bad")))
        result = await wa.send_message("5511999990001", "Olá")
        assert result["status"] == "failed"
        assert result["attempts"] == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        statuses = iter([503, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            status = next(statuses)
            if status == 200:
                return httpx.Response(200, json={"messages": [{"id": "wamid.OK"}]})
            return httpx.Response(status, text="unavailable")

        wa = WhatsAppAdapter()
        wa.retry_backoff = 0.0
        await wa.initialize({"phone_number_id": "123", "access_token": "tok"})
        wa._client = httpx.AsyncClient(base_url="https://graph.test", transport=httpx.MockTransport(handler))
        result = await wa.send_message("5511999990001", "Olá")
        assert result["status"] == "sent"
        assert result["attempts"] == 2

    @pytest.mark.asyncio
    async def test_empty_message_fails(self):
        wa = WhatsAppAdapter()
        await wa.initialize({})
        assert (await wa.send_message("5511", ""))["status"] == "failed"


class TestWhatsAppWebhook:
    @pytest.mark.asyncio
    async def test_verify_challenge(self):
        wa = WhatsAppAdapter()
        await wa.initialize({"verify_token": "segredo"})
        params = {"hub.mode": "subscribe", "hub.verify_token": "segredo", "hub.challenge": "42"}
        assert wa.verify_webhook(params) == "42"
        assert wa.verify_webhook({**params, "hub.verify_token": "errado"}) is None

    @pytest.mark.asyncio
    async def test_signature(self):
        wa = WhatsAppAdapter()
        await wa.initialize({"app_secret": "s3cret"})
        body = b'{"entry": []}'
        good = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        assert wa.verify_webhook_signature(body, good)
        assert not wa.verify_webhook_signature(body, "sha256=deadbeef")

    @pytest.mark.asyncio
    async def test_signature_skipped_without_secret(self):
        wa = WhatsAppAdapter()
        await wa.initialize({})
        assert wa.verify_webhook_signature(b"{}", "")

    @pytest.mark.asyncio
    async def test_parse_text(self):
        wa = WhatsAppAdapter()
        parsed = await wa.handle_inbound(wa_payload("Quero comprar"))
        assert parsed["sender_address"] == "5511999990001"
        assert parsed["content"] == "Quero comprar"
        assert parsed["metadata"]["channel_message_id"] == "wamid.1"
        assert parsed["metadata"]["sender_name"] == "Maria"

    @pytest.mark.asyncio
    async def test_parse_button_reply(self):
        wa = WhatsAppAdapter()
        parsed = await wa.handle_inbound(wa_payload("Sim", msg_type="interactive"))
        assert parsed["content"] == "Sim"

    @pytest.mark.asyncio
    async def test_status_update_ignored(self):
        wa = WhatsAppAdapter()
        payload = {"entry": [{"changes": [{"value": {"statuses": [{"status": "read"}]}}]}]}
        assert await wa.handle_inbound(payload) is None

    @pytest.mark.asyncio
    async def test_redelivery_dropped(self):
        wa = WhatsAppAdapter()
        assert await wa.handle_inbound(wa_payload(msg_id="wamid.7")) is not None
        assert await wa.handle_inbound(wa_payload(msg_id="wamid.7")) is None
