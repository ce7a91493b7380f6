"""
Channel base — the outbound delivery contract used by the flow engine.

Every adapter answers

    send_message(phone, text, metadata) → {"status", "channel_message_id"?, "error"?,
                                          "attempts", "latency_ms"}

with status one of sent | mock_sent | failed | circuit_open | rate_limited.
Only DELIVERED_STATUSES count as delivered. Adapters implement _do_send and
raise TransientDeliveryError (or a transport error) for failures worth
retrying; anything they return with status "failed" is final.

Inbound webhook payloads go through handle_inbound: adapter parsing, then
redelivery suppression and text cleanup.
"""
from __future__ import annotations

import abc
import asyncio
import re
import time
import uuid
import structlog
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

logger = structlog.get_logger()

DELIVERED_STATUSES = frozenset({"sent", "mock_sent"})

WHATSAPP_TEXT_LIMIT = 4096


class TransientDeliveryError(Exception):
    """Raised by adapters for a send that may succeed on retry (5xx, throttling)."""


RETRYABLE_ERRORS = (TransientDeliveryError, ConnectionError, TimeoutError, httpx.TransportError)


# ──────────────────────────────────────────────────────────────
#  Rate limiting
# ──────────────────────────────────────────────────────────────

class TokenBucketRateLimiter:
    """Token bucket: `rate` tokens per second, at most `burst` stored."""

    def __init__(self, rate: float = 10.0, burst: int = 10,
                 clock: Callable[[], float] = time.monotonic):
        self.rate = max(rate, 0.001)
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._stamp = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(float(self.burst), self._tokens + (now - self._stamp) * self.rate)
        self._stamp = now

    async def acquire(self, timeout: float = 5.0) -> bool:
        """Take one token, waiting up to `timeout` seconds. False when it would take longer."""
        async with self._lock:
            self._refill()
            if self._tokens < 1.0:
                wait = (1.0 - self._tokens) / self.rate
                if wait > timeout:
                    return False
                await asyncio.sleep(wait)
                self._refill()
            self._tokens -= 1.0
            return True


# ──────────────────────────────────────────────────────────────
#  Circuit breaker
# ──────────────────────────────────────────────────────────────

class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Opens after `failure_threshold` consecutive failed sends. Once
    `recovery_timeout` has elapsed one probe is let through: success closes
    the breaker, failure opens it again.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._opened_at: Optional[float] = None
        self._consecutive = 0
        self.total_failures = 0
        self.total_successes = 0

    @property
    def state(self) -> BreakerState:
        if self._opened_at is None:
            return BreakerState.CLOSED
        if self._clock() - self._opened_at >= self.recovery_timeout:
            return BreakerState.HALF_OPEN
        return BreakerState.OPEN

    @property
    def is_open(self) -> bool:
        return self.state is BreakerState.OPEN

    def record_failure(self) -> None:
        self.total_failures += 1
        self._consecutive += 1
        probing = self.state is BreakerState.HALF_OPEN
        if probing or self._consecutive >= self.failure_threshold:
            self._opened_at = self._clock()
            logger.warning("circuit_opened", failures=self._consecutive, probe=probing)

    def record_success(self) -> None:
        self.total_successes += 1
        self._consecutive = 0
        self._opened_at = None

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_failures": self._consecutive,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
        }


# ──────────────────────────────────────────────────────────────
#  Delivery stats
# ──────────────────────────────────────────────────────────────

@dataclass
class DeliveryStats:
    channel: str
    sent: int = 0
    failed: int = 0
    latency_ms_total: float = 0.0
    recent_errors: deque = field(default_factory=lambda: deque(maxlen=10))

    def record_sent(self, latency_ms: float) -> None:
        self.sent += 1
        self.latency_ms_total += latency_ms

    def record_failed(self, error: str) -> None:
        self.failed += 1
        if error:
            self.recent_errors.append(error)

    def to_dict(self) -> dict[str, Any]:
        attempted = self.sent + self.failed
        return {
            "channel": self.channel,
            "sent": self.sent,
            "failed": self.failed,
            "avg_latency_ms": round(self.latency_ms_total / self.sent, 1) if self.sent else 0.0,
            "failure_rate": round(self.failed / attempted, 4) if attempted else 0.0,
            "recent_errors": list(self.recent_errors),
        }


# ──────────────────────────────────────────────────────────────
#  Inbound hygiene
# ──────────────────────────────────────────────────────────────

class MessageDeduplicator:
    """Remembers inbound message ids for `ttl_seconds`, oldest evicted first."""

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 5000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()

    def is_duplicate(self, key: str) -> bool:
        now = self._clock()
        while self._seen:
            _, seen_at = next(iter(self._seen.items()))
            if now - seen_at < self.ttl:
                break
            self._seen.popitem(last=False)

        if key in self._seen:
            return True
        self._seen[key] = now
        if len(self._seen) > self.max_size:
            self._seen.popitem(last=False)
        return False


_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def clean_text(content: str, max_length: int = WHATSAPP_TEXT_LIMIT) -> str:
    """Drop control characters (keeping newlines and tabs), trim, cap length."""
    content = _CONTROL_CHARS.sub("", content or "").strip()
    if len(content) > max_length:
        content = content[:max_length].rstrip() + "…"
    return content


# ──────────────────────────────────────────────────────────────
#  Adapter base
# ──────────────────────────────────────────────────────────────

class ChannelAdapter(abc.ABC):
    """
    Subclasses implement initialize and _do_send. send_message wraps
    _do_send with the rate limiter, the circuit breaker and tenacity
    retries on RETRYABLE_ERRORS.
    """

    channel_name: str = ""
    max_retries: int = 3
    retry_backoff: float = 1.0      # exponential multiplier, capped at 10s

    def __init__(self):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._breaker = CircuitBreaker()
        self._rate_limiter: Optional[TokenBucketRateLimiter] = None
        self._stats = DeliveryStats(self.channel_name)
        self._deduplicator = MessageDeduplicator()

    @abc.abstractmethod
    async def initialize(self, config: dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def _do_send(self, phone: str, content: str, metadata: dict[str, Any]) -> dict[str, Any]:
        ...

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.retry_backoff, max=10),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=lambda state: logger.warning(
                "channel_send_attempt_failed", channel=self.channel_name,
                attempt=state.attempt_number, error=str(state.outcome.exception())),
            reraise=True,
        )

    async def send_message(self, phone: str, content: str,
                           metadata: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        metadata = metadata or {}
        message_id = metadata.get("message_id") or str(uuid.uuid4())

        if self._rate_limiter and not await self._rate_limiter.acquire(timeout=10.0):
            self._stats.record_failed("rate_limited")
            return {"status": "rate_limited", "message_id": message_id, "attempts": 0}
        if self._breaker.is_open:
            self._stats.record_failed("circuit_open")
            return {"status": "circuit_open", "message_id": message_id, "attempts": 0}

        started = time.monotonic()
        attempts = 0
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = await self._do_send(phone, content, metadata)
        except Exception as e:
            result = {"status": "failed", "error": str(e) or type(e).__name__}

        result.setdefault("message_id", message_id)
        result["attempts"] = attempts
        if result.get("status") == "failed":
            self._breaker.record_failure()
            self._stats.record_failed(result.get("error", ""))
            return result

        latency_ms = (time.monotonic() - started) * 1000
        self._breaker.record_success()
        self._stats.record_sent(latency_ms)
        result["latency_ms"] = round(latency_ms, 1)
        return result

    async def handle_inbound(self, raw_payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Parse a webhook payload. None for status callbacks and redeliveries."""
        parsed = await self._parse_inbound(raw_payload)
        if not parsed:
            return None

        msg_id = parsed.get("metadata", {}).get("channel_message_id", "")
        if msg_id and self._deduplicator.is_duplicate(msg_id):
            logger.info("inbound_duplicate_dropped", channel=self.channel_name, message_id=msg_id)
            return None

        parsed["content"] = clean_text(parsed.get("content", ""))
        return parsed

    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        return None

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_name,
            "initialized": self._initialized,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._stats.to_dict(),
        }

    async def shutdown(self) -> None:
        pass
