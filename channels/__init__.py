"""Channel adapters for outbound delivery and inbound webhook parsing."""
from channels.base import (
    BreakerState,
    ChannelAdapter,
    CircuitBreaker,
    DELIVERED_STATUSES,
    TokenBucketRateLimiter,
    TransientDeliveryError,
    clean_text,
)
from channels.whatsapp_adapter import WhatsAppAdapter, normalize_phone

__all__ = [
    "BreakerState", "ChannelAdapter", "CircuitBreaker", "DELIVERED_STATUSES",
    "TokenBucketRateLimiter", "TransientDeliveryError", "clean_text",
    "WhatsAppAdapter", "normalize_phone",
]
