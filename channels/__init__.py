"""Outbound messaging: messengers, resilience primitives and internal alerts."""
from channels.base import (
    ChannelError,
    RateLimitedError,
    CircuitOpenError,
    TokenBucketRateLimiter,
    CircuitBreaker,
    Messenger,
    GatewayMessenger,
    ConsoleMessenger,
    Notifier,
    create_messenger,
    normalize_address,
)

__all__ = [
    "ChannelError", "RateLimitedError", "CircuitOpenError",
    "TokenBucketRateLimiter", "CircuitBreaker",
    "Messenger", "GatewayMessenger", "ConsoleMessenger", "Notifier",
    "create_messenger", "normalize_address",
]
