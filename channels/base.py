"""
Messaging — Outbound delivery infrastructure shared by flows and the scheduler.

Provides:
- ChannelError: structured error hierarchy
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with half-open probe
- Messenger: abstract `send(recipient, text)` collaborator
- GatewayMessenger: HTTP gateway client (httpx + tenacity) wrapped with resilience
- ConsoleMessenger: logs and records messages (development, tests)
- Notifier: admin / team / operator alerts on top of a messenger
"""
from __future__ import annotations

import abc
import asyncio
import re
import time
import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import BusinessConfig, MessagingConfig

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all messaging operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class RateLimitedError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Rate limit exceeded for {channel}", channel, retryable=True)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ChannelError) and exc.retryable


def normalize_address(address: str) -> str:
    """Digits only for phone-like addresses; anything with an '@' is kept as is."""
    if "@" in address:
        return address.strip()
    return re.sub(r"[^\d]", "", address)


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.

    `clock` returns seconds; it defaults to time.monotonic and can be replaced
    so buckets follow an injected (test) clock.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10,
                 clock: Optional[Callable[[], float]] = None):
        self.rate = rate
        self.burst = burst
        self._clock = clock or time.monotonic
        self._tokens: float = float(burst)
        self._last_refill = self._clock()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                if self.try_acquire():
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(1.0 / max(self.rate, 0.001), remaining))

    def try_acquire(self) -> bool:
        """Take one token if available, without waiting."""
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False

    @property
    def is_full(self) -> bool:
        self._refill()
        return self._tokens >= self.burst

    def _refill(self):
        now = self._clock()
        self._tokens = min(self.burst, self._tokens + (now - self._last_refill) * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Failure-counting circuit breaker.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", failures=self._failure_count)

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "failure_count": self._failure_count}


# ══════════════════════════════════════════════════════════════
#  MESSENGER — Abstract Base
# ══════════════════════════════════════════════════════════════

class Messenger(abc.ABC):
    """Sends a text to a recipient. Raises ChannelError when delivery fails."""

    channel: str = "messenger"

    @abc.abstractmethod
    async def send(self, recipient: str, text: str) -> dict[str, Any]:
        ...

    async def health_check(self) -> dict[str, Any]:
        return {"channel": self.channel}

    async def close(self) -> None:
        pass


class GatewayMessenger(Messenger):
    """
    Delivers through an HTTP messaging gateway:

        POST {gateway_url}/messages  {"to": "...", "text": "..."}

    Every send goes through the rate limiter and the circuit breaker;
    transport errors, 429 and 5xx responses are retried with exponential
    backoff, other 4xx responses fail immediately.
    """

    channel = "gateway"

    def __init__(self, gateway_url: str, token: str = "", rate_per_second: float = 20.0,
                 burst: int = 40, timeout: float = 15.0):
        if not gateway_url:
            raise ValueError("gateway_url is required for the gateway messenger")
        self.gateway_url = gateway_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None
        self._rate_limiter = TokenBucketRateLimiter(rate=rate_per_second, burst=burst)
        self._breaker = CircuitBreaker()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._client = httpx.AsyncClient(
                base_url=self.gateway_url, headers=headers, timeout=self.timeout,
            )
        return self._client

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post("/messages", json=payload)
        except httpx.TransportError as e:
            raise ChannelError(f"Gateway unreachable: {e}", self.channel, retryable=True) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ChannelError(f"Gateway returned {response.status_code}", self.channel,
                               retryable=True)
        if response.status_code >= 400:
            raise ChannelError(f"Gateway rejected message ({response.status_code}): "
                               f"{response.text[:200]}", self.channel)
        return response.json() if response.content else {}

    async def send(self, recipient: str, text: str) -> dict[str, Any]:
        if not await self._rate_limiter.acquire(timeout=10.0):
            raise RateLimitedError(self.channel)
        if self._breaker.is_open:
            raise CircuitOpenError(self.channel)

        start = time.monotonic()
        try:
            body = await self._post({"to": normalize_address(recipient), "text": text})
        except ChannelError:
            self._breaker.record_failure()
            raise
        self._breaker.record_success()

        latency = round((time.monotonic() - start) * 1000, 1)
        message_id = str(body.get("id") or body.get("message_id") or uuid.uuid4())
        logger.info("message_sent", channel=self.channel, recipient=recipient,
                    message_id=message_id, latency_ms=latency)
        return {"status": "sent", "message_id": message_id, "latency_ms": latency}

    async def health_check(self) -> dict[str, Any]:
        return {"channel": self.channel, "circuit_breaker": self._breaker.stats}

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()


class ConsoleMessenger(Messenger):
    """Logs every message and keeps an outbox; never talks to the network."""

    channel = "console"

    def __init__(self):
        self.outbox: list[dict[str, Any]] = []

    async def send(self, recipient: str, text: str) -> dict[str, Any]:
        record = {
            "message_id": str(uuid.uuid4()),
            "recipient": recipient,
            "text": text,
            "sent_at": datetime.now(timezone.utc),
        }
        self.outbox.append(record)
        logger.info("message_sent", channel=self.channel, recipient=recipient,
                    preview=text[:80])
        return {"status": "sent", "message_id": record["message_id"]}

    def messages_for(self, recipient: str) -> list[str]:
        return [m["text"] for m in self.outbox if m["recipient"] == recipient]

    def last_for(self, recipient: str) -> str:
        texts = self.messages_for(recipient)
        return texts[-1] if texts else ""

    def clear(self) -> None:
        self.outbox.clear()

    async def health_check(self) -> dict[str, Any]:
        return {"channel": self.channel, "sent": len(self.outbox)}


def create_messenger(config: MessagingConfig) -> Messenger:
    """Factory: "gateway" → GatewayMessenger, anything else → ConsoleMessenger."""
    if config.backend == "gateway":
        messenger = GatewayMessenger(
            gateway_url=config.gateway_url, token=config.token,
            rate_per_second=float(config.rate_per_second), burst=int(config.burst),
        )
    else:
        messenger = ConsoleMessenger()
    logger.info("messenger_created", backend=messenger.channel)
    return messenger


# ══════════════════════════════════════════════════════════════
#  NOTIFIER — internal alerts
# ══════════════════════════════════════════════════════════════

class Notifier:
    """
    Sends internal alerts (new quote, new booking, emergencies, handoffs).

    Alerts are best effort: a failed alert is logged and reported as False,
    it never breaks the customer conversation that triggered it.
    """

    def __init__(self, messenger: Messenger, business: BusinessConfig):
        self.messenger = messenger
        self.business = business

    async def notify_admin(self, text: str) -> bool:
        return await self._deliver(self.business.admin_number, text, target="admin")

    async def notify_operator(self, text: str) -> bool:
        number = self.business.operator_number or self.business.admin_number
        return await self._deliver(number, text, target="operator")

    async def notify_team(self, team: str, text: str) -> bool:
        number = self.business.team_numbers.get(team) or self.business.admin_number
        return await self._deliver(number, text, target=f"team:{team}")

    async def _deliver(self, number: str, text: str, target: str) -> bool:
        if not number:
            logger.info("notification_skipped", target=target, reason="no_number_configured")
            return False
        try:
            await self.messenger.send(number, text)
            return True
        except ChannelError as e:
            logger.error("notification_failed", target=target, error=str(e),
                         retryable=e.retryable)
            return False
