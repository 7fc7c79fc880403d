"""
Tests for the messaging layer.

Coverage:
  Base:      rate limiting, circuit breaker, address normalization
  Gateway:   send, auth header, retry on 5xx, no retry on 4xx, open circuit
  Console:   outbox bookkeeping
  Notifier:  admin / operator / team routing and best-effort delivery
"""
import asyncio
import json

import httpx
import pytest
from tenacity import wait_none
from unittest.mock import AsyncMock

from channels.base import (
    ChannelError, CircuitBreaker, CircuitOpenError, ConsoleMessenger, GatewayMessenger,
    Notifier, TokenBucketRateLimiter, create_messenger, normalize_address,
)
from config.settings import BusinessConfig, MessagingConfig


# ══════════════════════════════════════════════════════════════
#  BASE — Rate Limiter
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

    def test_try_acquire_follows_injected_clock(self):
        now = [0.0]
        rl = TokenBucketRateLimiter(rate=0.25, burst=2, clock=lambda: now[0])
        assert rl.try_acquire() and rl.try_acquire()
        assert rl.try_acquire() is False
        assert not rl.is_full

        now[0] = 4.0
        assert rl.try_acquire() is True
        now[0] = 12.0
        assert rl.is_full


# ══════════════════════════════════════════════════════════════
#  BASE — Circuit Breaker
# ══════════════════════════════════════════════════════════════

class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        cb = CircuitBreaker(failure_threshold=3, recovery_timeout=60)
        cb.record_failure()
        cb.record_failure()
        assert cb.state == "closed"
        cb.record_failure()
        assert cb.is_open
        assert cb.stats == {"state": "open", "failure_count": 3}

    def test_half_open_after_timeout(self):
        cb = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
        cb.record_failure()
        assert cb.state == "half_open"
        assert not cb.is_open
        cb.record_success()
        assert cb.state == "closed"


class TestNormalizeAddress:
    def test_phone_numbers_reduced_to_digits(self):
        assert normalize_address("+55 (81) 98888-7777") == "5581988887777"

    def test_addresses_with_at_sign_kept(self):
        assert normalize_address(" ana@exemplo.com ") == "ana@exemplo.com"


# ══════════════════════════════════════════════════════════════
#  GATEWAY
# ══════════════════════════════════════════════════════════════

def gateway_with(handler, monkeypatch, token="tok") -> GatewayMessenger:
    monkeypatch.setattr(GatewayMessenger._post.retry, "wait", wait_none())
    messenger = GatewayMessenger("https://gateway.test/api", token=token)
    messenger._client = httpx.AsyncClient(
        base_url=messenger.gateway_url,
        headers={"Authorization": f"Bearer {token}"},
        transport=httpx.MockTransport(handler),
    )
    return messenger


class TestGatewayMessenger:
    @pytest.mark.asyncio
    async def test_send(self, monkeypatch):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "msg-1"})

        messenger = gateway_with(handler, monkeypatch)
        result = await messenger.send("+55 81 98888-7777", "Olá")
        assert result["status"] == "sent"
        assert result["message_id"] == "msg-1"

        assert seen[0].url.path == "/api/messages"
        assert seen[0].headers["Authorization"] == "Bearer tok"
        assert json.loads(seen[0].content) == {"to": "5581988887777", "text": "Olá"}
        await messenger.close()

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, monkeypatch):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503) if len(calls) == 1 else httpx.Response(200, json={})

        messenger = gateway_with(handler, monkeypatch)
        result = await messenger.send("5581988887777", "Olá")
        assert result["status"] == "sent"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_client_error_fails_immediately(self, monkeypatch):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, text="invalid number")

        messenger = gateway_with(handler, monkeypatch)
        with pytest.raises(ChannelError) as exc:
            await messenger.send("123", "Olá")
        assert exc.value.retryable is False
        assert "invalid number" in str(exc.value)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_transport_error_gives_up_after_three_attempts(self, monkeypatch):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        messenger = gateway_with(handler, monkeypatch)
        with pytest.raises(ChannelError) as exc:
            await messenger.send("5581988887777", "Olá")
        assert exc.value.retryable is True
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_request(self, monkeypatch):
        def handler(request):
            raise AssertionError("no request expected")

        messenger = gateway_with(handler, monkeypatch)
        messenger._breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60)
        messenger._breaker.record_failure()
        with pytest.raises(CircuitOpenError):
            await messenger.send("5581988887777", "Olá")
        assert (await messenger.health_check())["circuit_breaker"]["state"] == "open"

    def test_requires_url(self):
        with pytest.raises(ValueError):
            GatewayMessenger("")


class TestMessengerFactory:
    def test_console_by_default(self):
        assert isinstance(create_messenger(MessagingConfig()), ConsoleMessenger)

    def test_gateway(self):
        messenger = create_messenger(MessagingConfig(backend="gateway",
                                                     gateway_url="https://gateway.test"))
        assert isinstance(messenger, GatewayMessenger)
        assert messenger.gateway_url == "https://gateway.test"


# ══════════════════════════════════════════════════════════════
#  CONSOLE
# ══════════════════════════════════════════════════════════════

class TestConsoleMessenger:
    @pytest.mark.asyncio
    async def test_outbox(self):
        messenger = ConsoleMessenger()
        await messenger.send("a", "um")
        await messenger.send("b", "dois")
        await messenger.send("a", "três")
        assert messenger.messages_for("a") == ["um", "três"]
        assert messenger.last_for("b") == "dois"
        assert messenger.last_for("c") == ""
        assert (await messenger.health_check())["sent"] == 3
        messenger.clear()
        assert messenger.outbox == []


# ══════════════════════════════════════════════════════════════
#  NOTIFIER
# ══════════════════════════════════════════════════════════════

class TestNotifier:
    @pytest.mark.asyncio
    async def test_unconfigured_admin_is_skipped(self):
        messenger = ConsoleMessenger()
        notifier = Notifier(messenger, BusinessConfig())
        assert await notifier.notify_admin("oi") is False
        assert messenger.outbox == []

    @pytest.mark.asyncio
    async def test_operator_and_team_fall_back_to_admin(self):
        messenger = ConsoleMessenger()
        notifier = Notifier(messenger, BusinessConfig(admin_number="1",
                                                      team_numbers={"security": "2"}))
        assert await notifier.notify_operator("para operador")
        assert await notifier.notify_team("network", "para rede")
        assert await notifier.notify_team("security", "para segurança")
        assert messenger.messages_for("1") == ["para operador", "para rede"]
        assert messenger.messages_for("2") == ["para segurança"]

    @pytest.mark.asyncio
    async def test_delivery_failure_reported_not_raised(self):
        messenger = ConsoleMessenger()
        messenger.send = AsyncMock(side_effect=ChannelError("down", "gateway", retryable=True))
        notifier = Notifier(messenger, BusinessConfig(admin_number="1"))
        assert await notifier.notify_admin("oi") is False
