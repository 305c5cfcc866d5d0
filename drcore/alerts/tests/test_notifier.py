"""Tests for notifiers and the NotificationRouter."""
from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from drcore.alerts.models import AlertEvent, AlertState, Severity
from drcore.alerts.notifier import (
    LogNotifier,
    NotificationRouter,
    TelegramNotifier,
    WebhookNotifier,
    format_event,
)

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _event(severity: Severity = Severity.HIGH, state: AlertState = AlertState.FIRING,
           rule_id: str = "replication-lag-critical") -> AlertEvent:
    return AlertEvent(rule_id=rule_id, severity=severity, subject="orders/orders", value=1200.0,
                      threshold=900.0, first_seen=T0, last_seen=T0, state=state, group_id="orders")


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def router(clock):
    return NotificationRouter(telegram_bot_token="fake-tg", cooldown_s=600, clock=clock)


def _mock_session(status: int = 200):
    session = AsyncMock()
    session.post = AsyncMock(return_value=MagicMock(status=status))
    cls = MagicMock()
    cls.return_value.__aenter__ = AsyncMock(return_value=session)
    cls.return_value.__aexit__ = AsyncMock(return_value=False)
    return cls, session


def test_resolve_targets(router):
    assert isinstance(router.resolve("log:"), LogNotifier)
    assert isinstance(router.resolve("webhook:https://hooks.example/dr"), WebhookNotifier)
    assert isinstance(router.resolve("telegram:-100200"), TelegramNotifier)
    assert router.resolve("log:") is router.resolve("log:")
    with pytest.raises(ValueError):
        router.resolve("pager:ops")


def test_telegram_target_needs_bot_token():
    with pytest.raises(RuntimeError):
        NotificationRouter().resolve("telegram:-100200")


@pytest.mark.asyncio
async def test_dispatch_to_each_target(router):
    with patch.object(LogNotifier, "notify", new_callable=AsyncMock) as log_notify, \
         patch.object(WebhookNotifier, "notify", new_callable=AsyncMock) as hook_notify:
        delivered = await router.dispatch(_event(), ["log:", "webhook:https://hooks.example/dr"])
    assert delivered == 2
    log_notify.assert_awaited_once()
    hook_notify.assert_awaited_once()


@pytest.mark.asyncio
async def test_rate_limiter_suppresses_refire(router, clock):
    with patch.object(LogNotifier, "notify", new_callable=AsyncMock) as notify:
        await router.dispatch(_event(), ["log:"])
        await router.dispatch(_event(), ["log:"])
        assert notify.await_count == 1
        clock.now += 700
        await router.dispatch(_event(), ["log:"])
        assert notify.await_count == 2


@pytest.mark.asyncio
async def test_critical_bypasses_rate_limit(router):
    with patch.object(LogNotifier, "notify", new_callable=AsyncMock) as notify:
        await router.dispatch(_event(Severity.CRITICAL), ["log:"])
        await router.dispatch(_event(Severity.CRITICAL), ["log:"])
    assert notify.await_count == 2


@pytest.mark.asyncio
async def test_resolved_is_never_rate_limited(router):
    with patch.object(LogNotifier, "notify", new_callable=AsyncMock) as notify:
        await router.dispatch(_event(), ["log:"])
        await router.dispatch(_event(state=AlertState.RESOLVED), ["log:"])
    assert notify.await_count == 2


@pytest.mark.asyncio
async def test_no_cooldown_by_default():
    router = NotificationRouter()
    with patch.object(LogNotifier, "notify", new_callable=AsyncMock) as notify:
        await router.dispatch(_event(), [])
        await router.dispatch(_event(), [])
    assert notify.await_count == 2


@pytest.mark.asyncio
async def test_delivery_failure_is_logged_not_raised(router, caplog):
    with patch.object(WebhookNotifier, "notify", new_callable=AsyncMock, side_effect=RuntimeError("boom")), \
         patch.object(LogNotifier, "notify", new_callable=AsyncMock) as log_notify:
        delivered = await router.dispatch(_event(), ["webhook:https://hooks.example/dr", "log:"])
    assert delivered == 1
    log_notify.assert_awaited_once()
    assert "Failed to deliver" in caplog.text


@pytest.mark.asyncio
async def test_webhook_posts_event_json():
    cls, session = _mock_session()
    with patch("drcore.alerts.notifier.aiohttp.ClientSession", cls):
        await WebhookNotifier("https://hooks.example/dr", token="hook-token").notify(_event())
    args, kwargs = session.post.call_args
    assert args[0] == "https://hooks.example/dr"
    assert kwargs["json"]["rule_id"] == "replication-lag-critical"
    assert kwargs["json"]["state"] == "FIRING"
    assert kwargs["headers"] == {"Authorization": "Bearer hook-token"}


@pytest.mark.asyncio
async def test_webhook_error_status_raises():
    cls, _ = _mock_session(status=500)
    with patch("drcore.alerts.notifier.aiohttp.ClientSession", cls):
        with pytest.raises(RuntimeError):
            await WebhookNotifier("https://hooks.example/dr").notify(_event())


@pytest.mark.asyncio
async def test_telegram_format_critical():
    cls, session = _mock_session()
    with patch("drcore.alerts.notifier.aiohttp.ClientSession", cls):
        await TelegramNotifier("fake-tg", "-100200").notify(_event(Severity.CRITICAL))
    payload = session.post.call_args[1]["json"]
    assert payload["chat_id"] == "-100200"
    assert payload["text"].startswith("CRITICAL [replication-lag-critical] orders/orders")
    assert "botfake-tg" in session.post.call_args[0][0]


def test_format_resolved():
    assert format_event(_event(state=AlertState.RESOLVED)).startswith("RESOLVED [replication-lag-critical]")
