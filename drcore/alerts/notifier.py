"""Notifiers and the notification router: alert edges to logs, webhooks and Telegram."""
from __future__ import annotations

import abc
import logging
import time
from typing import Callable, Iterable

import aiohttp

from .models import AlertEvent, AlertKey, AlertState, Severity

logger = logging.getLogger("drcore.alerts")

TELEGRAM_API = "https://api.telegram.org/bot{token}/sendMessage"


def format_event(event: AlertEvent) -> str:
    if event.state is AlertState.RESOLVED:
        head = f"RESOLVED [{event.rule_id}] {event.subject}"
    elif event.severity is Severity.CRITICAL:
        head = f"CRITICAL [{event.rule_id}] {event.subject}"
    else:
        head = f"[{event.severity.value.upper()}] [{event.rule_id}] {event.subject}"
    body = f"value={event.value} threshold={event.threshold}"
    if event.description:
        body = f"{event.description}\n{body}"
    return f"{head}\n{body}"


class Notifier(abc.ABC):
    """Delivers one alert edge event. May raise; the router logs failures."""

    @abc.abstractmethod
    async def notify(self, event: AlertEvent) -> None:
        ...


class LogNotifier(Notifier):
    async def notify(self, event: AlertEvent) -> None:
        level = logging.WARNING if event.firing else logging.INFO
        logger.log(level, "Alert %s %s on %s: value=%s threshold=%s",
                   event.state.value, event.rule_id, event.subject, event.value, event.threshold)


class WebhookNotifier(Notifier):
    def __init__(self, url: str, token: str = "", timeout_s: float = 10.0) -> None:
        self.url = url
        self._token = token
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def notify(self, event: AlertEvent) -> None:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            resp = await session.post(self.url, json=event.to_dict(), headers=headers)
            if resp.status >= 400:
                raise RuntimeError(f"webhook {self.url} answered HTTP {resp.status}")


class TelegramNotifier(Notifier):
    def __init__(self, bot_token: str, chat_id: str, timeout_s: float = 10.0) -> None:
        if not bot_token:
            raise RuntimeError("DRCORE_TELEGRAM_BOT_TOKEN is required for telegram targets")
        self.chat_id = chat_id
        self._bot_token = bot_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def notify(self, event: AlertEvent) -> None:
        url = TELEGRAM_API.format(token=self._bot_token)
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            resp = await session.post(url, json={"chat_id": self.chat_id, "text": format_event(event)})
            if resp.status >= 400:
                raise RuntimeError(f"telegram chat {self.chat_id} answered HTTP {resp.status}")


class NotificationRouter:
    """Resolves notification targets and fans edge events out to them.

    Targets: ``log:``, ``webhook:<url>``, ``telegram:<chat id>``. A FIRING
    edge for a (rule, subject) that already fired within ``cooldown_s`` is
    suppressed unless it is critical. Delivery failures are logged, never
    raised.
    """

    def __init__(
        self,
        telegram_bot_token: str = "",
        webhook_token: str = "",
        cooldown_s: float = 0.0,
        default_targets: Iterable[str] = ("log:",),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._telegram_bot_token = telegram_bot_token
        self._webhook_token = webhook_token
        self._cooldown_s = cooldown_s
        self._default_targets = tuple(default_targets)
        self._clock = clock
        self._rate_cache: dict[AlertKey, float] = {}
        self._notifiers: dict[str, Notifier] = {}

    def resolve(self, target: str) -> Notifier:
        cached = self._notifiers.get(target)
        if cached is not None:
            return cached
        kind, _, arg = target.partition(":")
        if kind == "log":
            notifier: Notifier = LogNotifier()
        elif kind == "webhook" and arg:
            notifier = WebhookNotifier(arg, token=self._webhook_token)
        elif kind == "telegram" and arg:
            notifier = TelegramNotifier(self._telegram_bot_token, arg)
        else:
            raise ValueError(f"unknown notification target {target!r}")
        self._notifiers[target] = notifier
        return notifier

    def _is_rate_limited(self, event: AlertEvent) -> bool:
        if not event.firing or event.severity is Severity.CRITICAL or self._cooldown_s <= 0:
            return False
        now = self._clock()
        last = self._rate_cache.get(event.key)
        if last is not None and now - last < self._cooldown_s:
            return True
        self._rate_cache[event.key] = now
        return False

    async def dispatch(self, event: AlertEvent, targets: Iterable[str] = ()) -> int:
        """Deliver *event* to every target; returns how many deliveries succeeded."""
        if self._is_rate_limited(event):
            logger.info("Rate-limited: %s/%s", event.rule_id, event.subject)
            return 0
        delivered = 0
        for target in tuple(targets) or self._default_targets:
            try:
                await self.resolve(target).notify(event)
                delivered += 1
            except Exception:
                logger.exception("Failed to deliver %s alert %s to %s", event.state.value, event.rule_id, target)
        return delivered
