"""drcore daemon: reconciles every configured failover group until signalled.

Usage:
    drcore                        # .env + DRCORE_CONFIG (default drcore.yaml)
    DRCORE_PROVIDER=memory drcore # dry run against the in-memory simulator

Signals:
    SIGTERM / SIGINT -> graceful shutdown
    SIGHUP           -> reload groups, alert rules and log level from config
"""
from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

from aiohttp import web

from drcore.alerts.notifier import NotificationRouter
from drcore.config import ConfigValidationError, OrchestratorConfig
from drcore.control.api import create_app, start_control_api
from drcore.provider.base import HealthProbe, ProviderAdapter
from drcore.provider.http import HttpProviderAdapter
from drcore.provider.memory import InMemoryProvider
from drcore.provider.probe import TcpHealthProbe
from drcore.reconciler.reconciler import Reconciler

logger = logging.getLogger("drcore.daemon")


def setup_logging(cfg: OrchestratorConfig) -> None:
    Path(cfg.log_path).parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(cfg.log_path),
            logging.StreamHandler(),
        ],
    )


def build_provider(cfg: OrchestratorConfig) -> tuple[ProviderAdapter, HealthProbe]:
    if cfg.provider == "http":
        provider = HttpProviderAdapter(cfg.provider_url, cfg.provider_token, request_timeout_s=cfg.provider_timeout_s)
        probe = TcpHealthProbe(cfg.probe_host_template, cfg.probe_port, cfg.probe_timeout_s)
        return provider, probe
    logger.warning("Using the in-memory provider: nothing outside this process is touched")
    simulator = InMemoryProvider()
    return simulator, simulator


def build_reconciler(cfg: OrchestratorConfig, provider: ProviderAdapter, probe: HealthProbe) -> Reconciler:
    router = NotificationRouter(
        telegram_bot_token=cfg.telegram_bot_token,
        webhook_token=cfg.webhook_token,
        cooldown_s=cfg.alert_cooldown_s,
        default_targets=cfg.default_notification_targets,
    )
    return Reconciler(provider, probe, settings=cfg.reconciler_settings(), rules=cfg.alert_rules, router=router)


async def reload(cfg: OrchestratorConfig, reconciler: Reconciler) -> OrchestratorConfig:
    """Re-read configuration; on any error keep running with the previous one."""
    try:
        new = OrchestratorConfig.from_env(cfg.config_path)
    except (ConfigValidationError, OSError) as exc:
        logger.error("Reload of %s rejected, keeping previous configuration: %s", cfg.config_path, exc)
        return cfg
    logging.getLogger().setLevel(getattr(logging, new.log_level.upper(), logging.INFO))
    reconciler.set_rules(new.alert_rules)
    await reconciler.apply(new.groups)
    logger.info("Configuration reloaded from %s: %d groups, %d alert rules",
                new.config_path, len(new.groups), len(new.alert_rules))
    return new


async def main() -> None:
    cfg = OrchestratorConfig.from_env()
    setup_logging(cfg)
    logger.info("drcore starting: provider=%s, %d groups, poll every %.0fs",
                cfg.provider, len(cfg.groups), cfg.poll_interval_s)

    provider, probe = build_provider(cfg)
    reconciler = build_reconciler(cfg, provider, probe)
    await reconciler.apply(cfg.groups)

    runner: web.AppRunner | None = None
    if cfg.control_token:
        runner = await start_control_api(create_app(cfg, reconciler), cfg.control_host, cfg.control_port)
    else:
        logger.warning("DRCORE_CONTROL_TOKEN not set, control API disabled")

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    current = cfg

    def _shutdown(sig: int) -> None:
        logger.info("Received signal %d, shutting down...", sig)
        stop_event.set()

    reload_tasks: set[asyncio.Task] = set()

    async def _reload() -> None:
        nonlocal current
        current = await reload(current, reconciler)

    def _reload_done(task: asyncio.Task) -> None:
        reload_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Configuration reload crashed, keeping previous configuration",
                         exc_info=task.exception())

    def _on_hup() -> None:
        logger.info("Received SIGHUP, reloading configuration")
        task = loop.create_task(_reload())
        reload_tasks.add(task)
        task.add_done_callback(_reload_done)

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown, sig)
    loop.add_signal_handler(signal.SIGHUP, _on_hup)

    reconciler.start()
    await stop_event.wait()

    await reconciler.stop()
    if runner is not None:
        await runner.cleanup()
    await provider.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
