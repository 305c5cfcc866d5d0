"""drcore configuration: YAML file for settings, groups and alert rules; secrets from env vars.

Environment (a ``.env`` file is honored):
    DRCORE_CONFIG               path to the YAML file (default drcore.yaml)
    DRCORE_LOG_LEVEL            overrides settings.log_level
    DRCORE_LOG_PATH             overrides settings.log_path
    DRCORE_POLL_INTERVAL_S      overrides settings.poll_interval_s
    DRCORE_PROVIDER             memory | http
    DRCORE_PROVIDER_URL         control-plane base URL for the http provider
    DRCORE_PROVIDER_TOKEN       bearer token for the control plane
    DRCORE_CONTROL_HOST         control API bind host
    DRCORE_CONTROL_PORT         control API port
    DRCORE_CONTROL_TOKEN        bearer token required by the control API
    DRCORE_TELEGRAM_BOT_TOKEN   bot token for telegram:<chat> targets
    DRCORE_WEBHOOK_TOKEN        bearer token sent to webhook:<url> targets
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from drcore.alerts.evaluator import DEFAULT_RULES
from drcore.alerts.models import OPERATORS, AlertRule, Severity
from drcore.failover.controller import ControllerSettings
from drcore.failover.models import FailoverGroupSpec, FailoverPolicy, PrimarySite, SecondarySite
from drcore.provider.retry import RetryPolicy
from drcore.reconciler.reconciler import ReconcilerSettings
from drcore.replication.models import ReplicationThresholds

PROVIDERS = ("memory", "http")
GROUP_KEYS = frozenset({
    "id", "primary", "secondary", "failover_policy", "grace_period",
    "allow_read_only_failover", "notification_targets",
})
PRIMARY_KEYS = frozenset({"region", "server", "databases"})
SECONDARY_KEYS = frozenset({"region", "server"})
RULE_KEYS = frozenset({
    "id", "metric", "operator", "threshold", "severity", "subject",
    "for_observations", "resolve", "description",
})


class ConfigValidationError(ValueError):
    """Raised when the configuration file or a group spec is invalid."""


def _positive(errors: list[str], section: dict[str, Any], key: str, label: str, allow_zero: bool = False) -> None:
    value = section.get(key)
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        errors.append(f"{label}.{key} must be a number")
    elif value < 0 or (value == 0 and not allow_zero):
        errors.append(f"{label}.{key} must be {'>= 0' if allow_zero else '> 0'}")


def validate_config(raw: dict[str, Any]) -> None:
    """Check the settings section. Groups and rules are checked as they are parsed."""
    if not isinstance(raw, dict):
        raise ConfigValidationError("configuration root must be a mapping")
    unknown = set(raw) - {"settings", "groups", "alert_rules"}
    if unknown:
        raise ConfigValidationError(f"unknown top-level keys: {', '.join(sorted(unknown))}")
    settings = raw.get("settings") or {}
    if not isinstance(settings, dict):
        raise ConfigValidationError("settings must be a mapping")
    errors: list[str] = []

    _positive(errors, settings, "poll_interval_s", "settings")
    _positive(errors, settings, "shutdown_grace_s", "settings", allow_zero=True)
    provider = settings.get("provider") or {}
    if provider.get("kind", "memory") not in PROVIDERS:
        errors.append(f"settings.provider.kind must be one of {', '.join(PROVIDERS)}")
    _positive(errors, provider, "timeout_s", "settings.provider")

    replication = settings.get("replication") or {}
    for key in ("warning_lag_s", "critical_lag_s", "history_window_s"):
        _positive(errors, replication, key, "settings.replication")
    _positive(errors, replication, "history_size", "settings.replication")
    warning = replication.get("warning_lag_s", ReplicationThresholds.warning_lag_s)
    critical = replication.get("critical_lag_s", ReplicationThresholds.critical_lag_s)
    if isinstance(warning, (int, float)) and isinstance(critical, (int, float)) and warning > critical:
        errors.append("settings.replication.warning_lag_s must not exceed critical_lag_s")

    failover = settings.get("failover") or {}
    for key in ("min_unhealthy_observations", "validation_attempts", "validation_timeout_s"):
        _positive(errors, failover, key, "settings.failover")

    retry = settings.get("retry") or {}
    for key in ("max_attempts", "call_timeout_s"):
        _positive(errors, retry, key, "settings.retry")
    for key in ("base_delay_s", "max_delay_s", "jitter"):
        _positive(errors, retry, key, "settings.retry", allow_zero=True)

    _positive(errors, settings.get("alerts") or {}, "cooldown_s", "settings.alerts", allow_zero=True)

    for section in ("control", "probe"):
        port = (settings.get(section) or {}).get("port")
        if port is not None and (not isinstance(port, int) or not 0 < port < 65536):
            errors.append(f"settings.{section}.port must be between 1 and 65535")

    if errors:
        raise ConfigValidationError("; ".join(errors))


def parse_group_spec(raw: dict[str, Any]) -> FailoverGroupSpec:
    if not isinstance(raw, dict):
        raise ConfigValidationError("group entry must be a mapping")
    label = raw.get("id", "<group>")
    unknown = set(raw) - GROUP_KEYS
    if unknown:
        raise ConfigValidationError(f"{label}: unknown keys {', '.join(sorted(unknown))}")
    primary = raw.get("primary") or {}
    secondary = raw.get("secondary") or {}
    for name, section, allowed in (("primary", primary, PRIMARY_KEYS), ("secondary", secondary, SECONDARY_KEYS)):
        if not isinstance(section, dict):
            raise ConfigValidationError(f"{label}: {name} must be a mapping")
        extra = set(section) - allowed
        if extra:
            raise ConfigValidationError(f"{label}: unknown {name} keys {', '.join(sorted(extra))}")
        missing = allowed - set(section)
        if missing:
            raise ConfigValidationError(f"{label}: {name} is missing {', '.join(sorted(missing))}")
    try:
        policy = FailoverPolicy(raw.get("failover_policy", FailoverPolicy.MANUAL.value))
    except ValueError:
        raise ConfigValidationError(f"{label}: failover_policy must be Automatic or Manual") from None
    databases = primary["databases"]
    if isinstance(databases, str) or not isinstance(databases, (list, tuple)):
        raise ConfigValidationError(f"{label}: primary.databases must be a list")
    if len(set(databases)) != len(databases):
        raise ConfigValidationError(f"{label}: primary.databases has duplicates")
    try:
        grace = float(raw.get("grace_period", FailoverGroupSpec.grace_period_s))
    except (TypeError, ValueError):
        raise ConfigValidationError(f"{label}: grace_period must be a number of seconds") from None
    targets = raw.get("notification_targets") or []
    for target in targets:
        kind, _, arg = str(target).partition(":")
        if kind not in ("log", "webhook", "telegram") or (kind != "log" and not arg):
            raise ConfigValidationError(f"{label}: bad notification target {target!r}")

    spec = FailoverGroupSpec(
        id=str(raw.get("id", "")),
        primary=PrimarySite(
            region=str(primary["region"]),
            server=str(primary["server"]),
            databases=tuple(str(d) for d in databases),
        ),
        secondary=SecondarySite(region=str(secondary["region"]), server=str(secondary["server"])),
        failover_policy=policy,
        grace_period_s=grace,
        allow_read_only_failover=bool(raw.get("allow_read_only_failover", False)),
        notification_targets=tuple(str(t) for t in targets),
    )
    errors = spec.validation_errors()
    if errors:
        raise ConfigValidationError("; ".join(errors))
    return spec


def parse_alert_rule(raw: dict[str, Any]) -> AlertRule:
    if not isinstance(raw, dict):
        raise ConfigValidationError("alert rule must be a mapping")
    label = raw.get("id", "<rule>")
    unknown = set(raw) - RULE_KEYS
    if unknown:
        raise ConfigValidationError(f"{label}: unknown keys {', '.join(sorted(unknown))}")
    for key in ("id", "metric", "operator", "threshold"):
        if key not in raw:
            raise ConfigValidationError(f"{label}: {key} is required")
    try:
        severity = Severity(str(raw.get("severity", "medium")).lower())
    except ValueError:
        raise ConfigValidationError(f"{label}: unknown severity {raw.get('severity')!r}") from None
    resolve = raw.get("resolve") or {}
    if not isinstance(resolve, dict):
        raise ConfigValidationError(f"{label}: resolve must be a mapping")
    if resolve and set(resolve) != {"operator", "threshold"}:
        raise ConfigValidationError(f"{label}: resolve needs exactly operator and threshold")
    try:
        for_observations = int(raw.get("for_observations", 1))
    except (TypeError, ValueError):
        raise ConfigValidationError(f"{label}: for_observations must be an integer") from None
    rule = AlertRule(
        id=str(raw["id"]),
        metric=str(raw["metric"]),
        operator=str(raw["operator"]),
        threshold=raw["threshold"],
        severity=severity,
        subject=str(raw.get("subject", "*")),
        for_observations=for_observations,
        resolve_operator=resolve.get("operator"),
        resolve_threshold=resolve.get("threshold"),
        description=str(raw.get("description", "")),
    )
    errors = rule.validation_errors()
    if errors:
        raise ConfigValidationError("; ".join(errors))
    return rule


def parse_groups(raw: list[dict[str, Any]] | None) -> tuple[FailoverGroupSpec, ...]:
    specs = tuple(parse_group_spec(item) for item in raw or [])
    seen: set[str] = set()
    for spec in specs:
        if spec.id in seen:
            raise ConfigValidationError(f"duplicate group id {spec.id}")
        seen.add(spec.id)
    return specs


def parse_rules(raw: list[dict[str, Any]] | None) -> tuple[AlertRule, ...]:
    if raw is None:
        return DEFAULT_RULES
    rules = tuple(parse_alert_rule(item) for item in raw)
    ids = [r.id for r in rules]
    if len(set(ids)) != len(ids):
        raise ConfigValidationError("duplicate alert rule ids")
    return rules


@dataclass(frozen=True)
class OrchestratorConfig:
    """Immutable process configuration. Rebuilt from scratch on reload."""

    config_path: str = "drcore.yaml"
    log_level: str = "INFO"
    log_path: str = "logs/drcore.log"
    poll_interval_s: float = 30.0
    shutdown_grace_s: float = 60.0

    provider: str = "memory"
    provider_url: str = ""
    provider_token: str = ""
    provider_timeout_s: float = 30.0

    probe_host_template: str = "{server}"
    probe_port: int = 1433
    probe_timeout_s: float = 5.0

    control_host: str = "127.0.0.1"
    control_port: int = 8087
    control_token: str = ""

    telegram_bot_token: str = ""
    webhook_token: str = ""
    alert_cooldown_s: float = 0.0
    default_notification_targets: tuple[str, ...] = ("log:",)

    thresholds: ReplicationThresholds = field(default_factory=ReplicationThresholds)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    min_unhealthy_observations: int = 1
    validation_attempts: int = 3
    validation_timeout_s: float = 300.0

    groups: tuple[FailoverGroupSpec, ...] = ()
    alert_rules: tuple[AlertRule, ...] = DEFAULT_RULES

    @classmethod
    def from_yaml(cls, path: str) -> OrchestratorConfig:
        with open(path, "r") as f:
            try:
                raw: dict[str, Any] = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigValidationError(f"{path} is not valid YAML: {exc}") from None
        validate_config(raw)
        try:
            return cls._from_raw(path, raw)
        except ConfigValidationError:
            raise
        except (TypeError, ValueError) as exc:
            raise ConfigValidationError(f"{path}: {exc}") from exc

    @classmethod
    def _from_raw(cls, path: str, raw: dict[str, Any]) -> OrchestratorConfig:
        settings = raw.get("settings") or {}
        provider = settings.get("provider") or {}
        probe = settings.get("probe") or {}
        control = settings.get("control") or {}
        alerts = settings.get("alerts") or {}
        replication = settings.get("replication") or {}
        failover = settings.get("failover") or {}
        retry = settings.get("retry") or {}
        return cls(
            config_path=path,
            log_level=settings.get("log_level", cls.log_level),
            log_path=settings.get("log_path", cls.log_path),
            poll_interval_s=float(settings.get("poll_interval_s", cls.poll_interval_s)),
            shutdown_grace_s=float(settings.get("shutdown_grace_s", cls.shutdown_grace_s)),
            provider=provider.get("kind", cls.provider),
            provider_url=provider.get("url", cls.provider_url),
            provider_timeout_s=float(provider.get("timeout_s", cls.provider_timeout_s)),
            probe_host_template=probe.get("host_template", cls.probe_host_template),
            probe_port=int(probe.get("port", cls.probe_port)),
            probe_timeout_s=float(probe.get("timeout_s", cls.probe_timeout_s)),
            control_host=control.get("host", cls.control_host),
            control_port=int(control.get("port", cls.control_port)),
            alert_cooldown_s=float(alerts.get("cooldown_s", cls.alert_cooldown_s)),
            default_notification_targets=tuple(alerts.get("default_targets", cls.default_notification_targets)),
            thresholds=ReplicationThresholds(
                warning_lag_s=float(replication.get("warning_lag_s", ReplicationThresholds.warning_lag_s)),
                critical_lag_s=float(replication.get("critical_lag_s", ReplicationThresholds.critical_lag_s)),
                history_size=int(replication.get("history_size", ReplicationThresholds.history_size)),
                history_window_s=float(replication.get("history_window_s", ReplicationThresholds.history_window_s)),
            ),
            retry=RetryPolicy(
                max_attempts=int(retry.get("max_attempts", RetryPolicy.max_attempts)),
                base_delay_s=float(retry.get("base_delay_s", RetryPolicy.base_delay_s)),
                max_delay_s=float(retry.get("max_delay_s", RetryPolicy.max_delay_s)),
                jitter=float(retry.get("jitter", RetryPolicy.jitter)),
                call_timeout_s=float(retry.get("call_timeout_s", RetryPolicy.call_timeout_s)),
            ),
            min_unhealthy_observations=int(failover.get("min_unhealthy_observations",
                                                        cls.min_unhealthy_observations)),
            validation_attempts=int(failover.get("validation_attempts", cls.validation_attempts)),
            validation_timeout_s=float(failover.get("validation_timeout_s", cls.validation_timeout_s)),
            groups=parse_groups(raw.get("groups")),
            alert_rules=parse_rules(raw.get("alert_rules")),
        )

    @classmethod
    def from_env(cls, path: str | None = None) -> OrchestratorConfig:
        """Load ``.env``, read the YAML file if it exists, then apply env overrides."""
        load_dotenv()
        path = path or os.environ.get("DRCORE_CONFIG", cls.config_path)
        cfg = cls.from_yaml(path) if Path(path).exists() else cls(config_path=path)
        env = os.environ
        try:
            cfg = replace(
                cfg,
                log_level=env.get("DRCORE_LOG_LEVEL", cfg.log_level),
                log_path=env.get("DRCORE_LOG_PATH", cfg.log_path),
                poll_interval_s=float(env.get("DRCORE_POLL_INTERVAL_S", cfg.poll_interval_s)),
                provider=env.get("DRCORE_PROVIDER", cfg.provider),
                provider_url=env.get("DRCORE_PROVIDER_URL", cfg.provider_url),
                provider_token=env.get("DRCORE_PROVIDER_TOKEN", cfg.provider_token),
                control_host=env.get("DRCORE_CONTROL_HOST", cfg.control_host),
                control_port=int(env.get("DRCORE_CONTROL_PORT", cfg.control_port)),
                control_token=env.get("DRCORE_CONTROL_TOKEN", cfg.control_token),
                telegram_bot_token=env.get("DRCORE_TELEGRAM_BOT_TOKEN", cfg.telegram_bot_token),
                webhook_token=env.get("DRCORE_WEBHOOK_TOKEN", cfg.webhook_token),
            )
        except ValueError as exc:
            raise ConfigValidationError(f"bad environment override: {exc}") from exc
        cfg.check_runtime()
        return cfg

    def check_runtime(self) -> None:
        """Cross-field checks that only make sense once env overrides are in."""
        if self.provider not in PROVIDERS:
            raise ConfigValidationError(f"provider must be one of {', '.join(PROVIDERS)}, got {self.provider!r}")
        if self.provider == "http" and not self.provider_url:
            raise ConfigValidationError("DRCORE_PROVIDER_URL is required for the http provider")
        if self.poll_interval_s <= 0:
            raise ConfigValidationError("poll interval must be > 0")
        if any(t.startswith("telegram:") for g in self.groups for t in g.notification_targets) \
                and not self.telegram_bot_token:
            raise ConfigValidationError("DRCORE_TELEGRAM_BOT_TOKEN is required for telegram targets")

    def controller_settings(self) -> ControllerSettings:
        return ControllerSettings(
            retry=self.retry,
            thresholds=self.thresholds,
            min_unhealthy_observations=self.min_unhealthy_observations,
            validation_attempts=self.validation_attempts,
            validation_timeout_s=self.validation_timeout_s,
            probe_timeout_s=self.probe_timeout_s * 2,
        )

    def reconciler_settings(self) -> ReconcilerSettings:
        return ReconcilerSettings(
            poll_interval_s=self.poll_interval_s,
            shutdown_grace_s=self.shutdown_grace_s,
            controller=self.controller_settings(),
        )
