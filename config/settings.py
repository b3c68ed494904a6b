"""
Configuration loader for the HeatWatch system.
Reads settings from YAML file with environment variable substitution,
then applies the escalation overrides from the process environment.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class EscalationConfig:
    notification_windows: list[int] = field(default_factory=lambda: [9, 13, 17])
    quiet_hours: tuple[int, int] = (22, 7)       # start, end (end exclusive, may wrap)
    first_retry_s: int = 300                     # second call
    family_notify_s: int = 600
    neighbor_notify_s: int = 900
    max_concurrency: int = 10                    # alerts processed in parallel per tick


@dataclass
class SchedulerConfig:
    enabled: bool = True
    heat_alert_interval_s: int = 3600
    escalation_interval_s: int = 300
    run_heat_alert_on_start: bool = True


@dataclass
class DatabaseConfig:
    store_backend: str = "memory"                # "memory" | "file"
    store_file_dir: str = "./data"               # directory for file backend


@dataclass
class WeatherConfig:
    provider: str = "static"                     # "static" | "http"
    base_url: str = ""
    api_key: str = ""
    cache_ttl_s: int = 300
    default_temperature: float = 31.0            # static provider reading
    default_humidity: float = 60.0


@dataclass
class WebhookConfig:
    strict_signatures: Optional[bool] = None     # None → strict only in production
    secret: str = ""                             # generic X-Signature HMAC key
    public_base_url: str = ""                    # used to rebuild signed Twilio URLs

    def is_strict(self, environment: str) -> bool:
        if self.strict_signatures is None:
            return environment == "production"
        return self.strict_signatures


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "HeatWatch"
    environment: str = "development"
    timezone: str = "Asia/Tokyo"
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    weather: WeatherConfig = field(default_factory=WeatherConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)
    retry: dict[str, dict[str, Any]] = field(default_factory=dict)   # preset → overrides

    def channel(self, name: str) -> ChannelConfig:
        return self.channels.get(name) or ChannelConfig()


_settings: Optional[Settings] = None


# ── Parse helpers ─────────────────────────────────────────────

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}


def parse_hours_list(value: str) -> list[int]:
    """'9,13,17' → [9, 13, 17]. Rejects hours outside 0-23."""
    hours = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        hour = int(part)
        if not 0 <= hour <= 23:
            raise ValueError(f"Hour out of range: {hour}")
        hours.append(hour)
    return sorted(set(hours))


def parse_quiet_hours(value: str) -> tuple[int, int]:
    """'22-7' → (22, 7)."""
    start, sep, end = value.partition("-")
    if not sep:
        raise ValueError(f"Quiet hours must look like 'start-end': {value!r}")
    start_h, end_h = int(start.strip()), int(end.strip())
    for hour in (start_h, end_h):
        if not 0 <= hour <= 23:
            raise ValueError(f"Hour out of range: {hour}")
    return start_h, end_h


def parse_duration(value: str | int | float) -> int:
    """'5m' → 300, '90s' → 90, '1h' → 3600, '120' → 120 (seconds)."""
    if isinstance(value, (int, float)):
        return int(value)
    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return int(float(amount) * _DURATION_UNITS[unit.lower()])


# ── YAML loading ──────────────────────────────────────────────

def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values (empty when unset)."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        return os.environ.get(match.group(1), "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _apply_env_overrides(settings: Settings, environ: dict[str, str]) -> None:
    esc = settings.escalation
    if environ.get("NOTIFICATION_WINDOWS"):
        esc.notification_windows = parse_hours_list(environ["NOTIFICATION_WINDOWS"])
    if environ.get("QUIET_HOURS"):
        esc.quiet_hours = parse_quiet_hours(environ["QUIET_HOURS"])
    if environ.get("ESCALATION_FIRST_RETRY"):
        esc.first_retry_s = parse_duration(environ["ESCALATION_FIRST_RETRY"])
    if environ.get("ESCALATION_FAMILY_NOTIFY"):
        esc.family_notify_s = parse_duration(environ["ESCALATION_FAMILY_NOTIFY"])
    if environ.get("ESCALATION_NEIGHBOR_NOTIFY"):
        esc.neighbor_notify_s = parse_duration(environ["ESCALATION_NEIGHBOR_NOTIFY"])
    if environ.get("HEATWATCH_ENV"):
        settings.environment = environ["HEATWATCH_ENV"]


def load_settings(config_path: str = None, environ: dict[str, str] = None) -> Settings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    if environ is None:
        environ = dict(os.environ)
    if config_path is None:
        config_path = environ.get(
            "HEATWATCH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.environment = raw.get("environment") or settings.environment
        settings.timezone = raw.get("timezone", settings.timezone)

        if "escalation" in raw:
            esc = raw["escalation"]
            windows = esc.get("notification_windows", settings.escalation.notification_windows)
            if isinstance(windows, str):
                windows = parse_hours_list(windows)
            quiet = esc.get("quiet_hours", settings.escalation.quiet_hours)
            if isinstance(quiet, str):
                quiet = parse_quiet_hours(quiet)
            settings.escalation = EscalationConfig(
                notification_windows=sorted(int(h) for h in windows),
                quiet_hours=(int(quiet[0]), int(quiet[1])),
                first_retry_s=parse_duration(esc.get("first_retry", 300)),
                family_notify_s=parse_duration(esc.get("family_notify", 600)),
                neighbor_notify_s=parse_duration(esc.get("neighbor_notify", 900)),
                max_concurrency=int(esc.get("max_concurrency", 10)),
            )

        if "scheduler" in raw:
            sch = raw["scheduler"]
            settings.scheduler = SchedulerConfig(
                enabled=sch.get("enabled", True),
                heat_alert_interval_s=parse_duration(sch.get("heat_alert_interval", 3600)),
                escalation_interval_s=parse_duration(sch.get("escalation_interval", 300)),
                run_heat_alert_on_start=sch.get("run_heat_alert_on_start", True),
            )

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            )

        if "weather" in raw:
            wx = raw["weather"]
            settings.weather = WeatherConfig(
                provider=wx.get("provider", "static"),
                base_url=wx.get("base_url", ""),
                api_key=wx.get("api_key", ""),
                cache_ttl_s=parse_duration(wx.get("cache_ttl", 300)),
                default_temperature=float(wx.get("default_temperature", 31.0)),
                default_humidity=float(wx.get("default_humidity", 60.0)),
            )

        if "webhooks" in raw:
            wh = raw["webhooks"]
            settings.webhooks = WebhookConfig(
                strict_signatures=wh.get("strict_signatures"),
                secret=wh.get("secret", ""),
                public_base_url=wh.get("public_base_url", ""),
            )

        if "channels" in raw:
            for ch_name, ch_data in raw["channels"].items():
                settings.channels[ch_name] = ChannelConfig(
                    enabled=ch_data.get("enabled", False),
                    credentials=ch_data.get("credentials", {}),
                )

        settings.retry = raw.get("retry", {}) or {}

    _apply_env_overrides(settings, environ)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
