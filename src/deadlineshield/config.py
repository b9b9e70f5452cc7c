from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    dashboard_url: str


@dataclass(frozen=True)
class FetchConfig:
    timeout_seconds: int
    user_agent: str
    max_bytes: int


@dataclass(frozen=True)
class NormalizeConfig:
    max_chars: int
    sample_chars: int


@dataclass(frozen=True)
class SchedulerConfig:
    concurrency: int
    interval_minutes: int


@dataclass(frozen=True)
class LockConfig:
    ttl_seconds: int

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.ttl_seconds)


@dataclass(frozen=True)
class BackoffConfig:
    delays_minutes: list[int]
    degraded_after: int
    manual_after: int


@dataclass(frozen=True)
class AlertsConfig:
    email_enabled: bool
    from_address: str
    disclaimer: str


@dataclass(frozen=True)
class Config:
    app: AppConfig
    fetch: FetchConfig
    normalize: NormalizeConfig
    scheduler: SchedulerConfig
    locks: LockConfig
    backoff: BackoffConfig
    alerts: AlertsConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "DeadlineShield",
        "dashboard_url": "https://deadline-shield-web.web.app/dashboard",
    },
    "fetch": {
        "timeout_seconds": 30,
        "user_agent": "DeadlineShield/0.1",
        "max_bytes": 5_000_000,
    },
    "normalize": {
        "max_chars": 50_000,
        "sample_chars": 500,
    },
    "scheduler": {
        "concurrency": 4,
        "interval_minutes": 15,
    },
    "locks": {
        "ttl_seconds": 300,
    },
    "backoff": {
        "delays_minutes": [0, 30, 120, 720, 1440],
        "degraded_after": 5,
        "manual_after": 10,
    },
    "alerts": {
        "email_enabled": True,
        "from_address": "alerts@deadline-shield.app",
        "disclaimer": (
            "Informational monitoring tool. Users are responsible for compliance decisions. "
            "Links point to original authoritative sources."
        ),
    },
}

CONFIG_KEY = "config.runtime"


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return build_config(cfg)


def import_config_file(conn, path: str) -> dict[str, Any]:
    """Merge a YAML file over the defaults and store it as the runtime config."""
    with open(path, "r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path} must contain a mapping")
    merged = _merge(_deep_copy(DEFAULT_CONFIG), loaded)
    set_runtime_config(conn, merged)
    return merged


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if errors:
        return errors
    backoff = cfg["backoff"]
    if not backoff["delays_minutes"]:
        errors.append("config.runtime.backoff.delays_minutes must not be empty")
    if backoff["degraded_after"] > backoff["manual_after"]:
        errors.append("config.runtime.backoff.degraded_after must not exceed manual_after")
    if cfg["scheduler"]["concurrency"] < 1:
        errors.append("config.runtime.scheduler.concurrency must be at least 1")
    if cfg["locks"]["ttl_seconds"] < 1:
        errors.append("config.runtime.locks.ttl_seconds must be at least 1")
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        if default:
            sample = default[0]
            for item in value:
                if not isinstance(item, type(sample)) or isinstance(item, bool):
                    errors.append(f"{path} must be a list of {type(sample).__name__}")
                    break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    fetch_cfg = cfg.get("fetch") or {}
    normalize_cfg = cfg.get("normalize") or {}
    scheduler_cfg = cfg.get("scheduler") or {}
    locks_cfg = cfg.get("locks") or {}
    backoff_cfg = cfg.get("backoff") or {}
    alerts_cfg = cfg.get("alerts") or {}

    concurrency = int(scheduler_cfg.get("concurrency"))
    env_concurrency = os.environ.get("DS_SCHEDULER_CONCURRENCY", "").strip()
    if env_concurrency:
        concurrency = max(1, int(env_concurrency))

    return Config(
        app=AppConfig(
            name=str(app_cfg.get("name")),
            dashboard_url=str(app_cfg.get("dashboard_url")),
        ),
        fetch=FetchConfig(
            timeout_seconds=int(fetch_cfg.get("timeout_seconds")),
            user_agent=str(fetch_cfg.get("user_agent")),
            max_bytes=int(fetch_cfg.get("max_bytes")),
        ),
        normalize=NormalizeConfig(
            max_chars=int(normalize_cfg.get("max_chars")),
            sample_chars=int(normalize_cfg.get("sample_chars")),
        ),
        scheduler=SchedulerConfig(
            concurrency=concurrency,
            interval_minutes=int(scheduler_cfg.get("interval_minutes")),
        ),
        locks=LockConfig(ttl_seconds=int(locks_cfg.get("ttl_seconds"))),
        backoff=BackoffConfig(
            delays_minutes=[int(item) for item in backoff_cfg.get("delays_minutes")],
            degraded_after=int(backoff_cfg.get("degraded_after")),
            manual_after=int(backoff_cfg.get("manual_after")),
        ),
        alerts=AlertsConfig(
            email_enabled=bool(alerts_cfg.get("email_enabled")),
            from_address=str(alerts_cfg.get("from_address")),
            disclaimer=str(alerts_cfg.get("disclaimer")),
        ),
    )


def default_config() -> Config:
    return build_config(_deep_copy(DEFAULT_CONFIG))


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _merge(base[key], value)
        else:
            base[key] = value
    return base


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
