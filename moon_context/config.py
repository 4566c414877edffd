"""Configuration loading, validation, environment overrides, and path resolution."""

from __future__ import annotations

import json
import os
import shlex
from pathlib import Path
from typing import Any

import yaml

from .types import (
    ConfigError,
    DistillConfig,
    HostConfig,
    IndexConfig,
    MoonConfig,
    MoonPaths,
    PathsConfig,
    RetentionConfig,
    ThresholdConfig,
    UsageConfig,
    WatcherConfig,
)

CONFIG_FILENAMES = [
    "moon-context.yaml",
    "moon-context.yml",
    "moon-context.json",
]

REARM_POLICIES = ("cooldown", "hysteresis", "either")
DISTILL_MODES = ("manual", "idle")
BUILTIN_PROVIDERS = ("gemini", "anthropic", "generic_openai", "local")


def _discover_config() -> Path | None:
    """Search MOON_CONFIG_PATH, then CWD and parent dirs up to home, then MOON_HOME."""
    custom = os.environ.get("MOON_CONFIG_PATH", "").strip()
    if custom:
        return Path(custom).expanduser()

    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent

    moon_home = Path(os.environ.get("MOON_HOME", "") or home / "MOON").expanduser()
    for name in CONFIG_FILENAMES:
        candidate = moon_home / name
        if candidate.is_file():
            return candidate
    return None


def _argv(value: Any, default: list[str]) -> list[str]:
    if value is None:
        return list(default)
    if isinstance(value, str):
        return shlex.split(value)
    return [str(v) for v in value]


def _build_config(raw: dict[str, Any]) -> MoonConfig:
    """Build a MoonConfig from a raw dict."""
    paths_raw = raw.get("paths", {})
    paths = PathsConfig(
        moon_home=paths_raw.get("moon_home", "~/MOON"),
        archives_dir=paths_raw.get("archives_dir", ""),
        memory_dir=paths_raw.get("memory_dir", ""),
        logs_dir=paths_raw.get("logs_dir", ""),
        state_dir=paths_raw.get("state_dir", ""),
        continuity_dir=paths_raw.get("continuity_dir", ""),
        sessions_dir=paths_raw.get("sessions_dir", "~/.openclaw/agents/main/sessions"),
    )

    th_raw = raw.get("thresholds", {})
    thresholds = ThresholdConfig(
        archive_ratio=float(th_raw.get("archive_ratio", 0.80)),
        prune_ratio=float(th_raw.get("prune_ratio", 0.85)),
        distill_ratio=float(th_raw.get("distill_ratio", 0.90)),
        emergency_ratio=float(th_raw.get("emergency_ratio", 0.95)),
        rearm_policy=th_raw.get("rearm_policy", "cooldown"),
        hysteresis_margin=float(th_raw.get("hysteresis_margin", 0.05)),
    )

    w_raw = raw.get("watcher", {})
    watcher = WatcherConfig(
        poll_interval_secs=int(w_raw.get("poll_interval_secs", 30)),
        cooldown_secs=int(w_raw.get("cooldown_secs", 300)),
        data_loss_backoff_secs=int(w_raw.get("data_loss_backoff_secs", 600)),
    )

    u_raw = raw.get("usage", {})
    usage = UsageConfig(
        provider=u_raw.get("provider", "primary"),
        staleness_secs=int(u_raw.get("staleness_secs", 300)),
        context_window=int(u_raw.get("context_window", raw.get("context_window", 200_000))),
        timeout_secs=float(u_raw.get("timeout_secs", 15.0)),
    )

    i_raw = raw.get("index", {})
    index = IndexConfig(
        bin=i_raw.get("bin", "qmd"),
        collection=i_raw.get("collection", "history"),
        timeout_secs=float(i_raw.get("timeout_secs", 60.0)),
        max_results=int(i_raw.get("max_results", 10)),
    )

    h_raw = raw.get("host", {})
    host_defaults = HostConfig()
    host = HostConfig(
        bin=h_raw.get("bin", "openclaw"),
        usage_args=_argv(h_raw.get("usage_args"), host_defaults.usage_args),
        compact_args=_argv(h_raw.get("compact_args"), host_defaults.compact_args),
        create_args=_argv(h_raw.get("create_args"), host_defaults.create_args),
        inject_args=_argv(h_raw.get("inject_args"), host_defaults.inject_args),
        rollover_command=_argv(h_raw.get("rollover_command"), []),
        timeout_secs=float(h_raw.get("timeout_secs", 60.0)),
        retries=int(h_raw.get("retries", 2)),
    )

    d_raw = raw.get("distill", {})
    distill = DistillConfig(
        mode=d_raw.get("mode", "manual"),
        idle_secs=int(d_raw.get("idle_secs", 21600)),
        max_per_cycle=int(d_raw.get("max_per_cycle", 1)),
        require_indexed=bool(d_raw.get("require_indexed", True)),
        provider=d_raw.get("provider", "gemini"),
        model=d_raw.get("model", "gemini-2.5-flash-lite"),
        max_tokens=int(d_raw.get("max_tokens", 2048)),
        temperature=float(d_raw.get("temperature", 0.2)),
        timeout_secs=float(d_raw.get("timeout_secs", 45.0)),
        chunk_chars=int(d_raw.get("chunk_chars", 60_000)),
    )

    r_raw = raw.get("retention", {})
    retention = RetentionConfig(
        active_days=int(r_raw.get("active_days", 7)),
        warm_days=int(r_raw.get("warm_days", 30)),
        cold_days=int(r_raw.get("cold_days", 31)),
        enabled=bool(r_raw.get("enabled", True)),
    )

    return MoonConfig(
        version=str(raw.get("version", "1.0")),
        paths=paths,
        thresholds=thresholds,
        watcher=watcher,
        usage=usage,
        index=index,
        host=host,
        distill=distill,
        retention=retention,
        providers=raw.get("providers", {}) or {},
    )


def _env_str(name: str) -> str | None:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def apply_env_overrides(config: MoonConfig) -> MoonConfig:
    """Apply MOON_* and host binary environment variables on top of file config."""
    for var, attr in (
        ("MOON_HOME", "moon_home"),
        ("MOON_ARCHIVES_DIR", "archives_dir"),
        ("MOON_MEMORY_DIR", "memory_dir"),
        ("MOON_LOGS_DIR", "logs_dir"),
        ("MOON_STATE_DIR", "state_dir"),
        ("OPENCLAW_SESSIONS_DIR", "sessions_dir"),
    ):
        value = _env_str(var)
        if value is not None:
            setattr(config.paths, attr, value)

    for var, attr in (
        ("MOON_THRESHOLD_ARCHIVE_RATIO", "archive_ratio"),
        ("MOON_THRESHOLD_PRUNE_RATIO", "prune_ratio"),
        ("MOON_THRESHOLD_DISTILL_RATIO", "distill_ratio"),
        ("MOON_THRESHOLD_EMERGENCY_RATIO", "emergency_ratio"),
    ):
        value = _env_str(var)
        if value is not None:
            setattr(config.thresholds, attr, _parse_number(var, value, float))

    for var, section, attr in (
        ("MOON_POLL_INTERVAL_SECS", config.watcher, "poll_interval_secs"),
        ("MOON_COOLDOWN_SECS", config.watcher, "cooldown_secs"),
        ("MOON_DATA_LOSS_BACKOFF_SECS", config.watcher, "data_loss_backoff_secs"),
        ("MOON_DISTILL_IDLE_SECS", config.distill, "idle_secs"),
        ("MOON_DISTILL_MAX_PER_CYCLE", config.distill, "max_per_cycle"),
    ):
        value = _env_str(var)
        if value is not None:
            setattr(section, attr, _parse_number(var, value, int))

    mode = _env_str("MOON_DISTILL_MODE")
    if mode is not None:
        config.distill.mode = mode.lower()
    model = _env_str("MOON_GEMINI_MODEL")
    if model is not None and config.distill.provider == "gemini":
        config.distill.model = model

    qmd_bin = _env_str("QMD_BIN")
    if qmd_bin is not None:
        config.index.bin = qmd_bin
    host_bin = _env_str("OPENCLAW_BIN")
    if host_bin is not None:
        config.host.bin = host_bin
    usage_args = _env_str("MOON_HOST_USAGE_ARGS")
    if usage_args is not None:
        config.host.usage_args = shlex.split(usage_args)
    rollover = _env_str("MOON_ROLLOVER_COMMAND")
    if rollover is not None:
        config.host.rollover_command = shlex.split(rollover)

    return config


def _parse_number(var: str, value: str, kind: type):
    try:
        return kind(value)
    except ValueError as e:
        raise ConfigError(f"{var} must be a number, got {value!r}") from e


def validate_config(config: MoonConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []
    th = config.thresholds

    if not (0.0 < th.archive_ratio < th.prune_ratio < th.distill_ratio <= 1.0):
        errors.append(
            f"thresholds must satisfy 0 < archive ({th.archive_ratio}) < "
            f"prune ({th.prune_ratio}) < distill ({th.distill_ratio}) <= 1"
        )

    if not (th.prune_ratio <= th.emergency_ratio <= 1.0):
        errors.append(
            f"emergency_ratio ({th.emergency_ratio}) must be between "
            f"prune_ratio ({th.prune_ratio}) and 1"
        )

    if th.rearm_policy not in REARM_POLICIES:
        errors.append(
            f"rearm_policy '{th.rearm_policy}' must be one of {', '.join(REARM_POLICIES)}"
        )

    if not (0.0 <= th.hysteresis_margin < th.archive_ratio):
        errors.append("hysteresis_margin must be >= 0 and below archive_ratio")

    if config.watcher.poll_interval_secs < 1:
        errors.append("poll_interval_secs must be >= 1")

    if config.watcher.cooldown_secs < 0:
        errors.append("cooldown_secs must be >= 0")

    if config.watcher.data_loss_backoff_secs < 0:
        errors.append("data_loss_backoff_secs must be >= 0")

    if config.usage.provider not in ("primary", "fallback"):
        errors.append(f"usage.provider '{config.usage.provider}' must be 'primary' or 'fallback'")

    if config.usage.context_window < 1:
        errors.append("usage.context_window must be >= 1")

    if config.distill.mode not in DISTILL_MODES:
        errors.append(f"distill.mode '{config.distill.mode}' must be 'manual' or 'idle'")

    if config.distill.max_per_cycle < 1:
        errors.append("distill.max_per_cycle must be >= 1")

    if config.distill.idle_secs < 0:
        errors.append("distill.idle_secs must be >= 0")

    if config.distill.chunk_chars < 1000:
        errors.append("distill.chunk_chars must be >= 1000")

    provider = config.distill.provider
    if provider not in BUILTIN_PROVIDERS and provider not in config.providers:
        errors.append(f"Distill provider '{provider}' not found in providers section")

    ret = config.retention
    if not (0 < ret.active_days < ret.warm_days < ret.cold_days):
        errors.append(
            f"retention bands must satisfy 0 < active_days ({ret.active_days}) < "
            f"warm_days ({ret.warm_days}) < cold_days ({ret.cold_days})"
        )

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
    env: bool = True,
    validate: bool = True,
) -> MoonConfig:
    """Load config from dict, explicit path, or auto-discover.

    Environment overrides are applied after the file. Raises ``ConfigError``
    when the result does not validate.
    """
    if config_dict is not None:
        config = _build_config(config_dict)
    else:
        if config_path is not None:
            path = Path(config_path)
        else:
            path = _discover_config()

        if path is None:
            config = _build_config({})
        else:
            if not path.is_file():
                raise FileNotFoundError(f"Config file not found: {path}")

            text = path.read_text()
            if path.suffix == ".json":
                raw = json.loads(text)
            else:
                raw = yaml.safe_load(text) or {}
            config = _build_config(raw)

    if env:
        apply_env_overrides(config)

    if validate:
        errors = validate_config(config)
        if errors:
            raise ConfigError("Invalid configuration: " + "; ".join(errors), errors=errors)

    return config


def _resolve(value: str, default: Path) -> Path:
    if not value:
        return default
    return Path(value).expanduser()


def resolve_paths(config: MoonConfig) -> MoonPaths:
    """Resolve the on-disk layout. Nothing is created here."""
    home = Path(config.paths.moon_home).expanduser()
    archives = _resolve(config.paths.archives_dir, home / "archives")
    logs = _resolve(config.paths.logs_dir, home / "logs")
    state = _resolve(config.paths.state_dir, home / "state")
    continuity = _resolve(config.paths.continuity_dir, home / "continuity")
    return MoonPaths(
        moon_home=home,
        archives_dir=archives,
        raw_dir=archives / "raw",
        ledger_path=archives / "ledger.jsonl",
        memory_dir=_resolve(config.paths.memory_dir, home / "memory"),
        logs_dir=logs,
        audit_log=logs / "audit.log",
        state_dir=state,
        state_file=state / "watcher_state.json",
        lock_file=state / "watcher.lock",
        continuity_dir=continuity,
        maps_dir=continuity / "maps",
        archive_map_path=continuity / "archive_map.json",
        sessions_dir=Path(config.paths.sessions_dir).expanduser(),
    )
