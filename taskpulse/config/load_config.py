from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskpulse.runtime.streaming import StreamSettings
from taskpulse.runtime.timeline import SimulationPolicy
from taskpulse.runtime.worker import WorkerConfig


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid int for {key}: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_float(value: Any, *, key: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid float for {key}: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _non_negative(value: float, *, key: str) -> float:
    if value < 0:
        raise ConfigError(f"Invalid {key}: must be >= 0, got {value!r}")
    return value


def _positive(value: float, *, key: str) -> float:
    if value <= 0:
        raise ConfigError(f"Invalid {key}: must be > 0, got {value!r}")
    return value


@dataclass(frozen=True)
class LimitsConfig:
    runs_list_default_limit: int = 50
    runs_list_max_limit: int = 200


@dataclass(frozen=True)
class AppConfig:
    stream: StreamSettings = field(default_factory=StreamSettings)
    simulation: SimulationPolicy = field(default_factory=SimulationPolicy)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)


def default_config_path() -> Path:
    return Path(os.getenv("TASKPULSE_CONFIG_PATH", "config/default.toml")).expanduser().resolve()


def _parse_stream(raw: dict[str, Any]) -> StreamSettings:
    d = StreamSettings()
    return StreamSettings(
        recent_window_s=_non_negative(
            _as_float(raw.get("recent_window_s", d.recent_window_s), key="stream.recent_window_s"),
            key="stream.recent_window_s",
        ),
        max_log_delay_s=_non_negative(
            _as_float(raw.get("max_log_delay_s", d.max_log_delay_s), key="stream.max_log_delay_s"),
            key="stream.max_log_delay_s",
        ),
        heartbeat_interval_s=_positive(
            _as_float(raw.get("heartbeat_interval_s", d.heartbeat_interval_s), key="stream.heartbeat_interval_s"),
            key="stream.heartbeat_interval_s",
        ),
        live_grace_s=_non_negative(
            _as_float(raw.get("live_grace_s", d.live_grace_s), key="stream.live_grace_s"),
            key="stream.live_grace_s",
        ),
        flush_close_delay_s=_non_negative(
            _as_float(raw.get("flush_close_delay_s", d.flush_close_delay_s), key="stream.flush_close_delay_s"),
            key="stream.flush_close_delay_s",
        ),
    )


def _parse_simulation(raw: dict[str, Any]) -> SimulationPolicy:
    d = SimulationPolicy()
    try:
        return SimulationPolicy(
            failure_rate=_as_float(raw.get("failure_rate", d.failure_rate), key="simulation.failure_rate"),
            jitter_pct=_as_float(raw.get("jitter_pct", d.jitter_pct), key="simulation.jitter_pct"),
            flaky_attempts=_as_int(raw.get("flaky_attempts", d.flaky_attempts), key="simulation.flaky_attempts"),
            start_delay_ms=_as_int(raw.get("start_delay_ms", d.start_delay_ms), key="simulation.start_delay_ms"),
        )
    except ValueError as e:
        raise ConfigError(f"Invalid [simulation]: {e}") from e


def _parse_limits(raw: dict[str, Any]) -> LimitsConfig:
    d = LimitsConfig()
    default_limit = _as_int(
        raw.get("runs_list_default_limit", d.runs_list_default_limit), key="limits.runs_list_default_limit"
    )
    max_limit = _as_int(raw.get("runs_list_max_limit", d.runs_list_max_limit), key="limits.runs_list_max_limit")
    if default_limit < 1 or max_limit < default_limit:
        raise ConfigError(
            f"Invalid [limits]: need 1 <= runs_list_default_limit <= runs_list_max_limit, "
            f"got {default_limit} / {max_limit}"
        )
    return LimitsConfig(runs_list_default_limit=default_limit, runs_list_max_limit=max_limit)


def _parse_worker(raw: dict[str, Any]) -> WorkerConfig:
    d = WorkerConfig()
    poll = _positive(
        _as_float(raw.get("poll_interval_s", d.poll_interval_s), key="worker.poll_interval_s"),
        key="worker.poll_interval_s",
    )
    batch = _as_int(raw.get("batch_size", d.batch_size), key="worker.batch_size")
    if batch < 1:
        raise ConfigError(f"Invalid worker.batch_size: must be >= 1, got {batch!r}")
    return WorkerConfig(poll_interval_s=poll, batch_size=batch)


def load_app_config(path: Path | None = None) -> AppConfig:
    """Load `AppConfig` from TOML.

    Without an explicit path (and without TASKPULSE_CONFIG_PATH) a missing
    default file means built-in defaults.
    """
    explicit = path is not None or bool(os.getenv("TASKPULSE_CONFIG_PATH"))
    cfg_path = Path(path).expanduser().resolve() if path is not None else default_config_path()
    if not cfg_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {cfg_path}")
        return AppConfig()

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e

    return AppConfig(
        stream=_parse_stream(raw.get("stream", {})),
        simulation=_parse_simulation(raw.get("simulation", {})),
        limits=_parse_limits(raw.get("limits", {})),
        worker=_parse_worker(raw.get("worker", {})),
    )
