"""Tracker configuration for pydelivery."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from typing import Any

from pydelivery.exceptions import ConfigError

OVERFLOW_POLICIES = frozenset({"drop_oldest", "drop_new"})


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(env: Mapping[str, str], key: str, cast: type) -> Any:
    raw = env.get(key)
    if raw is None:
        return None
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be {cast.__name__}, got {raw!r}") from exc


@dataclasses.dataclass(frozen=True)
class TrackerConfig:
    """Tracker configuration.

    Parameters
    ----------
    storage_path : str or None
        Directory for the durable JSON store. ``None`` keeps every entity
        in memory.
    seed_fixtures : bool
        Load the demo dataset into the store on startup (mock mode).
    channel_capacity : int
        Maximum buffered notifications per observer.
    overflow_policy : str
        ``"drop_oldest"`` or ``"drop_new"`` when an observer buffer is full.
    subscription_idle_timeout : float
        Seconds without a heartbeat before an observer is reaped.
    reaper_interval : float
        Seconds between reaper sweeps. ``0`` disables the background reaper.
    position_min_interval : float
        Minimum seconds of ``observed_at`` between two applied position
        reports for the same driver. ``0`` disables the debounce.
    geocoder_url : str or None
        Nominatim-compatible search endpoint base URL.
    directions_url : str or None
        OSRM-compatible route endpoint base URL.
    directions_profile : str
        OSRM routing profile.
    oracle_timeout : float
        Per-request timeout for oracle lookups in seconds.
    bridge_enabled : bool
        Publish/consume change notifications over MQTT so observers
        connected to other processes receive them.
    bridge_host : str
        MQTT broker host.
    bridge_port : int
        MQTT broker port.
    bridge_topic_prefix : str
        Topic prefix; notifications go to ``{prefix}/{kind}/{id}``.
    bridge_keepalive : int
        MQTT keepalive in seconds.
    node_id : str or None
        Identity of this process on the bridge. Generated when unset.
    """

    storage_path: str | None = None
    seed_fixtures: bool = False
    channel_capacity: int = 100
    overflow_policy: str = "drop_oldest"
    subscription_idle_timeout: float = 60.0
    reaper_interval: float = 15.0
    position_min_interval: float = 0.0
    geocoder_url: str | None = None
    directions_url: str | None = None
    directions_profile: str = "driving"
    oracle_timeout: float = 10.0
    bridge_enabled: bool = False
    bridge_host: str = "localhost"
    bridge_port: int = 1883
    bridge_topic_prefix: str = "pydelivery"
    bridge_keepalive: int = 60
    node_id: str | None = None

    def __post_init__(self) -> None:
        if self.channel_capacity < 1:
            raise ConfigError("channel_capacity must be >= 1")
        if self.overflow_policy not in OVERFLOW_POLICIES:
            raise ConfigError(f"overflow_policy must be one of {sorted(OVERFLOW_POLICIES)}")
        if self.subscription_idle_timeout <= 0:
            raise ConfigError("subscription_idle_timeout must be > 0")
        if self.reaper_interval < 0:
            raise ConfigError("reaper_interval must be >= 0")
        if self.position_min_interval < 0:
            raise ConfigError("position_min_interval must be >= 0")

    @classmethod
    def from_env(cls, **overrides: Any) -> TrackerConfig:
        """Create configuration from environment variables.

        Reads optional ``PYDELIVERY_*`` variables. Explicit keyword
        arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        TrackerConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "PYDELIVERY_STORAGE_PATH": "storage_path",
            "PYDELIVERY_OVERFLOW_POLICY": "overflow_policy",
            "PYDELIVERY_GEOCODER_URL": "geocoder_url",
            "PYDELIVERY_DIRECTIONS_URL": "directions_url",
            "PYDELIVERY_DIRECTIONS_PROFILE": "directions_profile",
            "PYDELIVERY_BRIDGE_HOST": "bridge_host",
            "PYDELIVERY_BRIDGE_TOPIC_PREFIX": "bridge_topic_prefix",
            "PYDELIVERY_NODE_ID": "node_id",
        }
        _ENV_NUMBER_MAP: dict[str, tuple[str, type]] = {
            "PYDELIVERY_CHANNEL_CAPACITY": ("channel_capacity", int),
            "PYDELIVERY_SUBSCRIPTION_IDLE_TIMEOUT": ("subscription_idle_timeout", float),
            "PYDELIVERY_REAPER_INTERVAL": ("reaper_interval", float),
            "PYDELIVERY_POSITION_MIN_INTERVAL": ("position_min_interval", float),
            "PYDELIVERY_ORACLE_TIMEOUT": ("oracle_timeout", float),
            "PYDELIVERY_BRIDGE_PORT": ("bridge_port", int),
            "PYDELIVERY_BRIDGE_KEEPALIVE": ("bridge_keepalive", int),
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and val.strip():
                config_kwargs[field_name] = val.strip()

        for env_key, (field_name, cast) in _ENV_NUMBER_MAP.items():
            if field_name in overrides:
                continue
            val = _env_number(env, env_key, cast)
            if val is not None:
                config_kwargs[field_name] = val

        if "seed_fixtures" not in overrides:
            config_kwargs["seed_fixtures"] = _env_bool(env.get("PYDELIVERY_SEED_FIXTURES"), False)
        if "bridge_enabled" not in overrides:
            config_kwargs["bridge_enabled"] = _env_bool(env.get("PYDELIVERY_BRIDGE_ENABLED"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
