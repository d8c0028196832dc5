from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from unitoperator.src.constants import AGENT_DEFAULT_PORT, DEFAULT_MANAGER_NAMESPACE

AGENT_HOST_TYPES = ("domain", "ip")


class ConfigError(RuntimeError):
    """Raised when operator configuration is invalid."""


@dataclass(frozen=True)
class Poll:
    """Interval and overall timeout, in seconds, of one bounded wait."""

    interval: float
    timeout: float


@dataclass(frozen=True)
class WaitSettings:
    """Every bounded wait the reconcilers perform.

    Tests construct this with tiny values; production uses the defaults.
    """

    pod_scheduled: Poll = Poll(1, 5)
    pod_gone: Poll = Poll(2, 40)
    recovery_pod_gone: Poll = Poll(1, 10)
    recovery_check_interval: float = 10
    config_sync_fallback: Poll = Poll(5, 30)
    config_sync_pod_gone: Poll = Poll(5, 30)
    service_ready_fallback: Poll = Poll(5, 30)
    claim_gone: Poll = Poll(0.2, 10)
    volume_gone: Poll = Poll(1, 15)
    units_gone: Poll = Poll(2, 28)
    config_map_gone: Poll = Poll(0.2, 10)
    unit_ready: Poll = Poll(10, 90)


@dataclass(frozen=True)
class OperatorConfig:
    watch_namespace: str = ""
    manager_namespace: str = DEFAULT_MANAGER_NAMESPACE
    agent_host_type: str = "domain"
    agent_port: int = AGENT_DEFAULT_PORT
    agent_timeout_seconds: int = 10
    unit_workers: int = 10
    unitset_workers: int = 10
    unit_requeue_seconds: int = 3
    unitset_requeue_seconds: int = 10
    health_port: int = 8080
    log_level: str = "INFO"
    waits: WaitSettings = field(default_factory=WaitSettings)


def env_int(
    env: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> OperatorConfig:
    """Build an :class:`OperatorConfig` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``            namespace to watch (empty means all namespaces).
        ``MANAGER_NAMESPACE``          namespace holding global templates (``upm-system``).
        ``UNIT_AGENT_HOST_TYPE``       ``domain`` or ``ip`` (``domain``).
        ``UNIT_AGENT_PORT``            sidecar agent port (``2214``).
        ``UNIT_AGENT_TIMEOUT_SECONDS`` HTTP timeout for agent calls (``10``).
        ``UNIT_WORKERS`` / ``UNITSET_WORKERS`` reconcile worker threads (``10``).
        ``UNIT_REQUEUE_SECONDS`` / ``UNITSET_REQUEUE_SECONDS`` periodic requeue (``3`` / ``10``).
        ``HEALTH_PORT``                health and metrics port (``8080``).
        ``LOG_LEVEL``                  root log level (``INFO``).
    """
    env = os.environ if env is None else env

    manager_namespace = env.get("MANAGER_NAMESPACE", DEFAULT_MANAGER_NAMESPACE).strip()
    if not manager_namespace:
        raise ConfigError("MANAGER_NAMESPACE must be a non-empty string")

    agent_host_type = env.get("UNIT_AGENT_HOST_TYPE", "domain").strip().lower()
    if agent_host_type not in AGENT_HOST_TYPES:
        raise ConfigError(
            f"UNIT_AGENT_HOST_TYPE must be one of {', '.join(AGENT_HOST_TYPES)}, "
            f"got: {agent_host_type!r}"
        )

    return OperatorConfig(
        watch_namespace=env.get("WATCH_NAMESPACE", "").strip(),
        manager_namespace=manager_namespace,
        agent_host_type=agent_host_type,
        agent_port=env_int(env, "UNIT_AGENT_PORT", AGENT_DEFAULT_PORT, minimum=1, maximum=65535),
        agent_timeout_seconds=env_int(env, "UNIT_AGENT_TIMEOUT_SECONDS", 10, minimum=1),
        unit_workers=env_int(env, "UNIT_WORKERS", 10, minimum=1),
        unitset_workers=env_int(env, "UNITSET_WORKERS", 10, minimum=1),
        unit_requeue_seconds=env_int(env, "UNIT_REQUEUE_SECONDS", 3, minimum=1),
        unitset_requeue_seconds=env_int(env, "UNITSET_REQUEUE_SECONDS", 10, minimum=1),
        health_port=env_int(env, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=env.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
