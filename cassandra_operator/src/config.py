from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace:  Namespace to watch; empty string watches all namespaces.
        workers:    Number of concurrent reconciliation workers.
        resync_period_seconds: Informer resync interval; ``0`` disables resync.
        retry_base_delay_seconds / retry_max_delay_seconds:
                    Per-key exponential backoff bounds for failed syncs.
        queue_qps / queue_burst:
                    Overall token bucket bounding retry throughput.
        status_subresource: Persist status through the ``/status`` subresource
                    instead of replacing the whole object.
        health_port: Port of the probe and metrics HTTP server.
    """

    namespace: str = ""
    workers: int = 2
    resync_period_seconds: int = 30
    retry_base_delay_seconds: float = 0.005
    retry_max_delay_seconds: float = 1000.0
    queue_qps: float = 10.0
    queue_burst: int = 100
    status_subresource: bool = False
    health_port: int = 8080


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
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


def env_float(
    values: Mapping[str, str],
    name: str,
    default: float,
    *,
    minimum: float | None = None,
) -> float:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``          Namespace to watch (all namespaces).
        ``WORKERS``                  Reconciliation workers (``2``).
        ``RESYNC_PERIOD_SECONDS``    Informer resync interval (``30``).
        ``RETRY_BASE_DELAY_SECONDS`` First retry delay (``0.005``).
        ``RETRY_MAX_DELAY_SECONDS``  Retry delay cap (``1000``).
        ``QUEUE_QPS`` / ``QUEUE_BURST`` Overall retry rate (``10`` / ``100``).
        ``STATUS_SUBRESOURCE``       Write status via ``/status`` (``false``).
        ``HEALTH_PORT``              Probe server port (``8080``).
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "").strip()
    retry_base_delay_seconds = env_float(
        values, "RETRY_BASE_DELAY_SECONDS", 0.005, minimum=0.001
    )
    retry_max_delay_seconds = env_float(values, "RETRY_MAX_DELAY_SECONDS", 1000.0, minimum=0.001)
    if retry_max_delay_seconds < retry_base_delay_seconds:
        raise ConfigError(
            "RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS"
        )

    return ControllerConfig(
        namespace=namespace,
        workers=env_int(values, "WORKERS", 2, minimum=1, maximum=64),
        resync_period_seconds=env_int(values, "RESYNC_PERIOD_SECONDS", 30, minimum=0),
        retry_base_delay_seconds=retry_base_delay_seconds,
        retry_max_delay_seconds=retry_max_delay_seconds,
        queue_qps=env_float(values, "QUEUE_QPS", 10.0, minimum=0.001),
        queue_burst=env_int(values, "QUEUE_BURST", 100, minimum=1),
        status_subresource=parse_bool(values.get("STATUS_SUBRESOURCE")),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
    )
