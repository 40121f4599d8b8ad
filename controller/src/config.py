from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from controller.src.errors import ConfigError


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool
    namespace: str
    lease_name: str
    identity: str
    lease_duration_seconds: int
    renew_deadline_seconds: int
    retry_period_seconds: int
    stop_timeout_seconds: int


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace to watch; empty string watches every namespace.
        workers: Number of reconcile worker threads.
        max_retries: Requeues before a key is dropped (a key gets ``max_retries + 1`` attempts).
        retry_base_delay_seconds: Backoff delay after the first failure.
        retry_max_delay_seconds: Upper bound for the per-key backoff delay.
        cache_sync_timeout_seconds: Startup barrier for the initial list of both caches.
        resync_period_seconds: Interval at which informers replay their cache (0 = off).
        health_port: Port of the health/metrics HTTP server.
        leader_election: Lease settings; ``enabled=False`` runs unconditionally.
    """

    namespace: str
    workers: int
    max_retries: int
    retry_base_delay_seconds: float
    retry_max_delay_seconds: float
    cache_sync_timeout_seconds: int
    resync_period_seconds: int
    health_port: int
    leader_election: LeaderElectionConfig


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
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


def default_identity(env: Mapping[str, str] | None = None) -> str:
    """Return a unique identity for this replica, defaulting to the pod name.

    In Kubernetes the ``HOSTNAME`` env var is set to the pod name, giving each
    replica a stable identity for lease ownership.
    """
    values = env if env is not None else os.environ
    return values.get("HOSTNAME", values.get("POD_NAME", "unknown"))


def _load_leader_election(values: Mapping[str, str], namespace: str) -> LeaderElectionConfig:
    lease_duration_seconds = env_int(
        "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, env=values
    )
    renew_deadline_seconds = env_int(
        "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, env=values
    )
    retry_period_seconds = env_int(
        "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1, env=values
    )
    if renew_deadline_seconds >= lease_duration_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period_seconds >= renew_deadline_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    return LeaderElectionConfig(
        enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        namespace=values.get("LEADER_ELECTION_NAMESPACE") or namespace or "default",
        lease_name=values.get("LEADER_ELECTION_LEASE_NAME", "application-controller-leader"),
        identity=values.get("LEADER_ELECTION_IDENTITY") or default_identity(values),
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
        # Must exceed the watch timeout so a handoff cannot leave two
        # controllers reconciling at once.
        stop_timeout_seconds=env_int(
            "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1, env=values
        ),
    )


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``             Namespace to watch (all namespaces).
        ``WORKERS``                     Reconcile worker threads (``2``).
        ``MAX_RETRIES``                 Requeues before a key is dropped (``15``).
        ``RETRY_BASE_DELAY_MS``         First retry delay in milliseconds (``5``).
        ``RETRY_MAX_DELAY_SECONDS``     Retry delay cap (``1000``).
        ``CACHE_SYNC_TIMEOUT_SECONDS``  Startup cache sync barrier (``60``).
        ``RESYNC_PERIOD_SECONDS``       Informer resync interval (``0``, disabled).
        ``HEALTH_PORT``                 Health/metrics port (``8080``).
        ``LEADER_ELECTION_*``           Lease settings, see :class:`LeaderElectionConfig`.
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "").strip()
    if "/" in namespace:
        raise ConfigError(f"WATCH_NAMESPACE must be a namespace name, got: {namespace!r}")

    base_delay_ms = env_int("RETRY_BASE_DELAY_MS", 5, minimum=1, env=values)
    max_delay_seconds = env_int("RETRY_MAX_DELAY_SECONDS", 1000, minimum=1, env=values)
    if base_delay_ms / 1000.0 > max_delay_seconds:
        raise ConfigError("RETRY_BASE_DELAY_MS must not exceed RETRY_MAX_DELAY_SECONDS")

    return ControllerConfig(
        namespace=namespace,
        workers=env_int("WORKERS", 2, minimum=1, env=values),
        max_retries=env_int("MAX_RETRIES", 15, minimum=0, env=values),
        retry_base_delay_seconds=base_delay_ms / 1000.0,
        retry_max_delay_seconds=float(max_delay_seconds),
        cache_sync_timeout_seconds=env_int("CACHE_SYNC_TIMEOUT_SECONDS", 60, minimum=1, env=values),
        resync_period_seconds=env_int("RESYNC_PERIOD_SECONDS", 0, minimum=0, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        leader_election=_load_leader_election(values, namespace),
    )
