from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from controller.src.config import LeaderElectionConfig
from controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Lease-based leader election over ``coordination.k8s.io/v1``.

    Only the leader runs informers and workers, so two replicas never
    reconcile the same Application concurrently. Each cycle:

    1. Reads the Lease; creates it (claiming leadership) when missing.
    2. Renews it when this identity already holds it.
    3. Takes it over once another holder has not renewed for
       ``lease_duration_seconds``.
    4. Treats ``409 Conflict`` as a lost race and retries next cycle.

    A leader that cannot renew for ``renew_deadline_seconds`` steps down and
    ``on_stopped_leading`` stops the controller.
    """

    def __init__(self, coordination_api: CoordinationV1Api, settings: LeaderElectionConfig) -> None:
        if settings.renew_deadline_seconds >= settings.lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if settings.retry_period_seconds >= settings.renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.settings = settings
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    @property
    def identity(self) -> str:
        return self.settings.identity

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _read_lease(self) -> V1Lease:
        return self.coordination_api.read_namespaced_lease(
            name=self.settings.lease_name,
            namespace=self.settings.namespace,
        )

    def try_acquire_or_renew(self) -> bool:
        """Run a single acquire-or-renew cycle. Returns True while this replica holds the lease."""
        now = self._now_utc()
        try:
            lease = self._read_lease()
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s: %s", self.settings.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is None or spec.holder_identity in {None, "", self.identity}:
            return self._write_lease(lease, now)

        duration = spec.lease_duration_seconds or self.settings.lease_duration_seconds
        if spec.renew_time is not None:
            renew_time = spec.renew_time
            if renew_time.tzinfo is None:
                renew_time = renew_time.replace(tzinfo=UTC)
            if (now - renew_time).total_seconds() < duration:
                return False

        LOGGER.info(
            "Lease %s held by %s expired; taking over",
            self.settings.lease_name,
            spec.holder_identity,
        )
        return self._write_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.settings.lease_name, namespace=self.settings.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.settings.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(
                namespace=self.settings.namespace,
                body=lease,
            )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s created concurrently, will retry", self.settings.lease_name)
            else:
                LOGGER.warning(
                    "Failed to create lease %s: %s", self.settings.lease_name, exc.reason
                )
            return False
        LOGGER.info("Created leader lease %s", self.settings.lease_name)
        return True

    def _write_lease(self, lease: V1Lease, now: datetime) -> bool:
        """Renew or take over ``lease``; ``acquireTime`` changes only on a new holder."""
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        if lease.spec.acquire_time is None or lease.spec.holder_identity != self.identity:
            lease.spec.acquire_time = now
        lease.spec.holder_identity = self.identity
        lease.spec.renew_time = now
        lease.spec.lease_duration_seconds = self.settings.lease_duration_seconds
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.settings.lease_name,
                namespace=self.settings.namespace,
                body=lease,
            )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s update conflict, will retry", self.settings.lease_name)
            else:
                LOGGER.warning(
                    "Failed to update lease %s: %s", self.settings.lease_name, exc.reason
                )
            return False
        return True

    def release(self) -> None:
        """Clear ``holderIdentity`` so another replica can take over without waiting for expiry."""
        try:
            lease = self._read_lease()
            if lease.spec is not None and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.settings.lease_name,
                    namespace=self.settings.namespace,
                    body=lease,
                )
                LOGGER.info("Released leader lease %s", self.settings.lease_name)
        except Exception:
            LOGGER.warning(
                "Failed to release leader lease %s", self.settings.lease_name, exc_info=True
            )

    def _step_down(self, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Block until ``stop_event`` is set, invoking the callbacks on leadership changes."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.settings.namespace,
            self.settings.lease_name,
            self.identity,
        )
        waiting_since = time.monotonic()
        last_renewed = waiting_since
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                held = False

            if held:
                last_renewed = time.monotonic()
                if not self._is_leader:
                    self._is_leader = True
                    LOGGER.info("Became leader (identity=%s)", self.identity)
                    METRICS.leader_state.set(1)
                    METRICS.leader_transitions_total.labels(transition="acquired").inc()
                    METRICS.leader_acquire_latency_seconds.observe(last_renewed - waiting_since)
                    on_started_leading()
            elif self._is_leader:
                since_renewal = time.monotonic() - last_renewed
                if since_renewal < self.settings.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed; keeping leadership for up to %ss (elapsed %.2fs)",
                        self.settings.renew_deadline_seconds,
                        since_renewal,
                    )
                else:
                    LOGGER.warning("Lost leader lease after %.2fs without renewal", since_renewal)
                    waiting_since = time.monotonic()
                    self._step_down(on_stopped_leading)
            stop_event.wait(timeout=self.settings.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._step_down(on_stopped_leading)
