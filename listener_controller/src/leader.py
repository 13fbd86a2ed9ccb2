from __future__ import annotations

import logging
import os
import socket
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from listener_controller.src.config import ConfigError, env_int, parse_bool
from listener_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

DEFAULT_LEASE_NAME = "eventlistener-controller-leader"


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool = True
    namespace: str = "tekton-pipelines"
    lease_name: str = DEFAULT_LEASE_NAME
    identity: str = ""
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    stop_timeout_seconds: int = 45


def load_leader_election_config(
    namespace: str, env: Mapping[str, str] | None = None
) -> LeaderElectionConfig:
    """Read ``LEADER_ELECTION_*`` settings; the lease lives in *namespace*."""
    values = env if env is not None else os.environ
    defaults = LeaderElectionConfig()
    lease_duration = env_int(
        values, "LEADER_ELECTION_LEASE_DURATION_SECONDS", defaults.lease_duration_seconds, minimum=1
    )
    renew_deadline = env_int(
        values, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", defaults.renew_deadline_seconds, minimum=1
    )
    retry_period = env_int(
        values, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", defaults.retry_period_seconds, minimum=1
    )
    if renew_deadline >= lease_duration:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period >= renew_deadline:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )
    return LeaderElectionConfig(
        enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
        namespace=namespace,
        lease_name=values.get("LEADER_ELECTION_LEASE_NAME", defaults.lease_name),
        identity=values.get("LEADER_ELECTION_IDENTITY") or default_identity(values),
        lease_duration_seconds=lease_duration,
        renew_deadline_seconds=renew_deadline,
        retry_period_seconds=retry_period,
        stop_timeout_seconds=env_int(
            values,
            "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS",
            defaults.stop_timeout_seconds,
            minimum=1,
        ),
    )


def default_identity(env: Mapping[str, str] | None = None) -> str:
    """Pod name when running in a cluster, else the host name."""
    values = env if env is not None else os.environ
    return values.get("POD_NAME") or values.get("HOSTNAME") or socket.gethostname()


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class LeaseLeaderElector:
    """Single-leader election over a ``coordination.k8s.io/v1`` Lease.

    Each cycle reads the Lease and then either creates it, renews it (we
    hold it), takes it over (the holder let ``renewTime +
    leaseDurationSeconds`` pass) or backs off. A ``409`` from a racing
    replica just means "try again next cycle". Leadership survives failed
    renewals until ``renew_deadline_seconds`` have passed since the last
    good one.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if lease_duration_seconds < 1 or renew_deadline_seconds < 1:
            raise ValueError("lease duration and renew deadline must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._is_leader = False

    @classmethod
    def from_config(
        cls, coordination_api: CoordinationV1Api, config: LeaderElectionConfig
    ) -> LeaseLeaderElector:
        return cls(
            coordination_api=coordination_api,
            namespace=config.namespace,
            lease_name=config.lease_name,
            identity=config.identity,
            lease_duration_seconds=config.lease_duration_seconds,
            renew_deadline_seconds=config.renew_deadline_seconds,
            retry_period_seconds=config.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def try_acquire_or_renew(self) -> bool:
        now = self._clock()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create(now)
            LOGGER.warning("Failed to read lease %s/%s: %s", self.namespace, self.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is not None and spec.holder_identity and spec.holder_identity != self.identity:
            duration = spec.lease_duration_seconds or self.lease_duration_seconds
            if spec.renew_time is not None:
                if (now - _as_utc(spec.renew_time)).total_seconds() < duration:
                    return False
            LOGGER.info("Lease %s held by %s expired; taking over", self.lease_name, spec.holder_identity)
        return self._write(lease, now)

    def _create(self, now: datetime) -> bool:
        body = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=body)
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        LOGGER.info("Created leader lease %s/%s", self.namespace, self.lease_name)
        return True

    def _write(self, lease: V1Lease, now: datetime) -> bool:
        spec = lease.spec or V1LeaseSpec()
        if spec.holder_identity != self.identity or spec.acquire_time is None:
            spec.acquire_time = now
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        lease.spec = spec
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Give the lease up so another replica can take over immediately."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
        except ApiException as exc:
            # The lease expires on its own; a failed release only delays takeover.
            LOGGER.warning("Failed to release lease %s: %s", self.lease_name, exc.reason)
            return
        LOGGER.info("Released leader lease %s", self.lease_name)

    def _became_leader(self, waited_since: float) -> None:
        self._is_leader = True
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        METRICS.leader_acquire_latency_seconds.observe(time.monotonic() - waited_since)
        LOGGER.info("Became leader (identity=%s)", self.identity)

    def _lost_leadership(self) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign until *stop_event* is set, firing the callbacks on transitions."""
        LOGGER.info("Starting leader election on %s (identity=%s)", self.lease_name, self.identity)
        METRICS.leader_state.set(0)
        waited_since = time.monotonic()
        last_renewed = waited_since

        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Leader election cycle failed")
                held = False

            if held:
                last_renewed = time.monotonic()
                if not self._is_leader:
                    self._became_leader(waited_since)
                    on_started_leading()
            elif self._is_leader:
                since_renewal = time.monotonic() - last_renewed
                if since_renewal >= self.renew_deadline_seconds:
                    LOGGER.warning("Lost leader lease after %.2fs without renewal", since_renewal)
                    self._lost_leadership()
                    waited_since = time.monotonic()
                    on_stopped_leading()
                else:
                    LOGGER.warning(
                        "Lease renewal failed; keeping leadership for up to %ss (%.2fs elapsed)",
                        self.renew_deadline_seconds,
                        since_renewal,
                    )
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._lost_leadership()
            on_stopped_leading()
