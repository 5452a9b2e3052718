"""Reconcile orchestration.

Endpoint and HealthCheck identities flow through a de-duplicating delayed
work queue. Handlers are idempotent and delivery is at-least-once: a failed
retryable reconcile is simply queued again after a fixed delay.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Set, Tuple

from .annotations import (
    HEALTH_CHECK_ID_ANNOTATION,
    HOSTNAME_ANNOTATION,
    annotate,
    build_record_intent,
    health_check_requested,
)
from .healthcheck import HealthCheckProvisioner, build_health_check_resource
from .models import (
    Endpoint,
    ExternalRoute53Error,
    HealthCheck,
    ObjectKey,
    ProviderError,
    RecordIntent,
)
from .route53 import AliasZoneResolver, RecordSynchronizer

logger = logging.getLogger(__name__)

SERVICE_KIND = "Service"
HEALTH_CHECK_KIND = "HealthCheck"

# =============================================================================
# Work Queue
# =============================================================================


class WorkQueue:
    """Delayed queue of object keys. A key is queued at most once."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._heap: List[Tuple[float, int, ObjectKey]] = []
        self._due: Dict[ObjectKey, float] = {}
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._due)

    def __contains__(self, key: ObjectKey) -> bool:
        return key in self._due

    def add(self, key: ObjectKey, delay: float = 0.0) -> None:
        """Queue ``key`` after ``delay`` seconds, keeping the earlier time if already queued."""
        due = self._clock() + max(0.0, delay)
        current = self._due.get(key)
        if current is not None and current <= due:
            return
        self._due[key] = due
        heapq.heappush(self._heap, (due, next(self._counter), key))

    def pop_ready(self) -> Optional[ObjectKey]:
        """Return the next key whose time has come, or None."""
        now = self._clock()
        while self._heap and self._heap[0][0] <= now:
            due, _, key = heapq.heappop(self._heap)
            if self._due.get(key) != due:
                # superseded by an earlier add
                continue
            del self._due[key]
            return key
        return None

    def seconds_until_next(self) -> Optional[float]:
        if not self._due:
            return None
        return max(0.0, min(self._due.values()) - self._clock())


# =============================================================================
# Resource Store Interface
# =============================================================================


class ResourceStore(ABC):
    """Source of truth for endpoints and HealthCheck resources."""

    @abstractmethod
    def list_endpoints(self) -> List[Endpoint]:
        pass

    @abstractmethod
    def get_endpoint(self, namespace: str, name: str) -> Optional[Endpoint]:
        pass

    @abstractmethod
    def update_endpoint(self, endpoint: Endpoint) -> None:
        """Persist the endpoint's annotations."""
        pass

    @abstractmethod
    def finalize_endpoint(self, endpoint: Endpoint) -> None:
        """Let a deleting endpoint go away."""
        pass

    @abstractmethod
    def list_health_checks(self) -> List[HealthCheck]:
        pass

    @abstractmethod
    def get_health_check(self, namespace: str, name: str) -> Optional[HealthCheck]:
        pass

    @abstractmethod
    def create_health_check(self, hc: HealthCheck) -> None:
        pass

    @abstractmethod
    def update_health_check(self, hc: HealthCheck) -> None:
        """Replace the HealthCheck's spec."""
        pass

    @abstractmethod
    def update_health_check_status(self, hc: HealthCheck) -> None:
        pass

    @abstractmethod
    def finalize_health_check(self, hc: HealthCheck) -> None:
        """Let a deleting HealthCheck go away."""
        pass


# =============================================================================
# Controller
# =============================================================================


class Controller:
    """Drives the reconciliation core from queued object keys."""

    def __init__(
        self,
        *,
        store: ResourceStore,
        synchronizer: RecordSynchronizer,
        resolver: AliasZoneResolver,
        provisioner: HealthCheckProvisioner,
        queue: Optional[WorkQueue] = None,
        default_hosted_zone_id: str = "",
        txt_prefix: str = "extr53-",
        requeue_seconds: float = 60.0,
        health_check_poll_seconds: float = 10.0,
        health_check_max_poll_seconds: float = 80.0,
        health_check_max_attempts: int = 6,
        unlink_deleted_health_checks: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.synchronizer = synchronizer
        self.resolver = resolver
        self.provisioner = provisioner
        self.queue = queue or WorkQueue()
        self.default_hosted_zone_id = default_hosted_zone_id
        self.txt_prefix = txt_prefix
        self.requeue_seconds = requeue_seconds
        self.health_check_poll_seconds = health_check_poll_seconds
        self.health_check_max_poll_seconds = health_check_max_poll_seconds
        self.health_check_max_attempts = max(1, health_check_max_attempts)
        self.unlink_deleted_health_checks = unlink_deleted_health_checks
        self._sleep = sleep
        self._attempts: Dict[ObjectKey, int] = {}

    # -------------------------------------------------------------------------
    # Queue handling
    # -------------------------------------------------------------------------

    def enqueue_all(self) -> None:
        """Queue every known endpoint and HealthCheck (a full resync)."""
        for hc in self.store.list_health_checks():
            self.queue.add(hc.key)
        for endpoint in self.store.list_endpoints():
            self.queue.add(endpoint.key)

    def run_pending(self) -> int:
        """Process every key that is due, each at most once per call.

        A key that comes due again during the pass (requeued with no delay)
        is left for the next call. Returns the number processed.
        """
        seen: Set[ObjectKey] = set()
        deferred: List[ObjectKey] = []
        while True:
            key = self.queue.pop_ready()
            if key is None:
                break
            if key in seen:
                deferred.append(key)
                continue
            seen.add(key)
            self.process(key)

        for key in deferred:
            self.queue.add(key)
        return len(seen)

    def process(self, key: ObjectKey) -> bool:
        """Reconcile one key, requeueing it on retryable failure."""
        try:
            self.reconcile(key)
        except ExternalRoute53Error as e:
            if e.retryable:
                self._requeue(key, e)
            else:
                self._attempts.pop(key, None)
                logger.error(
                    f"Reconcile of {key} failed and requires operator action "
                    f"({type(e).__name__}): {e}"
                )
            return False
        except Exception as e:
            logger.error(f"Unexpected error reconciling {key}: {e}", exc_info=True)
            self._requeue(key, e)
            return False

        self._attempts.pop(key, None)
        return True

    def _requeue(self, key: ObjectKey, error: Exception) -> None:
        attempts = self._attempts.get(key, 0) + 1
        self._attempts[key] = attempts
        logger.warning(
            f"Reconcile of {key} failed (attempt {attempts}, {type(error).__name__}): {error}; "
            f"retrying in {self.requeue_seconds:g}s"
        )
        self.queue.add(key, self.requeue_seconds)

    def reconcile(self, key: ObjectKey) -> None:
        if key.kind == SERVICE_KIND:
            self.reconcile_endpoint(key)
        elif key.kind == HEALTH_CHECK_KIND:
            self.reconcile_health_check(key)
        else:
            logger.warning(f"Ignoring unknown object kind {key.kind!r}")

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    def reconcile_endpoint(self, key: ObjectKey) -> None:
        endpoint = self.store.get_endpoint(key.namespace, key.name)
        if endpoint is None:
            logger.debug(f"{key} no longer exists")
            return

        if HOSTNAME_ANNOTATION not in endpoint.annotations:
            if endpoint.deleting:
                self.store.finalize_endpoint(endpoint)
            return

        if endpoint.deleting:
            self.synchronizer.delete(self.record_intent(endpoint))
            self.store.finalize_endpoint(endpoint)
            return

        if health_check_requested(endpoint) and not endpoint.annotations.get(HEALTH_CHECK_ID_ANNOTATION):
            endpoint = self._link_health_check(endpoint)

        self.synchronizer.upsert(self.record_intent(endpoint))

    def record_intent(self, endpoint: Endpoint) -> RecordIntent:
        """Interpret the endpoint and resolve its alias target zone."""
        intent = build_record_intent(
            endpoint,
            default_hosted_zone_id=self.default_hosted_zone_id,
            txt_prefix=self.txt_prefix,
        )
        if intent.is_alias:
            zone_id = self.resolver.resolve(intent.target_hostname)
            if zone_id:
                intent = replace(intent, alias_target_zone_id=zone_id)
        return intent

    def _link_health_check(self, endpoint: Endpoint) -> Endpoint:
        """Provision the endpoint's health check and write its id back.

        Returns the endpoint carrying the id annotation, or the endpoint
        unchanged when it has nothing to health check.
        """
        desired = build_health_check_resource(endpoint)
        if desired is None:
            return endpoint

        existing = self.store.get_health_check(desired.namespace, desired.name)
        if existing is None:
            self.store.create_health_check(desired)
            logger.info(f"Created HealthCheck resource {desired.qualified_name}")
        elif existing.spec != desired.spec:
            self.store.update_health_check(replace(existing, spec=desired.spec))
            logger.info(f"Updated HealthCheck resource {desired.qualified_name}")

        self.reconcile_health_check(desired.key)
        health_check_id = self._wait_for_health_check_id(desired.key)

        linked = annotate(endpoint, {HEALTH_CHECK_ID_ANNOTATION: health_check_id})
        self.store.update_endpoint(linked)
        logger.info(f"Linked health check {health_check_id} to {endpoint.namespace}/{endpoint.name}")
        return linked

    def _wait_for_health_check_id(self, key: ObjectKey) -> str:
        delay = self.health_check_poll_seconds
        for attempt in range(1, self.health_check_max_attempts + 1):
            hc = self.store.get_health_check(key.namespace, key.name)
            if hc is not None and hc.status.id:
                return hc.status.id
            if attempt == self.health_check_max_attempts:
                break
            logger.info(
                f"Waiting {delay:g}s for {key} to be assigned an id "
                f"(attempt {attempt}/{self.health_check_max_attempts})"
            )
            self._sleep(delay)
            delay = min(delay * 2, self.health_check_max_poll_seconds)
        raise ProviderError(f"{key} has no id after {self.health_check_max_attempts} attempts")

    # -------------------------------------------------------------------------
    # Health checks
    # -------------------------------------------------------------------------

    def reconcile_health_check(self, key: ObjectKey) -> None:
        hc = self.store.get_health_check(key.namespace, key.name)
        if hc is None:
            logger.debug(f"{key} no longer exists")
            return

        if hc.deleting:
            freed_id = hc.status.id
            cleared = self.provisioner.delete(hc)
            self.store.update_health_check_status(cleared)
            if freed_id and self.unlink_deleted_health_checks:
                self._unlink_health_check_id(freed_id)
            self.store.finalize_health_check(cleared)
            if freed_id:
                logger.info(f"HealthCheck {hc.qualified_name} removed, freed id {freed_id}")
            return

        if hc.status.id and hc.status.observed_generation == hc.generation:
            logger.debug(f"{key} generation {hc.generation} already provisioned")
            return

        ensured = self.provisioner.ensure(hc)
        self.store.update_health_check_status(
            replace(ensured, status=replace(ensured.status, observed_generation=hc.generation))
        )

    def _unlink_health_check_id(self, health_check_id: str) -> None:
        for endpoint in self.store.list_endpoints():
            if endpoint.annotations.get(HEALTH_CHECK_ID_ANNOTATION) != health_check_id:
                continue
            self.store.update_endpoint(annotate(endpoint, {HEALTH_CHECK_ID_ANNOTATION: None}))
            self.queue.add(endpoint.key)
            logger.info(f"Unlinked health check {health_check_id} from {endpoint.namespace}/{endpoint.name}")
