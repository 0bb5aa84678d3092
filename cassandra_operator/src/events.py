from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)

from cassandra_operator.src.metrics import METRICS
from cassandra_operator.src.objects import CassandraCluster

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"
DEFAULT_COMPONENT = "cassandra-controller"


def utc_now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def event_name(obj: CassandraCluster, event_type: str, reason: str, message: str) -> str:
    """Stable Event name for one (object, type, reason, message) combination."""
    fingerprint = "\x00".join(
        (obj.metadata.uid or obj.metadata.name, event_type, reason, message)
    )
    digest = hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()[:16]
    return f"{obj.metadata.name}.{digest}"


class EventRecorder:
    """Record Kubernetes Events against a ``CassandraCluster``.

    Events are the user-visible side channel of a reconciliation
    (``kubectl describe cassandracluster``).  Each one is also logged.

    Repeats of the same event are folded into one Event object: the first
    occurrence is created under a deterministic name, later ones bump its
    ``count`` and ``lastTimestamp``.  Posting is best-effort: an API failure
    is logged and never fails the reconciliation that emitted it.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        component: str = DEFAULT_COMPONENT,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn
        # Last count written per (namespace, event name).
        self._counts: dict[tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def event(self, obj: CassandraCluster, event_type: str, reason: str, message: str) -> None:
        namespace = obj.metadata.namespace or "default"
        self.logger.info(
            "Event(%s/%s): type=%s reason=%s message=%s",
            namespace,
            obj.metadata.name,
            event_type,
            reason,
            message,
        )
        METRICS.events_total.labels(type=event_type, reason=reason).inc()

        name = event_name(obj, event_type, reason, message)
        try:
            count = self._post(obj, namespace, name, event_type, reason, message)
        except ApiException:
            self.logger.exception(
                "Failed to record %s event %s for %s/%s",
                event_type,
                reason,
                namespace,
                obj.metadata.name,
            )
            return
        with self._lock:
            self._counts[(namespace, name)] = count

    def _post(
        self,
        obj: CassandraCluster,
        namespace: str,
        name: str,
        event_type: str,
        reason: str,
        message: str,
    ) -> int:
        now = self.now_fn()
        with self._lock:
            count = self._counts.get((namespace, name))

        if count is None:
            try:
                self.core_api.create_namespaced_event(
                    namespace=namespace,
                    body=self._new_event(obj, namespace, name, event_type, reason, message, now),
                )
                return 1
            except ApiException as exc:
                if exc.status != 409:
                    raise
            # Recorded by an earlier process; continue from the stored count.
            existing = self.core_api.read_namespaced_event(name=name, namespace=namespace)
            count = existing.count or 1

        try:
            self.core_api.patch_namespaced_event(
                name=name,
                namespace=namespace,
                body={"count": count + 1, "lastTimestamp": now},
            )
        except ApiException as exc:
            if exc.status != 404:
                raise
            # The Event expired on the server; start a new series.
            self.core_api.create_namespaced_event(
                namespace=namespace,
                body=self._new_event(obj, namespace, name, event_type, reason, message, now),
            )
            return 1
        return count + 1

    def _new_event(
        self,
        obj: CassandraCluster,
        namespace: str,
        name: str,
        event_type: str,
        reason: str,
        message: str,
        now: datetime,
    ) -> CoreV1Event:
        return CoreV1Event(
            metadata=V1ObjectMeta(name=name, namespace=namespace),
            involved_object=V1ObjectReference(
                api_version=obj.api_version,
                kind=obj.kind,
                name=obj.metadata.name,
                namespace=obj.metadata.namespace or None,
                uid=obj.metadata.uid or None,
                resource_version=obj.metadata.resource_version,
            ),
            type=event_type,
            reason=reason,
            message=message,
            source=V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
