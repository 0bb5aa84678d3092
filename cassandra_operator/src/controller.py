from __future__ import annotations

import logging
import threading
import time
from typing import Any

from kubernetes.client import AppsV1Api, CoreV1Api, CustomObjectsApi

from cassandra_operator.src.config import ControllerConfig
from cassandra_operator.src.events import EVENT_TYPE_NORMAL, EVENT_TYPE_WARNING, EventRecorder
from cassandra_operator.src.informer import (
    Informer,
    Live,
    meta_namespace_key,
    split_meta_namespace_key,
    wait_for_cache_sync,
)
from cassandra_operator.src.kube import CassandraClusterClient, ServiceManager, StatefulSetManager
from cassandra_operator.src.metrics import METRICS
from cassandra_operator.src.objects import KIND, CassandraCluster
from cassandra_operator.src.ownership import OwnershipRouter, is_controlled_by
from cassandra_operator.src.resources import (
    new_headless_service,
    new_headless_service_unready,
    new_stateful_set,
)
from cassandra_operator.src.workqueue import RateLimitingQueue, default_controller_rate_limiter

CONTROLLER_AGENT_NAME = "cassandra-controller"

# Event reasons
SUCCESS_SYNCED = "Synced"
ERR_RESOURCE_EXISTS = "ErrResourceExists"

MESSAGE_RESOURCE_EXISTS = 'Resource "%s" already exists and is not managed by CassandraCluster'
MESSAGE_RESOURCE_SYNCED = "CassandraCluster synced successfully"


class ResourceConflictError(Exception):
    """A derived resource with the expected name exists but is not controlled by the cluster."""


class InformerExitedError(RuntimeError):
    """An informer thread ended while the controller was still running."""


def _current_replicas(statefulset: Any) -> int:
    return getattr(getattr(statefulset, "status", None), "current_replicas", None) or 0


class CassandraClusterController:
    """Drives each ``CassandraCluster`` toward two headless Services and a StatefulSet.

    Change notifications from two informers are reduced to ``namespace/name``
    keys of clusters and fed into a :class:`RateLimitingQueue`:

    * cluster add/update events enqueue the cluster itself; periodic resyncs
      arrive as updates and give every cluster a regular level-triggered pass;
    * StatefulSet events go through the :class:`OwnershipRouter`, which
      enqueues the owning cluster.  Resync updates (unchanged
      ``resourceVersion``) are dropped.

    A fixed pool of worker threads drains the queue and runs
    :meth:`sync_handler` once per key.  The queue guarantees a key is held
    by at most one worker at a time; an event that arrives mid-sync
    re-queues the key for a follow-up pass.

    Outcome handling per key:
        success                ``forget`` (reset backoff).
        ``ResourceConflictError`` ``forget`` without requeue; a Warning Event
                               tells the user which resource is in the way.
        any other exception    logged and requeued with ``add_rate_limited``.
    """

    def __init__(
        self,
        cluster_client: CassandraClusterClient,
        statefulsets: StatefulSetManager,
        services: ServiceManager,
        cluster_informer: Informer,
        statefulset_informer: Informer,
        recorder: EventRecorder,
        queue: RateLimitingQueue | None = None,
        logger: logging.Logger | None = None,
        informer_check_interval_seconds: float = 1.0,
    ) -> None:
        self.cluster_client = cluster_client
        self.statefulsets = statefulsets
        self.services = services
        self.cluster_informer = cluster_informer
        self.statefulset_informer = statefulset_informer
        self.recorder = recorder
        self.queue = queue or RateLimitingQueue(name="CassandraClusters")
        self.logger = logger or logging.getLogger(__name__)
        self.informer_check_interval_seconds = informer_check_interval_seconds

        # Listers: read-only views of the informer caches.
        self.clusters = cluster_informer.store
        self.statefulsets_lister = statefulset_informer.store

        self.router = OwnershipRouter(
            owner_kind=KIND,
            owners=self.clusters,
            enqueue=self.enqueue_cluster,
            logger=self.logger,
        )

        self.logger.info("Setting up event handlers")
        cluster_informer.add_event_handler(
            on_add=self.enqueue_cluster,
            on_update=self._on_cluster_update,
        )
        statefulset_informer.add_event_handler(
            on_add=self._on_statefulset_add,
            on_update=self._on_statefulset_update,
            on_delete=self.router.handle_object,
        )

        self.ready = threading.Event()
        self._stop_event: threading.Event | None = None
        self._worker_threads: list[threading.Thread] = []
        self._informer_threads: list[threading.Thread] = []

    def enqueue_cluster(self, obj: Any) -> None:
        try:
            key = meta_namespace_key(obj)
        except ValueError:
            self.logger.error("Cannot enqueue object without a name: %r", obj)
            return
        self.queue.add(key)

    def _on_cluster_update(self, old: Any, new: Any) -> None:
        self.enqueue_cluster(new)

    def _on_statefulset_add(self, obj: Any) -> None:
        self.router.handle_object(Live(obj))

    def _on_statefulset_update(self, old: Any, new: Any) -> None:
        old_version = getattr(getattr(old, "metadata", None), "resource_version", None)
        new_version = getattr(getattr(new, "metadata", None), "resource_version", None)
        if old_version is not None and old_version == new_version:
            # Periodic resync re-delivers unchanged StatefulSets; two
            # different versions always have different resourceVersions.
            return
        self.router.handle_object(Live(new))

    def sync_handler(self, key: str) -> bool:
        """Converge the cluster named by *key* and update its status.

        Returns ``True`` when a full pass completed and ``False`` when the key
        was dropped without work (malformed key, cluster gone, or spec
        missing ``statefulsetName``).  Those cases are not retried: a later
        watch event re-triggers the key once the condition changes.

        Raises :class:`ResourceConflictError` when the StatefulSet name is
        taken by an object this cluster does not control, and propagates
        API errors so the caller can requeue.
        """
        try:
            namespace, name = split_meta_namespace_key(key)
        except ValueError:
            self.logger.error("Invalid resource key: %s", key)
            return False

        cluster: CassandraCluster | None = self.clusters.get(namespace, name)
        if cluster is None:
            self.logger.info("CassandraCluster %r in work queue no longer exists", key)
            return False

        statefulset_name = cluster.spec.statefulset_name
        if not statefulset_name:
            self.logger.error("%s: statefulset name must be specified", key)
            return False

        # Each step must succeed before the next one starts.
        self.services.get_or_create(namespace, new_headless_service_unready(cluster))
        self.services.get_or_create(namespace, new_headless_service(cluster))

        statefulset = self.statefulsets_lister.get(namespace, statefulset_name)
        if statefulset is None:
            statefulset = self.statefulsets.create(namespace, new_stateful_set(cluster))

        if not is_controlled_by(statefulset, cluster):
            message = MESSAGE_RESOURCE_EXISTS % statefulset_name
            self.recorder.event(cluster, EVENT_TYPE_WARNING, ERR_RESOURCE_EXISTS, message)
            raise ResourceConflictError(message)

        desired_replicas = cluster.spec.replicas
        if desired_replicas is not None and desired_replicas != statefulset.spec.replicas:
            self.logger.info(
                "CassandraCluster %s replicas: %d, statefulset replicas: %s",
                key,
                desired_replicas,
                statefulset.spec.replicas,
            )
            replacement = new_stateful_set(cluster)
            replacement.metadata.resource_version = statefulset.metadata.resource_version
            statefulset = self.statefulsets.update(namespace, replacement)

        self.update_cluster_status(cluster, statefulset)

        self.recorder.event(cluster, EVENT_TYPE_NORMAL, SUCCESS_SYNCED, MESSAGE_RESOURCE_SYNCED)
        return True

    def update_cluster_status(self, cluster: CassandraCluster, statefulset: Any) -> None:
        current_replicas = _current_replicas(statefulset)
        if cluster.status.current_replicas == current_replicas:
            return

        # Never modify objects from the store; it is a shared, read-only cache.
        cluster_copy = cluster.deep_copy()
        cluster_copy.status.current_replicas = current_replicas
        self.cluster_client.update_status(cluster_copy)

    def _process(self, key: str) -> None:
        started = time.monotonic()
        try:
            synced = self.sync_handler(key)
        except ResourceConflictError as exc:
            # Requeueing cannot help until the conflicting object is removed.
            self.queue.forget(key)
            METRICS.reconcile_total.labels(result="conflict").inc()
            self.logger.warning("Not requeuing %r: %s", key, exc)
            return
        except Exception:
            METRICS.reconcile_total.labels(result="error").inc()
            self.logger.exception(
                "Error syncing %r; requeuing (attempt %d)",
                key,
                self.queue.num_requeues(key) + 1,
            )
            self.queue.add_rate_limited(key)
            return
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

        self.queue.forget(key)
        if synced:
            METRICS.reconcile_total.labels(result="success").inc()
            self.logger.info("Successfully synced %r", key)
        else:
            METRICS.reconcile_total.labels(result="skipped").inc()

    def process_next_work_item(self) -> bool:
        """Handle one key from the queue.  Returns False once the queue has shut down."""
        key, shutting_down = self.queue.get()
        if shutting_down or key is None:
            return False

        try:
            self._process(key)
        finally:
            self.queue.done(key)
        return True

    def run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def informers_alive(self) -> bool:
        return all(thread.is_alive() for thread in self._informer_threads)

    def workers_alive(self) -> bool:
        """False once a worker or informer thread has exited while the controller is still running."""
        if self._stop_event is not None and self._stop_event.is_set():
            return True
        return self.informers_alive() and all(
            thread.is_alive() for thread in self._worker_threads
        )

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    def run(self, workers: int = 2, stop_event: threading.Event | None = None) -> None:
        """Start informers, wait for their caches, and run *workers* until stopped.

        Blocks until *stop_event* is set (or :meth:`request_stop` is called),
        then shuts the queue down and waits for in-flight syncs to finish.

        Raises :class:`InformerExitedError` if an informer thread ends on its
        own (API access denied), so the process exits and is restarted
        instead of serving from a cache that no longer updates.
        """
        stop = stop_event or threading.Event()
        self._stop_event = stop
        informer_stop = threading.Event()
        self._worker_threads = []

        self.logger.info("Starting CassandraCluster controller")
        self._informer_threads = [
            self.cluster_informer.start(informer_stop),
            self.statefulset_informer.start(informer_stop),
        ]
        try:
            self.logger.info("Waiting for informer caches to sync")
            if not wait_for_cache_sync(
                stop,
                self.cluster_informer.has_synced,
                self.statefulset_informer.has_synced,
                alive=self.informers_alive,
            ):
                if not stop.is_set():
                    self._raise_informer_exited()
                self.logger.warning("Stopped before informer caches synced")
                return

            self.logger.info("Starting %d workers", workers)
            for index in range(workers):
                thread = threading.Thread(
                    target=self.run_worker,
                    name=f"cassandra-worker-{index}",
                    daemon=True,
                )
                thread.start()
                self._worker_threads.append(thread)

            self.ready.set()
            self.logger.info("Started workers")
            while not stop.wait(timeout=self.informer_check_interval_seconds):
                if not self.informers_alive():
                    self._raise_informer_exited()
            self.logger.info("Shutting down workers")
        finally:
            self.ready.clear()
            self.queue.shut_down()
            informer_stop.set()
            self.cluster_informer.request_stop()
            self.statefulset_informer.request_stop()
            for thread in self._worker_threads:
                thread.join()

    def _raise_informer_exited(self) -> None:
        exited = [thread.name for thread in self._informer_threads if not thread.is_alive()]
        self.logger.error("Informer stopped unexpectedly: %s", ", ".join(exited))
        raise InformerExitedError(f"informer thread(s) exited: {', '.join(exited)}")


def build_controller(
    config: ControllerConfig,
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    custom_api: CustomObjectsApi,
) -> CassandraClusterController:
    """Wire informers, façades, queue and recorder for *config*."""
    cluster_client = CassandraClusterClient(
        custom_api,
        namespace=config.namespace,
        status_subresource=config.status_subresource,
    )
    cluster_list_fn, cluster_list_args = cluster_client.list_source()
    cluster_informer = Informer(
        "cassandraclusters",
        cluster_list_fn,
        list_args=cluster_list_args,
        decode=CassandraCluster.from_dict,
        resync_period_seconds=config.resync_period_seconds,
    )

    if config.namespace:
        statefulset_informer = Informer(
            "statefulsets",
            apps_api.list_namespaced_stateful_set,
            list_kwargs={"namespace": config.namespace},
            resync_period_seconds=config.resync_period_seconds,
        )
    else:
        statefulset_informer = Informer(
            "statefulsets",
            apps_api.list_stateful_set_for_all_namespaces,
            resync_period_seconds=config.resync_period_seconds,
        )

    queue = RateLimitingQueue(
        default_controller_rate_limiter(
            base_delay=config.retry_base_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
            qps=config.queue_qps,
            burst=config.queue_burst,
        ),
        name="CassandraClusters",
    )

    return CassandraClusterController(
        cluster_client=cluster_client,
        statefulsets=StatefulSetManager(apps_api),
        services=ServiceManager(core_api),
        cluster_informer=cluster_informer,
        statefulset_informer=statefulset_informer,
        recorder=EventRecorder(core_api, component=CONTROLLER_AGENT_NAME),
        queue=queue,
    )
