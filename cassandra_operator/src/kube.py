from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    AppsV1Api,
    CoreV1Api,
    CustomObjectsApi,
    V1Service,
    V1StatefulSet,
)
from kubernetes.config.config_exception import ConfigException

from cassandra_operator.src.objects import API_GROUP, API_VERSION, PLURAL, CassandraCluster

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api, CustomObjectsApi]:
    """Return CoreV1, AppsV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api(), client.CustomObjectsApi()


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


class ResourceManager:
    """Idempotent CRUD façade over one namespaced resource kind.

    ``get`` returns ``None`` for a missing object instead of raising; every
    other API failure propagates as :class:`ApiException` so the caller can
    requeue.
    """

    kind = "Resource"

    def __init__(
        self,
        read_fn: Callable[..., Any],
        create_fn: Callable[..., Any],
        replace_fn: Callable[..., Any],
        logger: logging.Logger | None = None,
    ) -> None:
        self._read = read_fn
        self._create = create_fn
        self._replace = replace_fn
        self.logger = logger or LOGGER

    def get(self, namespace: str, name: str) -> Any | None:
        try:
            return self._read(name=name, namespace=namespace)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def create(self, namespace: str, obj: Any) -> Any:
        created = self._create(namespace=namespace, body=obj)
        self.logger.info("%s %s/%s created", self.kind, namespace, obj.metadata.name)
        return created

    def update(self, namespace: str, obj: Any) -> Any:
        """Replace the stored object with *obj*.

        *obj* should carry the stored ``resourceVersion``; a stale version is
        rejected by the API server with ``409 Conflict``.
        """
        updated = self._replace(name=obj.metadata.name, namespace=namespace, body=obj)
        self.logger.info("%s %s/%s updated", self.kind, namespace, obj.metadata.name)
        return updated

    def create_or_update(self, namespace: str, obj: Any) -> Any:
        stored = self.get(namespace, obj.metadata.name)
        if stored is None:
            return self.create(namespace, obj)

        # Our spec is the only valid one: replace the stored state at its
        # current version.
        obj.metadata.resource_version = stored.metadata.resource_version
        return self.update(namespace, obj)

    def get_or_create(self, namespace: str, obj: Any) -> Any:
        stored = self.get(namespace, obj.metadata.name)
        if stored is not None:
            return stored
        return self.create(namespace, obj)


class StatefulSetManager(ResourceManager):
    kind = "StatefulSet"

    def __init__(self, apps_api: AppsV1Api, logger: logging.Logger | None = None) -> None:
        super().__init__(
            read_fn=apps_api.read_namespaced_stateful_set,
            create_fn=apps_api.create_namespaced_stateful_set,
            replace_fn=apps_api.replace_namespaced_stateful_set,
            logger=logger,
        )

    def get(self, namespace: str, name: str) -> V1StatefulSet | None:
        return super().get(namespace, name)


class ServiceManager(ResourceManager):
    kind = "Service"

    def __init__(self, core_api: CoreV1Api, logger: logging.Logger | None = None) -> None:
        super().__init__(
            read_fn=core_api.read_namespaced_service,
            create_fn=core_api.create_namespaced_service,
            replace_fn=core_api.replace_namespaced_service,
            logger=logger,
        )

    def get(self, namespace: str, name: str) -> V1Service | None:
        return super().get(namespace, name)


class CassandraClusterClient:
    """Access to ``CassandraCluster`` custom objects.

    The custom-objects API speaks plain dicts; this client decodes them into
    :class:`CassandraCluster`.  With ``status_subresource=False`` status is
    persisted by replacing the whole object, which works whether or not the
    CRD enables the ``/status`` subresource.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        namespace: str = "",
        status_subresource: bool = False,
    ) -> None:
        self.custom_api = custom_api
        self.namespace = namespace
        self.status_subresource = status_subresource

    def list_source(self) -> tuple[Callable[..., Any], tuple[Any, ...]]:
        """Return the list function and positional args an informer watches with."""
        if self.namespace:
            return (
                self.custom_api.list_namespaced_custom_object,
                (API_GROUP, API_VERSION, self.namespace, PLURAL),
            )
        return self.custom_api.list_cluster_custom_object, (API_GROUP, API_VERSION, PLURAL)

    def get(self, namespace: str, name: str) -> CassandraCluster | None:
        try:
            body = self.custom_api.get_namespaced_custom_object(
                API_GROUP, API_VERSION, namespace, PLURAL, name
            )
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise
        return CassandraCluster.from_dict(body)

    def list(self) -> list[CassandraCluster]:
        list_fn, args = self.list_source()
        listing = list_fn(*args)
        return [CassandraCluster.from_dict(item) for item in listing.get("items") or []]

    def update(self, cluster: CassandraCluster) -> CassandraCluster:
        body = self.custom_api.replace_namespaced_custom_object(
            API_GROUP,
            API_VERSION,
            cluster.metadata.namespace,
            PLURAL,
            cluster.metadata.name,
            cluster.to_dict(),
        )
        return CassandraCluster.from_dict(body)

    def update_status(self, cluster: CassandraCluster) -> CassandraCluster:
        if not self.status_subresource:
            return self.update(cluster)
        body = self.custom_api.replace_namespaced_custom_object_status(
            API_GROUP,
            API_VERSION,
            cluster.metadata.namespace,
            PLURAL,
            cluster.metadata.name,
            cluster.to_dict(),
        )
        return CassandraCluster.from_dict(body)
