from __future__ import annotations

from kubernetes.client import (
    V1Capabilities,
    V1Container,
    V1ContainerPort,
    V1EnvVar,
    V1EnvVarSource,
    V1ExecAction,
    V1LabelSelector,
    V1Lifecycle,
    V1LifecycleHandler,
    V1ObjectFieldSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Probe,
    V1SecurityContext,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1StatefulSet,
    V1StatefulSetSpec,
)

from cassandra_operator.src.objects import CassandraCluster
from cassandra_operator.src.ownership import new_controller_ref

CASSANDRA_IMAGE = "gcr.io/google-samples/cassandra:v13"
CQL_PORT = 9042
INTRA_NODE_PORT = 7001
JMX_PORT = 7099
TOLERATE_UNREADY_ANNOTATION = "service.alpha.kubernetes.io/tolerate-unready-endpoints"


def cluster_labels(cluster: CassandraCluster) -> dict[str, str]:
    return {"app": "cassandra", "controller": cluster.metadata.name}


def unready_service_name(cluster: CassandraCluster) -> str:
    return f"{cluster.spec.statefulset_name}-unready"


def seed_address(cluster: CassandraCluster) -> str:
    """DNS name of the first pod, resolvable before it is ready through the unready service."""
    name = cluster.spec.statefulset_name
    return f"{name}-0.{unready_service_name(cluster)}.{cluster.metadata.namespace}.svc.cluster.local"


def new_stateful_set(cluster: CassandraCluster) -> V1StatefulSet:
    """Build the desired StatefulSet for *cluster*, owned by it.

    The result is used both to create the StatefulSet and as the full
    replacement body when its replica count drifts, so out-of-band template
    edits are reverted on the next update.
    """
    labels = cluster_labels(cluster)
    container = V1Container(
        name="cassandra",
        image=CASSANDRA_IMAGE,
        env=[
            V1EnvVar(name="CASSANDRA_SEEDS", value=seed_address(cluster)),
            V1EnvVar(name="MAX_HEAP_SIZE", value="512M"),
            V1EnvVar(name="HEAP_NEWSIZE", value="100M"),
            V1EnvVar(
                name="POD_IP",
                value_from=V1EnvVarSource(
                    field_ref=V1ObjectFieldSelector(field_path="status.podIP")
                ),
            ),
        ],
        ports=[
            V1ContainerPort(name="cql", container_port=CQL_PORT),
            V1ContainerPort(name="intra-node", container_port=INTRA_NODE_PORT),
            V1ContainerPort(name="jmx", container_port=JMX_PORT),
        ],
        security_context=V1SecurityContext(capabilities=V1Capabilities(add=["IPC_LOCK"])),
        readiness_probe=V1Probe(
            _exec=V1ExecAction(command=["/bin/bash", "-c", "/ready-probe.sh"]),
            initial_delay_seconds=15,
            timeout_seconds=5,
        ),
        lifecycle=V1Lifecycle(
            pre_stop=V1LifecycleHandler(
                _exec=V1ExecAction(command=["/bin/sh", "-c", "nodetool drain"])
            )
        ),
    )
    return V1StatefulSet(
        api_version="apps/v1",
        kind="StatefulSet",
        metadata=V1ObjectMeta(
            name=cluster.spec.statefulset_name,
            namespace=cluster.metadata.namespace,
            owner_references=[new_controller_ref(cluster)],
        ),
        spec=V1StatefulSetSpec(
            service_name=unready_service_name(cluster),
            replicas=cluster.spec.replicas,
            selector=V1LabelSelector(match_labels=labels),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=labels),
                spec=V1PodSpec(containers=[container]),
            ),
        ),
    )


def _headless_service(
    cluster: CassandraCluster, name: str, annotations: dict[str, str] | None = None
) -> V1Service:
    labels = cluster_labels(cluster)
    return V1Service(
        api_version="v1",
        kind="Service",
        metadata=V1ObjectMeta(
            name=name,
            namespace=cluster.metadata.namespace,
            labels=labels,
            annotations=annotations,
            owner_references=[new_controller_ref(cluster)],
        ),
        spec=V1ServiceSpec(
            ports=[V1ServicePort(name="cql", port=CQL_PORT, target_port=CQL_PORT, protocol="TCP")],
            selector=labels,
            cluster_ip="None",
            type="ClusterIP",
        ),
    )


def new_headless_service(cluster: CassandraCluster) -> V1Service:
    return _headless_service(cluster, cluster.spec.statefulset_name)


def new_headless_service_unready(cluster: CassandraCluster) -> V1Service:
    # Publishes addresses of unready pods too; bootstrapping a new ring needs them.
    return _headless_service(
        cluster,
        unready_service_name(cluster),
        annotations={TOLERATE_UNREADY_ANNOTATION: "true"},
    )
