from __future__ import annotations

from cassandra_operator.src.objects import CassandraCluster
from cassandra_operator.src.resources import (
    TOLERATE_UNREADY_ANNOTATION,
    new_headless_service,
    new_headless_service_unready,
    new_stateful_set,
    seed_address,
)


def make_cluster(replicas: int | None = 3) -> CassandraCluster:
    spec = {"statefulsetName": "cassandra"}
    if replicas is not None:
        spec["replicas"] = replicas
    return CassandraCluster.from_dict(
        {"metadata": {"name": "demo", "namespace": "db", "uid": "uid-1"}, "spec": spec}
    )


def test_stateful_set_is_owned_by_cluster() -> None:
    statefulset = new_stateful_set(make_cluster())

    assert statefulset.metadata.name == "cassandra"
    assert statefulset.metadata.namespace == "db"
    [ref] = statefulset.metadata.owner_references
    assert ref.uid == "uid-1"
    assert ref.controller is True


def test_stateful_set_spec() -> None:
    statefulset = new_stateful_set(make_cluster(replicas=5))
    spec = statefulset.spec

    assert spec.replicas == 5
    assert spec.service_name == "cassandra-unready"
    assert spec.selector.match_labels == {"app": "cassandra", "controller": "demo"}
    assert spec.template.metadata.labels == spec.selector.match_labels

    [container] = spec.template.spec.containers
    assert container.image == "gcr.io/google-samples/cassandra:v13"
    assert [port.container_port for port in container.ports] == [9042, 7001, 7099]
    assert container.security_context.capabilities.add == ["IPC_LOCK"]
    assert container.lifecycle.pre_stop._exec.command == ["/bin/sh", "-c", "nodetool drain"]


def test_stateful_set_seeds_from_first_pod_of_unready_service() -> None:
    cluster = make_cluster()
    container = new_stateful_set(cluster).spec.template.spec.containers[0]
    env = {var.name: var for var in container.env}

    assert seed_address(cluster) == "cassandra-0.cassandra-unready.db.svc.cluster.local"
    assert env["CASSANDRA_SEEDS"].value == seed_address(cluster)
    assert env["MAX_HEAP_SIZE"].value == "512M"
    assert env["POD_IP"].value_from.field_ref.field_path == "status.podIP"


def test_stateful_set_leaves_replicas_unset_when_cluster_does_not_specify_them() -> None:
    assert new_stateful_set(make_cluster(replicas=None)).spec.replicas is None


def test_headless_services() -> None:
    cluster = make_cluster()
    service = new_headless_service(cluster)
    unready = new_headless_service_unready(cluster)

    assert service.metadata.name == "cassandra"
    assert unready.metadata.name == "cassandra-unready"
    for svc in (service, unready):
        assert svc.spec.cluster_ip == "None"
        assert svc.spec.selector == {"app": "cassandra", "controller": "demo"}
        assert svc.spec.ports[0].port == 9042
        assert svc.metadata.owner_references[0].name == "demo"

    assert service.metadata.annotations is None
    assert unready.metadata.annotations == {TOLERATE_UNREADY_ANNOTATION: "true"}
